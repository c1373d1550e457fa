from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from query_agent.services.query_executor import SqlExecutionResult


@dataclass
class ContentDelta:
    # Cumulative assistant text so far
    content: str


@dataclass
class TablesDetected:
    tables: Tuple[str, ...]


@dataclass
class ToolResult:
    call_id: str
    name: str
    output: str
    result: Optional[SqlExecutionResult] = None


@dataclass
class Finished:
    content: str
    result: Optional[SqlExecutionResult] = None
    tool_calls: int = 0


@dataclass
class Aborted:
    reason: Optional[str]
    content: str = ""


@dataclass
class Failed:
    message: str
    status: Optional[int] = field(default=None)


OrchestratorEvent = Union[ContentDelta, TablesDetected, ToolResult, Finished, Aborted, Failed]
