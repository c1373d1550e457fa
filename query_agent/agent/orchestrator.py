import enum
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from query_agent.agent.events import (
    Aborted,
    ContentDelta,
    Failed,
    Finished,
    OrchestratorEvent,
    TablesDetected,
    ToolResult,
)
from query_agent.core.cancellation import AbortSignal, REASON_TIMEOUT
from query_agent.core.errors import AbortError, GENERIC_UPSTREAM_MESSAGE
from query_agent.core.observability import log_tool_loop_termination
from query_agent.llm.stream import (
    Error,
    ModelStream,
    TextDelta,
    ToolCallComplete,
    ToolCallStart,
)
from query_agent.services.query_executor import SqlExecutionResult
from query_agent.services.tools import ToolRunner, get_tool_schemas

logger = logging.getLogger(__name__)

NO_ANSWER_TEXT = "I wasn't able to produce an answer to that. Please try rephrasing your question."
BUDGET_EXHAUSTED_TEXT = (
    "I reached the limit of data lookups for a single question. "
    "Please narrow the question down and ask again."
)
SKIPPED_TOOL_OUTPUT = "Tool call limit reached. Answer with the information you already have."


class LoopState(str, enum.Enum):
    MODEL_STREAMING = "model_streaming"
    TOOL_CALL_ACCUMULATING = "tool_call_accumulating"
    TOOL_EXECUTING = "tool_executing"
    DONE = "done"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class ToolCallState:
    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.arguments) if self.arguments.strip() else {}
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


class ToolOrchestrator:
    """
    Bounded model <-> tool loop for one request.

    Each pass streams one model segment. Tool calls requested by the segment
    run one at a time and their output is appended to the conversation for
    the next pass. At most `max_tool_calls` tools run per request; once the
    budget is spent the model is called without tools.
    """

    def __init__(
        self,
        model_stream: ModelStream,
        tool_runner: ToolRunner,
        max_tool_calls: int = 3,
        tools: Optional[Sequence[Dict[str, Any]]] = None,
    ):
        self.model_stream = model_stream
        self.tool_runner = tool_runner
        self.max_tool_calls = max_tool_calls
        self.tools = list(tools) if tools is not None else get_tool_schemas(tool_runner.executor.max_rows)

    def _terminate(self, reason: str, started: float, tool_calls: int, error: Optional[BaseException] = None):
        log_tool_loop_termination(
            reason=reason,
            tenant_id=self.tool_runner.tenant_id,
            tool_call_count=tool_calls,
            max_tool_calls=self.max_tool_calls,
            duration_ms=(time.perf_counter() - started) * 1000,
            error=error,
        )

    async def run(
        self,
        messages: List[BaseMessage],
        signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[OrchestratorEvent]:
        signal = signal or AbortSignal()
        started = time.perf_counter()
        conversation = list(messages)
        content = ""
        tool_calls = 0
        last_result: Optional[SqlExecutionResult] = None
        tables_reported = False
        state = LoopState.MODEL_STREAMING

        try:
            while True:
                signal.raise_if_aborted()
                state = LoopState.MODEL_STREAMING
                offer_tools = tool_calls < self.max_tool_calls
                segment_text = ""
                completed: List[ToolCallState] = []
                failure: Optional[Error] = None

                async for event in self.model_stream.stream(
                    conversation, self.tools if offer_tools else None, signal
                ):
                    if isinstance(event, TextDelta):
                        content += event.text
                        segment_text += event.text
                        yield ContentDelta(content)
                    elif isinstance(event, ToolCallStart):
                        # Arguments are assembled by the stream adapter
                        state = LoopState.TOOL_CALL_ACCUMULATING
                    elif isinstance(event, ToolCallComplete):
                        completed.append(ToolCallState(id=event.id, name=event.name, arguments=event.arguments))
                    elif isinstance(event, Error):
                        failure = event

                if failure is not None:
                    state = LoopState.ERROR
                    self._terminate("model_error", started, tool_calls)
                    yield Failed(failure.message, status=failure.status)
                    return

                if not completed:
                    state = LoopState.DONE
                    self._terminate("completed", started, tool_calls)
                    yield Finished(content or NO_ANSWER_TEXT, last_result, tool_calls)
                    return

                if not offer_tools:
                    # Model asked for tools it was not given
                    state = LoopState.DONE
                    self._terminate("max_tool_calls", started, tool_calls)
                    yield Finished(content or BUDGET_EXHAUSTED_TEXT, last_result, tool_calls)
                    return

                state = LoopState.TOOL_EXECUTING
                conversation.append(AIMessage(
                    content=segment_text,
                    tool_calls=[
                        {"id": c.id, "name": c.name, "args": c.parsed_arguments()} for c in completed
                    ],
                ))
                for call in completed:
                    if tool_calls >= self.max_tool_calls:
                        conversation.append(ToolMessage(content=SKIPPED_TOOL_OUTPUT, tool_call_id=call.id))
                        continue
                    tool_calls += 1
                    outcome = await self.tool_runner.run(call.name, call.arguments, signal)
                    signal.raise_if_aborted()

                    if outcome.result is not None:
                        last_result = outcome.result
                        if not tables_reported and outcome.result.detected_tables:
                            tables_reported = True
                            yield TablesDetected(outcome.result.detected_tables)
                    yield ToolResult(call.id, call.name, outcome.output, outcome.result)
                    conversation.append(ToolMessage(content=outcome.output, tool_call_id=call.id))

                logger.debug(f"Tool pass done, {tool_calls}/{self.max_tool_calls} calls used")

        except AbortError as e:
            reason = signal.reason or e.reason
            logger.debug(f"Loop aborted in state {state.value}")
            self._terminate("timeout" if reason == REASON_TIMEOUT else "aborted", started, tool_calls)
            yield Aborted(reason=reason, content=content)
        except Exception as e:
            self._terminate("model_error", started, tool_calls, error=e)
            logger.exception("Tool loop failed")
            yield Failed(GENERIC_UPSTREAM_MESSAGE)
