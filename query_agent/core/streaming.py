import json
import logging
from typing import AsyncIterator, Optional, Sequence

from query_agent.agent.events import (
    Aborted,
    ContentDelta,
    Failed,
    Finished,
    OrchestratorEvent,
    TablesDetected,
)
from query_agent.api.schemas import AIChunk, AssistantMessage, DetectedTableIntent, TableColumn
from query_agent.core.cancellation import REASON_TIMEOUT
from query_agent.core.errors import GENERIC_UPSTREAM_MESSAGE
from query_agent.services.query_executor import SqlExecutionResult

logger = logging.getLogger(__name__)

CANCELLED_TEXT = "The request took too long and was stopped. Please try a simpler question."

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def detect_table_intent(tables: Sequence[str]) -> Optional[DetectedTableIntent]:
    if not tables:
        return None
    return DetectedTableIntent(table=tables[0], confidence=1.0 if len(tables) == 1 else 0.5)


def to_line(chunk: AIChunk) -> str:
    return json.dumps(chunk.to_wire(), default=str) + "\n"


class ChatStreamEncoder:
    """
    Turns orchestrator events into NDJSON lines:
    1. Every content delta becomes a line carrying the cumulative text.
    2. A detected table rides on the next line written after it is known.
    3. Exactly one terminal line: final content, or an error, never both.
    A caller-side abort ends the stream without a terminal line.
    """

    def __init__(self):
        self._pending_intent: Optional[DetectedTableIntent] = None
        self._intent_sent = False

    def _chunk(self, message: Optional[AssistantMessage] = None, error: Optional[str] = None) -> str:
        intent = None
        if self._pending_intent is not None:
            intent, self._pending_intent = self._pending_intent, None
            self._intent_sent = True
        return to_line(AIChunk(assistant_message=message, detected_table_intent=intent, error=error))

    @staticmethod
    def final_message(content: str, result: Optional[SqlExecutionResult]) -> AssistantMessage:
        if result is None or not result.is_tabular:
            return AssistantMessage(content=content)
        return AssistantMessage(
            content=content,
            visualization_type="table",
            table_columns=[TableColumn(name=c.name, type=c.type) for c in result.columns],
            table_data=result.rows,
        )

    async def encode(self, events: AsyncIterator[OrchestratorEvent]) -> AsyncIterator[str]:
        async for event in events:
            if isinstance(event, ContentDelta):
                yield self._chunk(AssistantMessage(content=event.content))
            elif isinstance(event, TablesDetected):
                if not self._intent_sent and self._pending_intent is None:
                    self._pending_intent = detect_table_intent(event.tables)
            elif isinstance(event, Finished):
                yield self._chunk(self.final_message(event.content, event.result))
                return
            elif isinstance(event, Failed):
                yield self._chunk(error=event.message)
                return
            elif isinstance(event, Aborted):
                if event.reason == REASON_TIMEOUT:
                    yield self._chunk(AssistantMessage(content=event.content or CANCELLED_TEXT))
                return

        # Event source ended without a terminal event
        logger.error("Chat stream ended without a terminal event")
        yield self._chunk(error=GENERIC_UPSTREAM_MESSAGE)
