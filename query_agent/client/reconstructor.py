import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from query_agent.api.schemas import HISTORY_WINDOW, AIChunk
from query_agent.core.cancellation import REASON_CLIENT, AbortSignal
from query_agent.core.errors import AbortError, QueryAgentError
from query_agent.core.guardrails import Guardrails
from query_agent.services.schema import is_allowed_table

logger = logging.getLogger(__name__)

STREAM_ERROR_TEXT = "Sorry, something went wrong. Please try again."
TRANSPORT_ERROR_TEXT = "Something went wrong. Please try again or check your connection."
CANCELLED_TEXT = "The operation was cancelled"

ChunkSource = Union[AsyncIterator[Any], Awaitable[Any]]
Transport = Callable[[Dict[str, Any], AbortSignal], ChunkSource]

_END = object()


class ChatStreamError(QueryAgentError):
    """An error chunk arrived on an otherwise healthy stream."""

    code = "STREAM_ERROR"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    is_error: bool = False
    visualization_type: Optional[str] = None
    table_columns: Optional[List[Dict[str, str]]] = None
    table_data: Optional[List[Dict[str, Any]]] = None
    follow_ups: List[str] = field(default_factory=list)


def _as_chunk(raw: Any) -> AIChunk:
    if isinstance(raw, AIChunk):
        return raw
    return AIChunk.model_validate(raw)


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


class ChatSession:
    """
    Client-side chat state rebuilt from the chunk stream.

    Each send gets a placeholder assistant message whose id never changes;
    every chunk is merged into that message by id, so a late chunk from a
    superseded send can never land on another message.
    """

    def __init__(
        self,
        transport: Transport,
        preferred_table: Optional[str] = None,
        max_messages: int = 100,
        model_tier: str = "auto",
        deep_research: bool = False,
    ):
        self.transport = transport
        self.preferred_table = preferred_table
        self.max_messages = max_messages
        self.model_tier = model_tier
        self.deep_research = deep_research

        self.messages: List[ChatMessage] = []
        self.is_processing = False
        self.detected_table: Optional[str] = None
        self.error: Optional[Exception] = None
        self.last_user_message: Optional[str] = None
        self._signal: Optional[AbortSignal] = None

    # State helpers

    def _append(self, message: ChatMessage):
        self.messages.append(message)
        if len(self.messages) > self.max_messages:
            self.messages = self.messages[-self.max_messages:]

    def _find(self, message_id: str) -> Optional[ChatMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def _update(self, message_id: str, **changes):
        message = self._find(message_id)
        if message is None:
            # Trimmed away or cleared meanwhile
            return
        for key, value in changes.items():
            setattr(message, key, value)
        message.updated_at = _now()

    def _history(self) -> List[Dict[str, str]]:
        recent = [m for m in self.messages if not m.is_error][-HISTORY_WINDOW:]
        return [{"role": m.role, "content": m.content} for m in recent]

    def _payload(self, content: str, history: List[Dict[str, str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "content": content,
            "history": history,
            "modelTier": self.model_tier,
            "deepResearch": self.deep_research,
        }
        if self.preferred_table:
            payload["preferredTable"] = self.preferred_table
        return payload

    def _merge(self, message_id: str, chunk: AIChunk) -> bool:
        """Apply one chunk. Returns True when the chunk ends the turn with an error."""
        intent = chunk.detected_table_intent
        if intent is not None and is_allowed_table(intent.table):
            self.detected_table = intent.table

        if chunk.error:
            self.error = ChatStreamError(chunk.error)
            text = chunk.error if "Deep Research" in chunk.error else STREAM_ERROR_TEXT
            self._update(message_id, content=text, is_error=True)
            return True

        message = chunk.assistant_message
        if message is not None:
            changes: Dict[str, Any] = {"content": message.content}
            if message.visualization_type:
                changes["visualization_type"] = message.visualization_type
                changes["table_columns"] = [c.model_dump() for c in message.table_columns or []]
                changes["table_data"] = message.table_data or []
            if message.follow_ups:
                changes["follow_ups"] = list(message.follow_ups)
            self._update(message_id, **changes)
        return False

    def _handle_failure(self, message_id: str, exc: Exception):
        self.error = exc
        status = getattr(exc, "status", None)
        text = TRANSPORT_ERROR_TEXT
        if status == 429 and "Deep Research" in str(exc):
            text = str(exc)
        logger.warning(f"Chat send failed: {type(exc).__name__}")
        self._update(message_id, content=text, is_error=True)

    # Public API

    async def send_message(self, content: str):
        history = self._history()
        self.error = None

        ok, problem = Guardrails.validate_user_message(content)
        if not ok:
            self._append(ChatMessage(id=f"error-{uuid.uuid4()}", role="assistant", content=problem, is_error=True))
            return

        text = content.strip()
        self.last_user_message = text
        self._append(ChatMessage(id=f"user-{uuid.uuid4()}", role="user", content=text))
        placeholder_id = f"assistant-{uuid.uuid4()}"
        self._append(ChatMessage(id=placeholder_id, role="assistant", content=""))

        # Only one send may be in flight
        if self._signal is not None:
            self._signal.abort(REASON_CLIENT)
        signal = AbortSignal()
        self._signal = signal
        self.is_processing = True

        try:
            source = self.transport(self._payload(text, history), signal)
            if hasattr(source, "__aiter__"):
                iterator = source.__aiter__()
                try:
                    while True:
                        raw = await signal.race(_next_chunk(iterator))
                        if raw is _END:
                            break
                        if self._merge(placeholder_id, _as_chunk(raw)):
                            break
                finally:
                    if hasattr(iterator, "aclose"):
                        await iterator.aclose()
            elif inspect.isawaitable(source):
                self._merge(placeholder_id, _as_chunk(await signal.race(source)))
            else:
                self._merge(placeholder_id, _as_chunk(source))
        except AbortError:
            self._update(placeholder_id, content=CANCELLED_TEXT, is_error=True)
        except Exception as e:
            self._handle_failure(placeholder_id, e)
        finally:
            if self._signal is signal:
                self._signal = None
                self.is_processing = False

    async def retry_last_message(self):
        if self.last_user_message:
            await self.send_message(self.last_user_message)

    def stop(self):
        if self._signal is not None:
            self._signal.abort(REASON_CLIENT)

    def clear(self):
        self.stop()
        self.messages = []
        self.detected_table = None
        self.error = None
        self.last_user_message = None

    def clear_error(self):
        self.error = None
