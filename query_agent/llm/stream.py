"""
Adapter from LangChain message-chunk streams to tagged model events.

Whatever the provider or transport (chat completions or responses), the
orchestrator only ever sees:

    TextDelta -> ToolCallStart -> ToolCallArgDelta* -> ToolCallComplete -> Done | Error

Tool calls are reported complete once the stream has ended, in the order
the model opened them. A failed call is retried (429, 5xx, timeouts) only
while it has not produced any event yet.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple, Union

import httpx
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage

from query_agent.core.cancellation import AbortSignal
from query_agent.core.errors import AbortError, GENERIC_UPSTREAM_MESSAGE
from query_agent.core.settings import settings

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY = 0.5


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallStart:
    index: int
    id: str
    name: str


@dataclass
class ToolCallArgDelta:
    index: int
    delta: str


@dataclass
class ToolCallComplete:
    id: str
    name: str
    arguments: str


@dataclass
class Done:
    finish_reason: Optional[str] = None


@dataclass
class Error:
    message: str
    status: Optional[int] = None
    retryable: bool = False


ModelEvent = Union[TextDelta, ToolCallStart, ToolCallArgDelta, ToolCallComplete, Done, Error]

_END = object()


async def _next_chunk(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


def chunk_text(content: Any) -> str:
    """Text of a chunk, whether content is a plain string or a list of blocks."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") in ("text", "output_text"):
            parts.append(block.get("text") or "")
    return "".join(parts)


def classify_error(exc: BaseException) -> Tuple[Optional[int], bool]:
    """(http status if any, retryable)"""
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return None, True
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return status, True
    # SDK timeout classes (openai.APITimeoutError, groq.APITimeoutError)
    if "timeout" in type(exc).__name__.lower():
        return status, True
    return status, False


class _ToolCallAccumulator:
    def __init__(self):
        self.calls: Dict[int, Dict[str, str]] = {}
        self._last_index: Optional[int] = None

    def _resolve_index(self, chunk: Dict[str, Any]) -> int:
        index = chunk.get("index")
        if isinstance(index, int):
            return index
        if chunk.get("id") and all(c["id"] != chunk["id"] for c in self.calls.values()):
            return len(self.calls)
        return self._last_index if self._last_index is not None else 0

    def add(self, chunk: Dict[str, Any]) -> List[ModelEvent]:
        index = self._resolve_index(chunk)
        self._last_index = index
        events: List[ModelEvent] = []
        call = self.calls.get(index)
        if call is None:
            call = {"id": chunk.get("id") or "", "name": chunk.get("name") or "", "args": ""}
            self.calls[index] = call
            events.append(ToolCallStart(index=index, id=call["id"], name=call["name"]))
        else:
            if chunk.get("id") and not call["id"]:
                call["id"] = chunk["id"]
            if chunk.get("name") and not call["name"]:
                call["name"] = chunk["name"]
        delta = chunk.get("args") or ""
        if delta:
            call["args"] += delta
            events.append(ToolCallArgDelta(index=index, delta=delta))
        return events

    def complete(self) -> List[ToolCallComplete]:
        return [
            ToolCallComplete(id=c["id"] or f"call_{i}", name=c["name"], arguments=c["args"])
            for i, c in sorted(self.calls.items())
        ]


class ModelStream:
    def __init__(
        self,
        model: BaseChatModel,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        slow_threshold_ms: Optional[int] = None,
    ):
        self.model = model
        self.timeout_ms = timeout_ms or settings.openai.timeout_ms
        self.max_retries = settings.openai.max_retries if max_retries is None else max_retries
        self.slow_threshold_ms = slow_threshold_ms or settings.openai.slow_threshold_ms

    def _runnable(self, tools: Optional[Sequence[Dict[str, Any]]]):
        if tools:
            return self.model.bind_tools(list(tools))
        return self.model

    async def stream(
        self,
        messages: List[BaseMessage],
        tools: Optional[Sequence[Dict[str, Any]]] = None,
        signal: Optional[AbortSignal] = None,
    ) -> AsyncIterator[ModelEvent]:
        signal = signal or AbortSignal()
        runnable = self._runnable(tools)
        attempt = 0

        while True:
            attempt += 1
            emitted = False
            accumulator = _ToolCallAccumulator()
            finish_reason = None
            started = time.perf_counter()
            first_event_at = None
            iterator = None
            try:
                iterator = runnable.astream(messages).__aiter__()
                deadline = started + self.timeout_ms / 1000
                while True:
                    remaining = deadline - time.perf_counter()
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    chunk = await signal.race(asyncio.wait_for(_next_chunk(iterator), remaining))
                    if chunk is _END:
                        break

                    events: List[ModelEvent] = []
                    text = chunk_text(chunk.content)
                    if text:
                        events.append(TextDelta(text))
                    for tc in getattr(chunk, "tool_call_chunks", None) or []:
                        events.extend(accumulator.add(tc))
                    finish_reason = (chunk.response_metadata or {}).get("finish_reason") or finish_reason

                    for event in events:
                        if first_event_at is None:
                            first_event_at = time.perf_counter()
                        emitted = True
                        yield event
            except AbortError:
                raise
            except Exception as e:
                status, retryable = classify_error(e)
                if retryable and not emitted and attempt <= self.max_retries:
                    logger.warning(
                        f"Model call failed ({type(e).__name__}, status={status}), retrying",
                        extra={"fields": {"attempt": attempt, "max_retries": self.max_retries}},
                    )
                    await signal.race(asyncio.sleep(RETRY_BASE_DELAY * attempt))
                    continue
                logger.error(
                    f"Model call failed: {type(e).__name__}",
                    extra={"fields": {"status": status, "retryable": retryable, "attempts": attempt}},
                )
                yield Error(message=GENERIC_UPSTREAM_MESSAGE, status=status, retryable=retryable)
                return
            finally:
                aclose = getattr(iterator, "aclose", None)
                if aclose is not None:
                    try:
                        await aclose()
                    except RuntimeError:
                        # Generator still running after a cancelled read
                        pass

            duration_ms = (time.perf_counter() - started) * 1000
            if first_event_at and (first_event_at - started) * 1000 > self.slow_threshold_ms:
                logger.warning(
                    "Slow model response",
                    extra={"fields": {"first_event_ms": round((first_event_at - started) * 1000)}},
                )
            logger.info(
                "Model call finished",
                extra={"fields": {"duration_ms": round(duration_ms), "finish_reason": finish_reason, "attempts": attempt}},
            )

            for complete in accumulator.complete():
                yield complete
            yield Done(finish_reason=finish_reason)
            return
