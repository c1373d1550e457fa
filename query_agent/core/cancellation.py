import asyncio
from typing import Awaitable, Iterable, Optional, TypeVar

from query_agent.core.errors import AbortError

T = TypeVar("T")

REASON_TIMEOUT = "timeout"
REASON_CLIENT = "client_disconnected"


class AbortSignal:
    """
    One-shot cancellation flag that can be awaited, composed and raced.
    Must be created inside a running event loop when timers are involved.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None
        self._handles = []
        self._children = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = REASON_CLIENT):
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()
        for child in self._children:
            child.abort(reason)

    def raise_if_aborted(self):
        if self.aborted:
            raise AbortError(self._reason or REASON_CLIENT)

    async def wait(self):
        await self._event.wait()

    @classmethod
    def timeout(cls, ms: int) -> "AbortSignal":
        signal = cls()
        loop = asyncio.get_running_loop()
        signal._handles.append(loop.call_later(ms / 1000, signal.abort, REASON_TIMEOUT))
        return signal

    @classmethod
    def any(cls, signals: Iterable[Optional["AbortSignal"]]) -> "AbortSignal":
        """Fires as soon as any parent fires, with that parent's reason."""
        combined = cls()
        for parent in signals:
            if parent is None:
                continue
            if parent.aborted:
                combined.abort(parent.reason)
                break
            parent._children.append(combined)
        return combined

    def dispose(self):
        for handle in self._handles:
            handle.cancel()
        self._handles.clear()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """
        Await `awaitable` unless the signal fires first, in which case the
        work is cancelled and AbortError is raised.
        """
        if self.aborted:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortError(self._reason or REASON_CLIENT)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task in done:
            waiter.cancel()
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, Exception):
            # The aborted work's own outcome is irrelevant
            pass
        raise AbortError(self._reason or REASON_CLIENT)
