import asyncio
import inspect
from collections import deque
from typing import Any, Awaitable, Callable, Deque, TypeVar, Union

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    FIFO semaphore shared by every request in the process.

    A released slot is handed directly to the oldest waiter, so a caller that
    arrives later can never overtake one that is already queued.
    """

    def __init__(self, concurrency: int):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def _enter(self):
        if self.active < self.concurrency and not self._waiters:
            self.active += 1
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # Slot was already handed over, pass it on
                self._release()
            elif fut in self._waiters:
                # A release may already have popped the cancelled future
                self._waiters.remove(fut)
            raise

    def _release(self):
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # Slot transfers without touching the counter
                fut.set_result(None)
                return
        self.active -= 1

    async def acquire(self, fn: Callable[[], Union[T, Awaitable[T]]]) -> T:
        await self._enter()
        try:
            result: Any = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self._release()
