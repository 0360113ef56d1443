import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar("T")


class CancellationToken:
    """A one-shot signal shared by every await of a single polling session.

    Both the transport and the poller race their awaits against it, so firing
    the token aborts an in-flight request and interrupts a backoff sleep.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep for `delay` seconds. Returns False if the token fired first."""
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(delay, 0))
        except asyncio.TimeoutError:
            return True
        return False

    async def run(self, aw: Awaitable[T]) -> Optional[T]:
        """Await `aw` unless the token fires first, in which case `aw` is cancelled
        and None is returned. Check `cancelled` to tell the two apart."""
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return None

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return None
