from typing import Awaitable, Optional, Set, TypeVar
import asyncio

from ponder.domain.errors import RunCancelled

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation shared by a run and everything it awaits"""

    def __init__(self):
        self._event = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation and abort every in-flight guarded awaitable"""

        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for task in list(self._tasks):
            task.cancel()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RunCancelled(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await under the token; raises RunCancelled if the token fires first"""

        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelled(self.reason or "cancelled")

        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if self.cancelled and task.cancelled():
                raise RunCancelled(self.reason or "cancelled") from None
            raise
        finally:
            self._tasks.discard(task)
            if not task.done():
                task.cancel()
