"""
Cooperative cancellation signal shared by the tasks of one operation.
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

T = TypeVar('T')


class OperationCancelledError(Exception):
    """Raised when work is aborted through a CancellationToken."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or 'Operation aborted'
        super().__init__(self.reason)


class CancellationToken:
    """One-shot cancellation signal.

    Any number of tasks may wait on the same token. Firing it aborts every
    in-flight `run()` and `sleep()` with OperationCancelledError.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(self.reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, aborting it if the token fires first."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        # The aborted call's own outcome is superseded by the cancellation
        await asyncio.gather(work, return_exceptions=True)
        raise OperationCancelledError(self.reason)

    async def sleep(self, delay: float) -> None:
        """Sleep for `delay` seconds unless the token fires first."""
        await self.run(asyncio.sleep(delay))


async def run_cancellable(awaitable: Awaitable[T], token: Optional[CancellationToken]) -> T:
    if token is None:
        return await awaitable
    return await token.run(awaitable)


async def sleep_cancellable(delay: float, token: Optional[CancellationToken]) -> None:
    if token is None:
        await asyncio.sleep(delay)
        return
    await token.sleep(delay)
