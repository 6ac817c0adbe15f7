"""Cancellation token and lifecycle guard for viewer sessions."""
import asyncio
import logging
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared by one resolve-then-rasterize run."""

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, or right away if already cancelled."""
        if self._cancelled:
            callback()
        else:
            self._callbacks.append(callback)


class LifecycleGuard:
    """
    Tracks whether a viewer is still alive and owns its abort handle.

    State updates from asynchronous continuations go through apply(), which
    drops them once the viewer has been unmounted.
    """

    def __init__(self):
        self.token = CancellationToken()
        self.task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return not self.token.cancelled

    def attach(self, task: asyncio.Task) -> None:
        """Register the running pipeline as the abort handle."""
        self.task = task

    def apply(self, update: Callable[[], None]) -> bool:
        """
        Run ``update`` only while the viewer is alive.

        Returns:
            True if the update was applied
        """
        if not self.alive:
            return False
        update()
        return True

    def unmount(self) -> None:
        """Flip the alive flag and abort any outstanding work."""
        self.token.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the aborted pipeline has released its resources."""
        if self.task is None:
            return
        await asyncio.wait({self.task})
        if not self.task.cancelled() and self.task.exception() is not None:
            error = self.task.exception()
            logger.debug(f"Pipeline ended with {type(error).__name__} during teardown: {error}")
