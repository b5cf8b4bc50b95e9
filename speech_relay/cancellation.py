"""Explicit cancellation for in-flight segment requests."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class RequestCancellationToken:
    """Token for aborting the network work of one segment.

    Passed explicitly through every async boundary. Cancelling marks the
    token and cancels every task attached to it; calling cancel() again is
    a no-op.
    """

    def __init__(self, label: str = ""):
        """Initialize cancellation token in non-cancelled state.

        Args:
            label: Name used in log messages
        """
        self.label = label
        self._cancelled = False
        self._tasks: set[asyncio.Task] = set()

    def cancel(self) -> None:
        """Mark token as cancelled and cancel attached tasks."""
        if self._cancelled:
            return
        self._cancelled = True
        pending = [t for t in self._tasks if not t.done()]
        if pending:
            logger.debug("Cancelling %d task(s) for %s", len(pending), self.label or "request")
        for task in pending:
            task.cancel()
        self._tasks.clear()

    def is_cancelled(self) -> bool:
        """Check if token is cancelled.

        Returns:
            True if cancelled, False otherwise
        """
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        """Raise asyncio.CancelledError if the token has been cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError(f"{self.label or 'request'} cancelled")

    def attach(self, task: asyncio.Task) -> asyncio.Task:
        """Tie a task's lifetime to this token.

        A task attached after cancellation is cancelled immediately.
        """
        if self._cancelled:
            task.cancel()
            return task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
