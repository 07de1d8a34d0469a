"""
Background Queue

Fire-and-forget memory writes with an explicit drain barrier.

- submit() schedules a coroutine as an asyncio.Task and returns immediately
- failures are logged, never raised to the submitter
- wait() awaits the tasks pending when it is called (snapshot drain);
  writes submitted while it runs are left for the next wait()
- close() refuses new work; drain() then waits until nothing is pending
"""

import asyncio
import logging
from typing import Coroutine, Set

from .errors import StoreClosedError, describe

logger = logging.getLogger(__name__)


class BackgroundQueue:
    """Tracks in-flight background writes."""

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()
        self.closed = False

    @property
    def pending(self) -> int:
        """Number of writes not yet finished."""
        return len(self._pending)

    def submit(self, coro: Coroutine) -> asyncio.Task:
        if self.closed:
            # Never awaited; close it to avoid a "coroutine was never awaited" warning
            coro.close()
            raise StoreClosedError("Background queue is closed")

        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task):
        self._pending.discard(task)
        if task.cancelled():
            logger.warning("Background memory write was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background memory write failed: {describe(error)}", exc_info=error)

    async def wait(self) -> None:
        """Await every write pending at the moment of the call."""
        snapshot = list(self._pending)
        if not snapshot:
            return
        logger.debug(f"Waiting for {len(snapshot)} background writes")
        await asyncio.gather(*snapshot, return_exceptions=True)
        for task in snapshot:
            self._pending.discard(task)

    def close(self) -> None:
        """Refuse further submissions."""
        self.closed = True

    async def drain(self) -> None:
        """Wait until nothing is pending, including writes scheduled meanwhile."""
        while self._pending:
            await self.wait()
