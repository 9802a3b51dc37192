"""Supervised execution of driver invocations.

Every drive of a loop runs as a tracked asyncio task. A new submission for a
loop waits for the previous invocation of that loop to finish, so at most one
invocation per loop is active. Failures are logged and kept in `failures`.
"""

import asyncio
import logging
from typing import Optional

from loop_pilot.core.driver import IterationDriver
from loop_pilot.core.notifications import LoopObserver

logger = logging.getLogger(__name__)


class DriverPool:
    """Runs IterationDriver.drive calls as supervised background tasks."""

    def __init__(self, driver: IterationDriver):
        self.driver = driver
        self._tasks: dict[str, asyncio.Task] = {}
        self.failures: dict[str, BaseException] = {}

    def submit(self, loop_id: str, observer: Optional[LoopObserver] = None) -> asyncio.Task:
        """Schedule a drive of loop_id. Must be called from the event loop."""
        previous = self._tasks.get(loop_id)
        if previous is not None and previous.done():
            previous = None
        if previous is not None:
            logger.info(f"Loop {loop_id} still has an active drive; queueing the next one")

        task = asyncio.create_task(
            self._run(loop_id, observer, previous),
            name=f"drive-{loop_id}",
        )
        self._tasks[loop_id] = task
        task.add_done_callback(lambda t: self._on_done(loop_id, t))
        return task

    async def _run(
        self,
        loop_id: str,
        observer: Optional[LoopObserver],
        previous: Optional[asyncio.Task],
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await self.driver.drive(loop_id, observer)

    def _on_done(self, loop_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(loop_id) is task:
            del self._tasks[loop_id]

        if task.cancelled():
            logger.info(f"Drive of loop {loop_id} cancelled")
            return

        error = task.exception()
        if error is not None:
            self.failures[loop_id] = error
            logger.error(
                f"Drive of loop {loop_id} failed: {error}",
                exc_info=(type(error), error, error.__traceback__),
            )

    def is_active(self, loop_id: str) -> bool:
        task = self._tasks.get(loop_id)
        return task is not None and not task.done()

    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    async def wait(self, loop_id: str) -> None:
        """Wait for the current drive of a loop (and anything queued before it)."""
        while True:
            task = self._tasks.get(loop_id)
            if task is None:
                return
            await asyncio.wait([task])
            # Yield so the done-callback can drop the finished task
            await asyncio.sleep(0)

    async def shutdown(self) -> None:
        """Cancel all drives and wait for them to unwind."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
