"""Approval controller - human decisions on a loop.

Resumes a suspended loop after approve (merge, then continue) or skip
(discard, then continue), and stops, pauses or resumes loops on request.
Resumption is submitted to the driver pool; callers never wait for the
loop to finish.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from loop_pilot.core.driver import LoopNotFoundError
from loop_pilot.core.notifications import LoopObserver
from loop_pilot.core.pool import DriverPool
from loop_pilot.core.process import ProcessSupervisor
from loop_pilot.db.models import ACTIVE_STATUSES, Loop, LoopStatus, TaskStatus
from loop_pilot.db.store import LoopStore
from loop_pilot.github.client import GitHubClient

logger = logging.getLogger(__name__)


class InvalidLoopStateError(Exception):
    """The loop is not in a status that allows the requested action."""


class MergeFailedError(Exception):
    """Merging the PR under review failed; the loop is still waiting for approval."""


@dataclass
class StopResult:
    stopped: bool
    message: str
    process_terminated: bool = False


class ApprovalController:
    """Applies approve / skip / stop / pause / resume decisions to loops."""

    def __init__(
        self,
        store: LoopStore,
        github: GitHubClient,
        supervisor: ProcessSupervisor,
        pool: DriverPool,
        observer: Optional[LoopObserver] = None,
    ):
        self.store = store
        self.github = github
        self.supervisor = supervisor
        self.pool = pool
        self.observer = observer

    async def approve(self, loop_id: str) -> Loop:
        """Merge the PR under review (if any) and continue the loop.

        Raises:
            InvalidLoopStateError: loop is not waiting for approval
            MergeFailedError: merge failed; nothing changed, approve may be retried
        """
        loop = self._require_status(loop_id, LoopStatus.WAITING_APPROVAL, "approve")
        pr_number = loop.current_pr

        if pr_number:
            merged = await self.github.merge_pull_request(
                loop.repo_owner, loop.repo_name, pr_number
            )
            if not merged:
                self.store.log(loop_id, f"Failed to merge PR #{pr_number}", level="warning")
                raise MergeFailedError(f"Failed to merge PR #{pr_number}")

        try:
            resumed = self._continue(loop_id, pr_number, TaskStatus.COMPLETE)
        except InvalidLoopStateError:
            # stop() landed while the merge call was in flight
            if pr_number:
                self.store.log(
                    loop_id, f"Merged PR #{pr_number} but loop was stopped", level="warning"
                )
                logger.warning(f"Loop {loop_id}: merged PR #{pr_number} after the loop was stopped")
            raise

        if pr_number:
            self.store.log(loop_id, f"Merged PR #{pr_number}")
        return resumed

    async def skip(self, loop_id: str) -> Loop:
        """Continue the loop without merging the PR under review."""
        loop = self._require_status(loop_id, LoopStatus.WAITING_APPROVAL, "skip")
        self.store.log(loop_id, f"Skipped PR #{loop.current_pr}")
        return self._continue(loop_id, loop.current_pr, TaskStatus.SKIPPED)

    def stop(self, loop_id: str) -> StopResult:
        """Terminate the loop's agent process and mark the loop stopped.

        Safe to call repeatedly; a loop that is already finished (or unknown)
        yields "nothing to do".
        """
        terminated = self.supervisor.terminate(loop_id)

        loop = self.store.get_loop(loop_id)
        if loop is None or loop.status not in ACTIVE_STATUSES:
            return StopResult(
                stopped=False,
                message="nothing to do",
                process_terminated=terminated,
            )

        result = self.store.transition_loop(loop_id, LoopStatus.STOPPED)
        if not result.success:
            # Finished on its own between the read and the transition
            return StopResult(stopped=False, message="nothing to do", process_terminated=terminated)

        self.store.log(loop_id, "Loop stopped by user")
        return StopResult(stopped=True, message="Loop stopped", process_terminated=terminated)

    def pause(self, loop_id: str) -> Loop:
        """Pause a loop; the driver halts at its next iteration boundary."""
        loop = self._get(loop_id)
        if loop.status not in (LoopStatus.PENDING, LoopStatus.RUNNING):
            raise InvalidLoopStateError(
                f"Cannot pause loop in status {loop.status.value}"
            )
        result = self.store.transition_loop(loop_id, LoopStatus.PAUSED)
        if not result.success:
            raise InvalidLoopStateError(result.error)
        self.store.log(loop_id, "Loop paused")
        return result.loop

    def resume(self, loop_id: str) -> Loop:
        """Continue a paused loop from its persisted iteration."""
        self._require_status(loop_id, LoopStatus.PAUSED, "resume")
        result = self.store.transition_loop(loop_id, LoopStatus.RUNNING)
        if not result.success:
            raise InvalidLoopStateError(result.error)
        self.store.log(loop_id, "Loop resumed")
        self.pool.submit(loop_id, self.observer)
        return result.loop

    def _continue(
        self,
        loop_id: str,
        pr_number: Optional[int],
        task_status: TaskStatus,
    ) -> Loop:
        # Leaving waiting_approval clears current_pr / current_issue
        result = self.store.transition_loop(loop_id, LoopStatus.RUNNING)
        if not result.success:
            raise InvalidLoopStateError(result.error)

        if pr_number:
            task = self.store.find_task_for_pr(loop_id, pr_number)
            if task is not None:
                self.store.update_task(task.id, status=task_status)

        self.pool.submit(loop_id, self.observer)
        logger.info(f"Loop {loop_id} continuing from iteration {result.loop.iteration_current + 1}")
        return result.loop

    def _require_status(self, loop_id: str, status: LoopStatus, action: str) -> Loop:
        loop = self._get(loop_id)
        if loop.status != status:
            raise InvalidLoopStateError(
                f"Cannot {action} loop in status {loop.status.value}; "
                f"expected {status.value}"
            )
        return loop

    def _get(self, loop_id: str) -> Loop:
        loop = self.store.get_loop(loop_id)
        if loop is None:
            raise LoopNotFoundError(f"Loop not found: {loop_id}")
        return loop
