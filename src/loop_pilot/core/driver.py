"""Iteration driver - the loop state machine.

One call to `IterationDriver.drive` advances a loop until it suspends or ends:
1. Re-reads the loop status before every iteration
2. Syncs the workspace and runs the coding agent once
3. Classifies the output (done / pull request / nothing)
4. Decides whether to continue, wait for approval, complete or fail

Stop, pause and approval decisions made elsewhere take effect at the next
iteration boundary, because the driver only ever acts on a fresh read.
"""

import logging
from typing import Any, Awaitable, Callable, Optional

from loop_pilot.config import LoopConfig, RepoConfig
from loop_pilot.core.notifications import LoopObserver
from loop_pilot.core.output import Done, PullRequestFound, classify_output
from loop_pilot.core.process import AgentProcessError, AgentRunner, IterationResult
from loop_pilot.core.workspace import WorkspaceError, WorkspaceManager
from loop_pilot.db.models import Loop, LoopMode, LoopStatus, TaskStatus
from loop_pilot.db.store import LoopStore

logger = logging.getLogger(__name__)


class LoopNotFoundError(Exception):
    """No loop with the given id exists."""


class IterationDriver:
    """Drives loop iterations against the store, workspace and agent runner."""

    def __init__(
        self,
        store: LoopStore,
        config: LoopConfig,
        workspace_manager: WorkspaceManager,
        runner: AgentRunner,
    ):
        self.store = store
        self.config = config
        self.workspace_manager = workspace_manager
        self.runner = runner

    async def drive(self, loop_id: str, observer: Optional[LoopObserver] = None) -> Loop:
        """Run iterations from iteration_current + 1 up to iteration_max.

        Returns the loop as persisted when driving stopped. Returns without
        error if the loop is stopped, paused or waiting for approval.
        """
        observer = observer or LoopObserver()
        loop = self._load(loop_id)

        repo_config = self.config.get_repo(loop.repo_owner, loop.repo_name)
        api_key = self.config.get_agent_key(loop.started_by)
        if repo_config is None:
            await self._fail(loop_id, f"Repo not configured: {loop.repo_full_name}", observer)
            return self._load(loop_id)
        if api_key is None:
            await self._fail(loop_id, f"No agent API key for user {loop.started_by}", observer)
            return self._load(loop_id)

        if loop.status == LoopStatus.PENDING:
            result = self.store.transition_loop(loop_id, LoopStatus.RUNNING)
            if not result.success:
                logger.warning(f"Could not start loop {loop_id}: {result.error}")
                return self._load(loop_id)
            self.store.log(loop_id, "Loop started")
            await self._notify(observer.on_start, result.loop)
        elif loop.status == LoopStatus.RUNNING:
            self.store.log(loop_id, f"Loop resumed at iteration {loop.iteration_current + 1}")
        else:
            logger.info(f"Not driving loop {loop_id} in status {loop.status.value}")
            return loop

        while True:
            current = self._load(loop_id)

            if current.status != LoopStatus.RUNNING:
                # stopped, paused or waiting_approval was set by someone else
                self.store.log(loop_id, f"Loop halted (status: {current.status.value})")
                return current

            if current.iteration_current >= current.iteration_max:
                break

            iteration = current.iteration_current + 1
            current = self.store.update_loop(loop_id, iteration_current=iteration)
            self.store.log(loop_id, f"Starting iteration {iteration}/{current.iteration_max}")

            try:
                result = await self._run_iteration(current, repo_config, api_key)
            except (WorkspaceError, AgentProcessError) as e:
                await self._fail(loop_id, str(e), observer)
                return self._load(loop_id)

            await self._notify(observer.on_iteration, self._load(loop_id), iteration, result.output)

            signal = classify_output(result.output)
            if isinstance(signal, Done):
                await self._complete(
                    loop_id, f"All tasks complete ({signal.variant.value})", observer
                )
                return self._load(loop_id)

            if isinstance(signal, PullRequestFound):
                if await self._handle_pull_request(loop_id, signal, observer):
                    return self._load(loop_id)
            else:
                self.store.log(loop_id, f"Iteration {iteration} finished without a PR or completion marker")

        final = self._load(loop_id)
        if final.status == LoopStatus.RUNNING:
            await self._complete(
                loop_id, f"Reached iteration limit ({final.iteration_max})", observer
            )
        return self._load(loop_id)

    async def _run_iteration(
        self,
        loop: Loop,
        repo_config: RepoConfig,
        api_key: str,
    ) -> IterationResult:
        workspace = await self.workspace_manager.ensure_workspace(
            loop.repo_owner, loop.repo_name, repo_config.default_branch
        )
        return await self.runner.run_iteration(
            loop.id, workspace, api_key, repo_config.prompt_path
        )

    async def _handle_pull_request(
        self,
        loop_id: str,
        signal: PullRequestFound,
        observer: LoopObserver,
    ) -> bool:
        """Record a detected PR. Returns True if driving should stop."""
        current = self._load(loop_id)
        if current.status != LoopStatus.RUNNING:
            self.store.log(
                loop_id,
                f"PR #{signal.pr_number} found after loop left running ({current.status.value})",
                level="warning",
            )
            return True

        pr_number = signal.pr_number
        issue_number = signal.issue_number
        self.store.update_loop(loop_id, current_pr=pr_number, current_issue=issue_number)

        if current.mode == LoopMode.APPROVAL:
            self.store.create_task(loop_id, issue_number, pr_number, TaskStatus.IN_PROGRESS)
            result = self.store.transition_loop(loop_id, LoopStatus.WAITING_APPROVAL)
            if not result.success:
                logger.warning(f"Loop {loop_id} could not wait for approval: {result.error}")
                return True
            self.store.log(loop_id, f"Waiting for approval on PR #{pr_number}")
            await self._notify(
                observer.on_waiting_approval, result.loop, issue_number or 0, pr_number
            )
            return True

        self.store.create_task(loop_id, issue_number, pr_number, TaskStatus.COMPLETE)
        self.store.log(
            loop_id,
            f"Opened PR #{pr_number}",
            data={"pr_number": pr_number, "issue_number": issue_number},
        )
        await self._notify(
            observer.on_task_complete, self._load(loop_id), issue_number or 0, pr_number
        )
        return False

    async def _complete(self, loop_id: str, message: str, observer: LoopObserver) -> None:
        result = self.store.transition_loop(loop_id, LoopStatus.COMPLETE)
        if not result.success:
            logger.warning(f"Loop {loop_id} could not complete: {result.error}")
            return
        self.store.log(loop_id, message)
        await self._notify(observer.on_complete, result.loop)

    async def _fail(self, loop_id: str, message: str, observer: LoopObserver) -> None:
        result = self.store.transition_loop(loop_id, LoopStatus.ERROR, error=message)
        if not result.success:
            # Typically a stop() that killed the process under us
            self.store.log(
                loop_id,
                f"Iteration failure not recorded ({result.error}): {message}",
                level="warning",
            )
            return
        self.store.log(loop_id, f"Error: {message}", level="error")
        await self._notify(observer.on_error, result.loop, message)

    async def _notify(self, hook: Callable[..., Awaitable[None]], *args: Any) -> None:
        try:
            await hook(*args)
        except Exception as e:
            logger.warning(f"Observer {hook.__name__} failed: {e}", exc_info=True)

    def _load(self, loop_id: str) -> Loop:
        loop = self.store.get_loop(loop_id)
        if loop is None:
            raise LoopNotFoundError(f"Loop not found: {loop_id}")
        return loop
