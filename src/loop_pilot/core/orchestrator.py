"""Loop Orchestrator for Loop Pilot.

The orchestrator is responsible for:
1. Building the engine components from configuration
2. Enforcing concurrency limits before a loop is created
3. Starting loops and handing them to the driver pool
4. Routing stop / approve / skip / pause / resume requests
5. Shutting everything down cleanly
"""

import logging
from dataclasses import dataclass
from typing import Optional

from loop_pilot.config import ConfigurationError, LoopConfig, Settings, load_config, settings
from loop_pilot.core.approval import ApprovalController, StopResult
from loop_pilot.core.driver import IterationDriver, LoopNotFoundError
from loop_pilot.core.notifications import LoggingNotifier, LoopObserver, WebhookNotifier
from loop_pilot.core.pool import DriverPool
from loop_pilot.core.process import AgentRunner, ProcessSupervisor
from loop_pilot.core.workspace import WorkspaceManager
from loop_pilot.db.models import Loop, LoopLog, LoopMode, Task
from loop_pilot.db.session import create_db_engine, init_db
from loop_pilot.db.store import LoopStats, LoopStore, SQLLoopStore
from loop_pilot.github.client import GitHubClient, Issue

logger = logging.getLogger(__name__)


class ConcurrencyLimitError(Exception):
    """Starting another loop would exceed a configured concurrency limit."""


@dataclass
class LoopStatusReport:
    active: list[Loop]
    stats: LoopStats


class LoopOrchestrator:
    """Wires the loop engine together and exposes its operations."""

    def __init__(
        self,
        store: LoopStore,
        config: LoopConfig,
        github: Optional[GitHubClient] = None,
        workspace_manager: Optional[WorkspaceManager] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        runner: Optional[AgentRunner] = None,
        observer: Optional[LoopObserver] = None,
    ):
        self.store = store
        self.config = config
        self.github = github or GitHubClient(config.github_token)
        self.workspace_manager = workspace_manager or WorkspaceManager(
            github_token=config.github_token
        )
        if supervisor is None:
            supervisor = runner.supervisor if runner is not None else ProcessSupervisor()
        self.supervisor = supervisor
        self.runner = runner or AgentRunner(self.supervisor)
        self.observer = observer or _default_observer(config)

        self.driver = IterationDriver(store, config, self.workspace_manager, self.runner)
        self.pool = DriverPool(self.driver)
        self.approvals = ApprovalController(
            store, self.github, self.supervisor, self.pool, observer=self.observer
        )

    def start_loop(
        self,
        repo_owner: str,
        repo_name: str,
        started_by: str,
        channel_id: str = "",
        mode: LoopMode = LoopMode.AUTO,
        iteration_max: Optional[int] = None,
        thread_ts: Optional[str] = None,
    ) -> Loop:
        """Create a loop and start driving it in the background.

        Raises:
            ConfigurationError: repo not configured or no agent key for the user
            ConcurrencyLimitError: too many active loops overall or for the repo
        """
        repo_config = self.config.get_repo(repo_owner, repo_name)
        if repo_config is None:
            raise ConfigurationError(f"Repo not configured: {repo_owner}/{repo_name}")
        if self.config.get_agent_key(started_by) is None:
            raise ConfigurationError(f"No agent API key for user {started_by}")

        limits = self.config.concurrency
        active = self.store.get_active_loops()
        if len(active) >= limits.max_parallel_loops:
            raise ConcurrencyLimitError(
                f"{len(active)} loops already active (limit {limits.max_parallel_loops})"
            )
        repo_loops = self.store.get_loops_for_repo(repo_owner, repo_name)
        if len(repo_loops) >= limits.max_per_repo:
            raise ConcurrencyLimitError(
                f"{repo_config.full_name} already has {len(repo_loops)} active loop(s) "
                f"(limit {limits.max_per_repo})"
            )

        loop = self.store.create_loop(
            repo_owner=repo_owner,
            repo_name=repo_name,
            started_by=started_by,
            channel_id=channel_id,
            mode=mode,
            iteration_max=iteration_max or limits.default_iterations,
            thread_ts=thread_ts,
        )
        self.store.log(
            loop.id,
            "Loop created",
            data={"mode": mode.value, "iteration_max": loop.iteration_max},
        )
        logger.info(f"Created loop {loop.id} on {repo_config.full_name} for {started_by}")

        self.pool.submit(loop.id, self.observer)
        return loop

    def stop_loop(self, loop_id: str) -> StopResult:
        return self.approvals.stop(loop_id)

    async def approve(self, loop_id: str) -> Loop:
        return await self.approvals.approve(loop_id)

    async def skip(self, loop_id: str) -> Loop:
        return await self.approvals.skip(loop_id)

    def pause(self, loop_id: str) -> Loop:
        return self.approvals.pause(loop_id)

    def resume(self, loop_id: str) -> Loop:
        return self.approvals.resume(loop_id)

    def get_loop(self, loop_id: str) -> Loop:
        loop = self.store.find_active_loop(loop_id)
        if loop is None:
            raise LoopNotFoundError(f"Loop not found: {loop_id}")
        return loop

    def get_tasks(self, loop_id: str) -> list[Task]:
        return self.store.get_tasks_for_loop(loop_id)

    def get_logs(self, loop_id: str, limit: int = 50) -> list[LoopLog]:
        return self.store.get_loop_logs(loop_id, limit=limit)

    def status(self) -> LoopStatusReport:
        return LoopStatusReport(active=self.store.get_active_loops(), stats=self.store.get_stats())

    async def create_issue(
        self,
        repo_owner: str,
        repo_name: str,
        title: str,
        body: Optional[str] = None,
    ) -> Issue:
        """Open a GitHub issue on a configured repository for the agent to pick up."""
        if self.config.get_repo(repo_owner, repo_name) is None:
            raise ConfigurationError(f"Repo not configured: {repo_owner}/{repo_name}")
        return await self.github.create_issue(repo_owner, repo_name, title, body)

    async def shutdown(self) -> None:
        """Cancel running drives and terminate agent processes."""
        terminated = self.supervisor.terminate_all()
        await self.pool.shutdown()
        logger.info(f"Orchestrator shut down ({terminated} agent process(es) terminated)")


def _default_observer(config: LoopConfig) -> LoopObserver:
    notifications = config.notifications
    if notifications.webhook_url:
        return WebhookNotifier(
            notifications.webhook_url,
            iteration_updates=notifications.iteration_updates,
        )
    return LoggingNotifier(iteration_updates=notifications.iteration_updates)


def build_orchestrator(app_settings: Optional[Settings] = None) -> LoopOrchestrator:
    """Build an orchestrator from settings and the YAML config file."""
    app_settings = app_settings or settings
    config = load_config(app_settings.config_path)

    engine = create_db_engine(app_settings.database_url)
    init_db(engine)

    supervisor = ProcessSupervisor()
    runner = AgentRunner(
        supervisor,
        binary=app_settings.agent_binary,
        autonomy=app_settings.agent_autonomy,
        key_env=app_settings.agent_key_env,
        timeout=app_settings.agent_timeout_seconds,
        tail_chars=app_settings.output_tail_chars,
    )

    return LoopOrchestrator(
        store=SQLLoopStore(engine),
        config=config,
        github=GitHubClient(config.github_token, api_url=app_settings.github_api_url),
        workspace_manager=WorkspaceManager(
            workspaces_dir=app_settings.workspaces_path,
            github_token=config.github_token,
        ),
        supervisor=supervisor,
        runner=runner,
    )


# Singleton instance
_orchestrator: Optional[LoopOrchestrator] = None


def get_orchestrator() -> LoopOrchestrator:
    """Get the singleton orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator()
    return _orchestrator
