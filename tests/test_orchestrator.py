"""Tests for loop start, concurrency limits and status reporting."""

import asyncio

import pytest

from loop_pilot.config import ConfigurationError
from loop_pilot.core.notifications import LoggingNotifier, WebhookNotifier
from loop_pilot.core.orchestrator import (
    ConcurrencyLimitError,
    LoopOrchestrator,
    _default_observer,
)
from loop_pilot.db.models import LoopMode, LoopStatus

from tests.conftest import (
    FakeGitHub,
    FakeWorkspaceManager,
    RecordingObserver,
    ScriptedRunner,
    pr_output,
)


@pytest.fixture
def make_orchestrator(store, loop_config, tmp_path):
    def build(steps=None):
        runner = ScriptedRunner(steps or [])
        return LoopOrchestrator(
            store=store,
            config=loop_config,
            github=FakeGitHub(),
            workspace_manager=FakeWorkspaceManager(tmp_path),
            runner=runner,
            observer=RecordingObserver(),
        )

    return build


class TestStartLoop:
    def test_start_runs_in_background(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["<done>COMPLETE</done>"])

        async def scenario():
            loop = orchestrator.start_loop("acme", "widgets", "U1", channel_id="C1")
            assert loop.status == LoopStatus.PENDING
            assert loop.iteration_max == 10
            await orchestrator.pool.wait(loop.id)
            return loop

        loop = asyncio.run(scenario())

        assert store.get_loop(loop.id).status == LoopStatus.COMPLETE
        assert orchestrator.observer.names() == ["start", "iteration", "complete"]
        assert orchestrator.supervisor is orchestrator.runner.supervisor

    def test_unconfigured_repo_rejected_before_create(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(ConfigurationError, match="Repo not configured"):
            orchestrator.start_loop("acme", "unknown", "U1")
        assert store.get_recent_loops() == []

    def test_missing_key_rejected(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        orchestrator.config.agent.default_api_key = None
        with pytest.raises(ConfigurationError, match="No agent API key"):
            orchestrator.start_loop("acme", "widgets", "U2")

    def test_per_repo_limit(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        store.create_loop("acme", "widgets", "U1")
        with pytest.raises(ConcurrencyLimitError, match="acme/widgets"):
            orchestrator.start_loop("acme", "widgets", "U1")
        assert len(store.get_recent_loops()) == 1

    def test_global_limit(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        store.create_loop("acme", "gadgets", "U1")
        store.create_loop("other", "thing", "U1")
        with pytest.raises(ConcurrencyLimitError, match="limit 2"):
            orchestrator.start_loop("acme", "widgets", "U1")

    def test_finished_loops_do_not_count(self, store, make_orchestrator):
        orchestrator = make_orchestrator(["<done>NO_TASKS</done>"])
        previous = store.create_loop("acme", "widgets", "U1")
        store.transition_loop(previous.id, LoopStatus.STOPPED)

        async def scenario():
            loop = orchestrator.start_loop("acme", "widgets", "U1", iteration_max=2)
            await orchestrator.pool.wait(loop.id)
            return loop

        loop = asyncio.run(scenario())
        assert store.get_loop(loop.id).status == LoopStatus.COMPLETE


class TestLoopOperations:
    def test_approval_flow_through_orchestrator(self, store, make_orchestrator):
        orchestrator = make_orchestrator([pr_output(42), "<done>COMPLETE</done>"])

        async def scenario():
            loop = orchestrator.start_loop("acme", "widgets", "U1", mode=LoopMode.APPROVAL)
            await orchestrator.pool.wait(loop.id)
            assert orchestrator.get_loop(loop.id[:8]).status == LoopStatus.WAITING_APPROVAL
            await orchestrator.approve(loop.id)
            await orchestrator.pool.wait(loop.id)
            return loop

        loop = asyncio.run(scenario())

        assert orchestrator.github.merged == [("acme", "widgets", 42)]
        assert store.get_loop(loop.id).status == LoopStatus.COMPLETE

    def test_status_report(self, store, make_orchestrator):
        orchestrator = make_orchestrator()
        store.create_loop("acme", "widgets", "U1")
        report = orchestrator.status()
        assert len(report.active) == 1
        assert report.stats.total == 1

    def test_create_issue_requires_configured_repo(self, make_orchestrator):
        orchestrator = make_orchestrator()
        with pytest.raises(ConfigurationError):
            asyncio.run(orchestrator.create_issue("acme", "unknown", "t"))

        issue = asyncio.run(orchestrator.create_issue("acme", "widgets", "Add docs", "please"))
        assert issue.title == "Add docs"
        assert orchestrator.github.created == [("acme", "widgets", "Add docs", "please")]


class TestDefaultObserver:
    def test_logging_by_default(self, loop_config):
        assert type(_default_observer(loop_config)) is LoggingNotifier

    def test_webhook_when_configured(self, loop_config):
        loop_config.notifications.webhook_url = "https://hooks.test/x"
        assert isinstance(_default_observer(loop_config), WebhookNotifier)
