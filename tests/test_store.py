"""Tests for the SQL loop store and its state machine."""

from datetime import datetime, timedelta

import pytest

from loop_pilot.db.models import (
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    LoopMode,
    LoopStatus,
    TaskStatus,
)
from loop_pilot.db.store import LoopStore


def _create(store, **kwargs):
    params = {"repo_owner": "acme", "repo_name": "widgets", "started_by": "U1"}
    params.update(kwargs)
    return store.create_loop(**params)


class TestTransitionTable:
    def test_all_statuses_have_entry(self):
        for status in LoopStatus:
            assert status in VALID_TRANSITIONS

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert VALID_TRANSITIONS[status] == []

    def test_nothing_returns_to_pending(self):
        for targets in VALID_TRANSITIONS.values():
            assert LoopStatus.PENDING not in targets


class TestCreateLoop:
    def test_defaults(self, store):
        loop = _create(store)
        assert loop.status == LoopStatus.PENDING
        assert loop.mode == LoopMode.AUTO
        assert loop.iteration_current == 0
        assert loop.iteration_max == 10
        assert loop.current_pr is None
        assert loop.started_at is None
        assert len(loop.id) == 36

    def test_rejects_zero_iterations(self, store):
        with pytest.raises(ValueError):
            _create(store, iteration_max=0)

    def test_round_trip(self, store):
        loop = _create(store, mode=LoopMode.APPROVAL, channel_id="C1", thread_ts="123.4")
        fetched = store.get_loop(loop.id)
        assert fetched.mode == LoopMode.APPROVAL
        assert fetched.channel_id == "C1"
        assert fetched.thread_ts == "123.4"

    def test_get_unknown(self, store):
        assert store.get_loop("missing") is None

    def test_satisfies_protocol(self, store):
        assert isinstance(store, LoopStore)


class TestTransitions:
    def test_pending_to_running_sets_started_at(self, store):
        loop = _create(store)
        result = store.transition_loop(loop.id, LoopStatus.RUNNING)
        assert result.success
        assert result.previous_status == LoopStatus.PENDING
        assert result.new_status == LoopStatus.RUNNING
        assert store.get_loop(loop.id).started_at is not None

    def test_invalid_transition_changes_nothing(self, store):
        loop = _create(store)
        result = store.transition_loop(loop.id, LoopStatus.WAITING_APPROVAL)
        assert not result.success
        assert "Invalid transition: pending -> waiting_approval" in result.error
        fetched = store.get_loop(loop.id)
        assert fetched.status == LoopStatus.PENDING
        assert fetched.version == loop.version

    @pytest.mark.parametrize("terminal", [LoopStatus.COMPLETE, LoopStatus.ERROR, LoopStatus.STOPPED])
    def test_terminal_is_final(self, store, terminal):
        loop = _create(store)
        store.transition_loop(loop.id, LoopStatus.RUNNING)
        assert store.transition_loop(loop.id, terminal, error="boom").success

        for target in LoopStatus:
            result = store.transition_loop(loop.id, target)
            assert not result.success
            assert "none (terminal)" in result.error
        assert store.get_loop(loop.id).status == terminal

    def test_terminal_sets_completed_at(self, store):
        loop = _create(store)
        store.transition_loop(loop.id, LoopStatus.RUNNING)
        store.transition_loop(loop.id, LoopStatus.COMPLETE)
        assert store.get_loop(loop.id).completed_at is not None

    def test_error_records_message(self, store):
        loop = _create(store)
        store.transition_loop(loop.id, LoopStatus.ERROR, error="Repo not configured")
        fetched = store.get_loop(loop.id)
        assert fetched.status == LoopStatus.ERROR
        assert fetched.error == "Repo not configured"

    def test_leaving_waiting_approval_clears_pr(self, store):
        loop = _create(store, mode=LoopMode.APPROVAL)
        store.transition_loop(loop.id, LoopStatus.RUNNING)
        store.update_loop(loop.id, current_pr=42, current_issue=7)
        store.transition_loop(loop.id, LoopStatus.WAITING_APPROVAL)
        assert store.get_loop(loop.id).current_pr == 42

        store.transition_loop(loop.id, LoopStatus.STOPPED)
        fetched = store.get_loop(loop.id)
        assert fetched.current_pr is None
        assert fetched.current_issue is None

    def test_started_at_kept_on_resume(self, store):
        loop = _create(store)
        first = store.transition_loop(loop.id, LoopStatus.RUNNING).loop.started_at
        store.transition_loop(loop.id, LoopStatus.PAUSED)
        store.transition_loop(loop.id, LoopStatus.RUNNING)
        assert store.get_loop(loop.id).started_at == first

    def test_version_increments(self, store):
        loop = _create(store)
        store.transition_loop(loop.id, LoopStatus.RUNNING)
        store.update_loop(loop.id, iteration_current=1)
        assert store.get_loop(loop.id).version == loop.version + 2

    def test_unknown_loop(self, store):
        result = store.transition_loop("missing", LoopStatus.RUNNING)
        assert not result.success
        assert result.loop is None


class TestUpdateLoop:
    def test_updates_fields(self, store):
        loop = _create(store)
        updated = store.update_loop(loop.id, iteration_current=3, current_pr=5)
        assert updated.iteration_current == 3
        assert store.get_loop(loop.id).current_pr == 5

    def test_status_must_use_transition(self, store):
        loop = _create(store)
        with pytest.raises(ValueError, match="status"):
            store.update_loop(loop.id, status=LoopStatus.COMPLETE)

    def test_iteration_cannot_exceed_max(self, store):
        loop = _create(store, iteration_max=2)
        with pytest.raises(ValueError, match="exceeds"):
            store.update_loop(loop.id, iteration_current=3)
        assert store.get_loop(loop.id).iteration_current == 0

    def test_unknown_field(self, store):
        loop = _create(store)
        with pytest.raises(ValueError, match="Unknown"):
            store.update_loop(loop.id, colour="blue")

    def test_unknown_loop(self, store):
        with pytest.raises(KeyError):
            store.update_loop("missing", iteration_current=1)


class TestTasks:
    def test_create_and_list(self, store):
        loop = _create(store)
        store.create_task(loop.id, 7, 42, TaskStatus.IN_PROGRESS)
        store.create_task(loop.id, None, 43, TaskStatus.COMPLETE)

        tasks = store.get_tasks_for_loop(loop.id)
        assert [t.pr_number for t in tasks] == [42, 43]
        assert tasks[0].completed_at is None
        assert tasks[1].completed_at is not None
        assert tasks[1].issue_number is None

    def test_find_for_pr_and_update(self, store):
        loop = _create(store)
        store.create_task(loop.id, 7, 42, TaskStatus.IN_PROGRESS)

        task = store.find_task_for_pr(loop.id, 42)
        updated = store.update_task(task.id, status=TaskStatus.SKIPPED)

        assert updated.status == TaskStatus.SKIPPED
        assert updated.completed_at is not None
        assert store.find_task_for_pr(loop.id, 99) is None

    def test_update_unknown_task(self, store):
        with pytest.raises(KeyError):
            store.update_task("missing", status=TaskStatus.COMPLETE)


class TestLogsAndQueries:
    def test_logs_newest_first(self, store):
        loop = _create(store)
        store.log(loop.id, "first")
        store.log(loop.id, "second", level="warning", data={"pr": 1})

        logs = store.get_loop_logs(loop.id)
        assert [entry.message for entry in logs] == ["second", "first"]
        assert logs[0].level == "warning"
        assert logs[0].data == {"pr": 1}

    def test_logs_limit(self, store):
        loop = _create(store)
        for i in range(5):
            store.log(loop.id, f"entry {i}")
        assert len(store.get_loop_logs(loop.id, limit=2)) == 2

    def test_active_loops(self, store):
        running = _create(store)
        store.transition_loop(running.id, LoopStatus.RUNNING)
        finished = _create(store, repo_name="gadgets")
        store.transition_loop(finished.id, LoopStatus.STOPPED)

        active_ids = [loop.id for loop in store.get_active_loops()]
        assert active_ids == [running.id]
        assert [l.id for l in store.get_loops_for_repo("acme", "widgets")] == [running.id]
        assert store.get_loops_for_repo("acme", "gadgets") == []

    def test_find_active_loop_by_prefix(self, store):
        loop = _create(store)
        assert store.find_active_loop(loop.id[:8]).id == loop.id
        assert store.find_active_loop(loop.id).id == loop.id
        assert store.find_active_loop("zzzz") is None

    def test_recent_loops(self, store):
        for _ in range(3):
            _create(store)
        assert len(store.get_recent_loops(limit=2)) == 2

    def test_stats(self, store):
        active = _create(store)
        done = _create(store)
        store.transition_loop(done.id, LoopStatus.RUNNING)
        store.transition_loop(done.id, LoopStatus.COMPLETE)
        stale = _create(store)
        store.transition_loop(stale.id, LoopStatus.RUNNING)
        store.transition_loop(stale.id, LoopStatus.COMPLETE)

        # Pretend the second completion happened two days ago
        with store._session_factory() as session, session.begin():
            from loop_pilot.db.models import Loop

            session.get(Loop, stale.id).completed_at = datetime.utcnow() - timedelta(days=2)

        stats = store.get_stats()
        assert stats.active == 1
        assert stats.completed_today == 1
        assert stats.total == 3
        assert active.id
