"""
Loop store: the single source of truth for loop status.

`LoopStore` is the storage contract consumed by the engine; `SQLLoopStore`
implements it on SQLAlchemy. Every call opens its own session, so each read
is fresh and returned objects are detached snapshots.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time
from typing import Any, Optional, Protocol, runtime_checkable

from sqlalchemy import Engine, func, select
from sqlalchemy.orm import Session, sessionmaker

from loop_pilot.db.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    Loop,
    LoopLog,
    LoopMode,
    LoopStatus,
    Task,
    TaskStatus,
)
from loop_pilot.db.session import create_session_factory

logger = logging.getLogger(__name__)

# Columns callers may not write through update_loop
_PROTECTED_LOOP_FIELDS = {"id", "status", "version"}


@dataclass
class TransitionResult:
    """Result of a status transition attempt."""

    success: bool
    loop: Optional[Loop]
    error: Optional[str] = None
    previous_status: Optional[LoopStatus] = None
    new_status: Optional[LoopStatus] = None


@dataclass
class LoopStats:
    active: int
    completed_today: int
    total: int


@runtime_checkable
class LoopStore(Protocol):
    """Storage interface for loops, tasks and log entries."""

    def create_loop(
        self,
        repo_owner: str,
        repo_name: str,
        started_by: str,
        channel_id: str = "",
        mode: LoopMode = LoopMode.AUTO,
        iteration_max: int = 10,
        thread_ts: Optional[str] = None,
    ) -> Loop:
        ...

    def get_loop(self, loop_id: str) -> Optional[Loop]:
        ...

    def find_active_loop(self, prefix: str) -> Optional[Loop]:
        ...

    def update_loop(self, loop_id: str, **fields: Any) -> Loop:
        ...

    def transition_loop(
        self,
        loop_id: str,
        new_status: LoopStatus,
        error: Optional[str] = None,
    ) -> TransitionResult:
        ...

    def create_task(
        self,
        loop_id: str,
        issue_number: Optional[int],
        pr_number: Optional[int] = None,
        status: TaskStatus = TaskStatus.PENDING,
    ) -> Task:
        ...

    def get_task(self, task_id: str) -> Optional[Task]:
        ...

    def get_tasks_for_loop(self, loop_id: str) -> list[Task]:
        ...

    def find_task_for_pr(self, loop_id: str, pr_number: int) -> Optional[Task]:
        ...

    def update_task(self, task_id: str, **fields: Any) -> Task:
        ...

    def log(
        self,
        loop_id: str,
        message: str,
        level: str = "info",
        data: Optional[dict] = None,
    ) -> None:
        ...

    def get_loop_logs(self, loop_id: str, limit: int = 50) -> list[LoopLog]:
        ...

    def get_active_loops(self) -> list[Loop]:
        ...

    def get_loops_for_repo(self, repo_owner: str, repo_name: str) -> list[Loop]:
        ...

    def get_recent_loops(self, limit: int = 10) -> list[Loop]:
        ...

    def get_stats(self) -> LoopStats:
        ...


class SQLLoopStore:
    """SQLAlchemy-backed loop store."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._session_factory: sessionmaker[Session] = create_session_factory(engine)

    # Loop operations

    def create_loop(
        self,
        repo_owner: str,
        repo_name: str,
        started_by: str,
        channel_id: str = "",
        mode: LoopMode = LoopMode.AUTO,
        iteration_max: int = 10,
        thread_ts: Optional[str] = None,
    ) -> Loop:
        if iteration_max < 1:
            raise ValueError(f"iteration_max must be at least 1, got {iteration_max}")

        loop = Loop(
            repo_owner=repo_owner,
            repo_name=repo_name,
            started_by=started_by,
            channel_id=channel_id,
            thread_ts=thread_ts,
            mode=mode,
            iteration_max=iteration_max,
            iteration_current=0,
            status=LoopStatus.PENDING,
            version=1,
        )
        with self._session_factory() as session, session.begin():
            session.add(loop)
        return loop

    def get_loop(self, loop_id: str) -> Optional[Loop]:
        with self._session_factory() as session:
            return session.get(Loop, loop_id)

    def find_active_loop(self, prefix: str) -> Optional[Loop]:
        """Match an active loop by full id or id prefix."""
        loop = self.get_loop(prefix)
        if loop:
            return loop
        for candidate in self.get_active_loops():
            if candidate.id.startswith(prefix):
                return candidate
        return None

    def update_loop(self, loop_id: str, **fields: Any) -> Loop:
        """Update non-status fields of a loop.

        Status changes must go through transition_loop.
        """
        protected = _PROTECTED_LOOP_FIELDS.intersection(fields)
        if protected:
            raise ValueError(f"Cannot update {', '.join(sorted(protected))} directly")

        with self._session_factory() as session, session.begin():
            loop = self._get_for_update(session, loop_id)
            for name, value in fields.items():
                if not hasattr(Loop, name):
                    raise ValueError(f"Unknown loop field: {name}")
                setattr(loop, name, value)

            if loop.iteration_current > loop.iteration_max:
                raise ValueError(
                    f"iteration_current ({loop.iteration_current}) exceeds "
                    f"iteration_max ({loop.iteration_max})"
                )
            loop.version += 1
        return loop

    def transition_loop(
        self,
        loop_id: str,
        new_status: LoopStatus,
        error: Optional[str] = None,
    ) -> TransitionResult:
        """Move a loop to a new status if the state machine allows it.

        Invalid transitions (including anything out of a terminal status)
        return an unsuccessful result and change nothing.
        """
        with self._session_factory() as session, session.begin():
            loop = session.get(Loop, loop_id, with_for_update=True)
            if loop is None:
                return TransitionResult(
                    success=False,
                    loop=None,
                    error=f"Loop not found: {loop_id}",
                )

            previous_status = loop.status
            if not loop.can_transition_to(new_status):
                allowed = VALID_TRANSITIONS.get(previous_status, [])
                allowed_str = ", ".join(s.value for s in allowed) if allowed else "none (terminal)"
                return TransitionResult(
                    success=False,
                    loop=loop,
                    error=(
                        f"Invalid transition: {previous_status.value} -> {new_status.value}. "
                        f"Allowed from {previous_status.value}: {allowed_str}"
                    ),
                    previous_status=previous_status,
                )

            now = datetime.utcnow()
            loop.status = new_status

            if previous_status == LoopStatus.WAITING_APPROVAL:
                loop.current_pr = None
                loop.current_issue = None
            if new_status == LoopStatus.RUNNING and loop.started_at is None:
                loop.started_at = now
            if new_status in TERMINAL_STATUSES:
                loop.completed_at = now
            if new_status == LoopStatus.ERROR:
                loop.error = error

            loop.version += 1

        logger.info(f"Loop {loop_id}: {previous_status.value} -> {new_status.value}")

        return TransitionResult(
            success=True,
            loop=loop,
            previous_status=previous_status,
            new_status=new_status,
        )

    # Task operations

    def create_task(
        self,
        loop_id: str,
        issue_number: Optional[int],
        pr_number: Optional[int] = None,
        status: TaskStatus = TaskStatus.PENDING,
    ) -> Task:
        task = Task(
            loop_id=loop_id,
            issue_number=issue_number,
            pr_number=pr_number,
            status=status,
            started_at=datetime.utcnow(),
        )
        if status in (TaskStatus.COMPLETE, TaskStatus.SKIPPED, TaskStatus.ERROR):
            task.completed_at = task.started_at
        with self._session_factory() as session, session.begin():
            session.add(task)
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._session_factory() as session:
            return session.get(Task, task_id)

    def get_tasks_for_loop(self, loop_id: str) -> list[Task]:
        with self._session_factory() as session:
            stmt = select(Task).where(Task.loop_id == loop_id).order_by(Task.started_at)
            return list(session.scalars(stmt))

    def find_task_for_pr(self, loop_id: str, pr_number: int) -> Optional[Task]:
        """Most recent task in a loop for a PR number."""
        with self._session_factory() as session:
            stmt = (
                select(Task)
                .where(Task.loop_id == loop_id, Task.pr_number == pr_number)
                .order_by(Task.started_at.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

    def update_task(self, task_id: str, **fields: Any) -> Task:
        with self._session_factory() as session, session.begin():
            task = session.get(Task, task_id)
            if task is None:
                raise KeyError(f"Task not found: {task_id}")
            for name, value in fields.items():
                if name == "id" or not hasattr(Task, name):
                    raise ValueError(f"Cannot update task field: {name}")
                setattr(task, name, value)
            if task.status in (TaskStatus.COMPLETE, TaskStatus.SKIPPED, TaskStatus.ERROR):
                task.completed_at = task.completed_at or datetime.utcnow()
        return task

    # Logging

    def log(
        self,
        loop_id: str,
        message: str,
        level: str = "info",
        data: Optional[dict] = None,
    ) -> None:
        with self._session_factory() as session, session.begin():
            session.add(LoopLog(loop_id=loop_id, level=level, message=message, data=data))

    def get_loop_logs(self, loop_id: str, limit: int = 50) -> list[LoopLog]:
        """Most recent log entries first."""
        with self._session_factory() as session:
            stmt = (
                select(LoopLog)
                .where(LoopLog.loop_id == loop_id)
                .order_by(LoopLog.timestamp.desc(), LoopLog.id.desc())
                .limit(limit)
            )
            return list(session.scalars(stmt))

    # Queries

    def get_active_loops(self) -> list[Loop]:
        with self._session_factory() as session:
            stmt = select(Loop).where(Loop.status.in_(list(ACTIVE_STATUSES))).order_by(Loop.created_at)
            return list(session.scalars(stmt))

    def get_loops_for_repo(self, repo_owner: str, repo_name: str) -> list[Loop]:
        """Active loops for one repository."""
        with self._session_factory() as session:
            stmt = select(Loop).where(
                Loop.repo_owner == repo_owner,
                Loop.repo_name == repo_name,
                Loop.status.in_(list(ACTIVE_STATUSES)),
            )
            return list(session.scalars(stmt))

    def get_recent_loops(self, limit: int = 10) -> list[Loop]:
        with self._session_factory() as session:
            stmt = select(Loop).order_by(Loop.created_at.desc()).limit(limit)
            return list(session.scalars(stmt))

    def get_stats(self) -> LoopStats:
        start_of_day = datetime.combine(datetime.utcnow().date(), time.min)
        with self._session_factory() as session:
            active = session.scalar(
                select(func.count()).select_from(Loop).where(Loop.status.in_(list(ACTIVE_STATUSES)))
            )
            completed_today = session.scalar(
                select(func.count())
                .select_from(Loop)
                .where(Loop.status == LoopStatus.COMPLETE, Loop.completed_at >= start_of_day)
            )
            total = session.scalar(select(func.count()).select_from(Loop))
        return LoopStats(
            active=active or 0,
            completed_today=completed_today or 0,
            total=total or 0,
        )

    def _get_for_update(self, session: Session, loop_id: str) -> Loop:
        loop = session.get(Loop, loop_id, with_for_update=True)
        if loop is None:
            raise KeyError(f"Loop not found: {loop_id}")
        return loop
