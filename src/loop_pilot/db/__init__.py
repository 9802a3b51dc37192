"""Persistence for loops, tasks and loop logs."""

from loop_pilot.db.models import Loop, LoopLog, LoopMode, LoopStatus, Task, TaskStatus
from loop_pilot.db.session import create_db_engine, init_db
from loop_pilot.db.store import LoopStats, LoopStore, SQLLoopStore, TransitionResult

__all__ = [
    "Loop",
    "LoopLog",
    "LoopMode",
    "LoopStatus",
    "Task",
    "TaskStatus",
    "create_db_engine",
    "init_db",
    "LoopStats",
    "LoopStore",
    "SQLLoopStore",
    "TransitionResult",
]
