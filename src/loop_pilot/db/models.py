"""Database models for Loop Pilot."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class LoopStatus(str, enum.Enum):
    """Loop lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    WAITING_APPROVAL = "waiting_approval"
    COMPLETE = "complete"
    ERROR = "error"
    STOPPED = "stopped"


class LoopMode(str, enum.Enum):
    """Whether a detected PR needs a human decision before continuing."""

    AUTO = "auto"
    APPROVAL = "approval"


class TaskStatus(str, enum.Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    SKIPPED = "skipped"
    ERROR = "error"


ACTIVE_STATUSES: frozenset[LoopStatus] = frozenset({
    LoopStatus.PENDING,
    LoopStatus.RUNNING,
    LoopStatus.PAUSED,
    LoopStatus.WAITING_APPROVAL,
})

TERMINAL_STATUSES: frozenset[LoopStatus] = frozenset({
    LoopStatus.COMPLETE,
    LoopStatus.ERROR,
    LoopStatus.STOPPED,
})

VALID_TRANSITIONS: dict[LoopStatus, list[LoopStatus]] = {
    LoopStatus.PENDING: [
        LoopStatus.RUNNING,
        LoopStatus.PAUSED,
        LoopStatus.STOPPED,
        LoopStatus.ERROR,
    ],
    LoopStatus.RUNNING: [
        LoopStatus.PAUSED,
        LoopStatus.WAITING_APPROVAL,
        LoopStatus.COMPLETE,
        LoopStatus.ERROR,
        LoopStatus.STOPPED,
    ],
    LoopStatus.PAUSED: [LoopStatus.RUNNING, LoopStatus.STOPPED],
    LoopStatus.WAITING_APPROVAL: [LoopStatus.RUNNING, LoopStatus.STOPPED],
    LoopStatus.COMPLETE: [],
    LoopStatus.ERROR: [],
    LoopStatus.STOPPED: [],
}


# =============================================================================
# Models
# =============================================================================


class Loop(Base):
    """One supervised run of the coding agent against a repository."""

    __tablename__ = "loops"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )

    # Repository info
    repo_owner: Mapped[str] = mapped_column(String(255), index=True)
    repo_name: Mapped[str] = mapped_column(String(255), index=True)

    # Notification target
    channel_id: Mapped[str] = mapped_column(String(255), default="")
    thread_ts: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # State
    status: Mapped[LoopStatus] = mapped_column(
        Enum(LoopStatus), default=LoopStatus.PENDING, index=True
    )
    mode: Mapped[LoopMode] = mapped_column(Enum(LoopMode), default=LoopMode.AUTO)
    version: Mapped[int] = mapped_column(Integer, default=1)

    # PR under review
    current_issue: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_pr: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Progress
    iteration_current: Mapped[int] = mapped_column(Integer, default=0)
    iteration_max: Mapped[int] = mapped_column(Integer, default=10)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Error tracking
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_by: Mapped[str] = mapped_column(String(100))

    # Relationships
    tasks: Mapped[list["Task"]] = relationship("Task", back_populates="loop")
    logs: Mapped[list["LoopLog"]] = relationship("LoopLog", back_populates="loop")

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def can_transition_to(self, new_status: LoopStatus) -> bool:
        """Check if a transition to new_status is valid."""
        return new_status in VALID_TRANSITIONS.get(self.status, [])


class Task(Base):
    """One attempt against an issue within a loop (informational)."""

    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid4())
    )
    loop_id: Mapped[str] = mapped_column(String(36), ForeignKey("loops.id"), index=True)

    # Best-effort guess from agent output, may be absent
    issue_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pr_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus), default=TaskStatus.PENDING
    )

    # Timestamps
    started_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    loop: Mapped["Loop"] = relationship("Loop", back_populates="tasks")


class LoopLog(Base):
    """Append-only loop activity log."""

    __tablename__ = "loop_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    loop_id: Mapped[str] = mapped_column(String(36), ForeignKey("loops.id"), index=True)

    timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    level: Mapped[str] = mapped_column(String(20), default="info")  # info, warning, error
    message: Mapped[str] = mapped_column(Text)

    # Structured data
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Relationships
    loop: Mapped["Loop"] = relationship("Loop", back_populates="logs")
