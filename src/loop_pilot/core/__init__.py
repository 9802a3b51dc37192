"""Core modules for Loop Pilot.

Contains the fundamental building blocks:
- output: classification of agent output (completion markers, PR links)
- process: agent subprocess execution and supervision
- workspace: per-repository git checkouts
- driver: the per-loop iteration state machine
- approval: approve / skip / stop / pause / resume decisions
- orchestrator: wiring, concurrency limits and loop start
"""

from loop_pilot.core.output import (
    Done,
    DoneVariant,
    NoSignal,
    PullRequestFound,
    classify_output,
)
from loop_pilot.core.process import (
    AgentProcessError,
    AgentRunner,
    IterationResult,
    ProcessSupervisor,
)
from loop_pilot.core.workspace import (
    WorkspaceError,
    WorkspaceManager,
)
from loop_pilot.core.driver import (
    IterationDriver,
    LoopNotFoundError,
)
from loop_pilot.core.approval import (
    ApprovalController,
    InvalidLoopStateError,
    MergeFailedError,
)
from loop_pilot.core.orchestrator import (
    ConcurrencyLimitError,
    LoopOrchestrator,
    get_orchestrator,
)

__all__ = [
    # Output classification
    "Done",
    "DoneVariant",
    "NoSignal",
    "PullRequestFound",
    "classify_output",
    # Process execution
    "AgentProcessError",
    "AgentRunner",
    "IterationResult",
    "ProcessSupervisor",
    # Workspace management
    "WorkspaceError",
    "WorkspaceManager",
    # Driver
    "IterationDriver",
    "LoopNotFoundError",
    # Approval
    "ApprovalController",
    "InvalidLoopStateError",
    "MergeFailedError",
    # Orchestrator
    "ConcurrencyLimitError",
    "LoopOrchestrator",
    "get_orchestrator",
]
