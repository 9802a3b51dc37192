"""Loop control routes for Loop Pilot.

Handles:
- Starting loops and listing active ones
- Stop / approve / skip / pause / resume decisions
- Creating GitHub issues for configured repositories
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from loop_pilot.config import ConfigurationError
from loop_pilot.core.approval import InvalidLoopStateError, MergeFailedError
from loop_pilot.core.driver import LoopNotFoundError
from loop_pilot.core.orchestrator import (
    ConcurrencyLimitError,
    LoopOrchestrator,
    get_orchestrator,
)
from loop_pilot.db.models import LoopMode, LoopStatus, TaskStatus
from loop_pilot.github.client import GitHubError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["loops"])


# =============================================================================
# Schemas
# =============================================================================


class StartLoopRequest(BaseModel):
    repo_owner: str
    repo_name: str
    started_by: str
    channel_id: str = ""
    thread_ts: Optional[str] = None
    mode: LoopMode = LoopMode.AUTO
    iteration_max: Optional[int] = Field(default=None, ge=1)


class CreateIssueRequest(BaseModel):
    title: str
    body: Optional[str] = None


class LoopView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    repo_owner: str
    repo_name: str
    channel_id: str
    thread_ts: Optional[str]
    status: LoopStatus
    mode: LoopMode
    current_issue: Optional[int]
    current_pr: Optional[int]
    iteration_current: int
    iteration_max: int
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error: Optional[str]
    started_by: str
    version: int


class TaskView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    issue_number: Optional[int]
    pr_number: Optional[int]
    status: TaskStatus
    started_at: datetime
    completed_at: Optional[datetime]
    error: Optional[str]


class LoopDetail(LoopView):
    tasks: list[TaskView] = Field(default_factory=list)


class LogView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    level: str
    message: str
    data: Optional[dict[str, Any]]


class StatsView(BaseModel):
    active: int
    completed_today: int
    total: int


class StatusView(BaseModel):
    loops: list[LoopView]
    stats: StatsView


class StopView(BaseModel):
    stopped: bool
    message: str
    process_terminated: bool


# =============================================================================
# Routes
# =============================================================================


@router.get("/loops", response_model=StatusView)
async def list_loops(orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    """Active loops and overall stats."""
    report = orchestrator.status()
    return StatusView(
        loops=[LoopView.model_validate(loop) for loop in report.active],
        stats=StatsView(**vars(report.stats)),
    )


@router.post("/loops", response_model=LoopView, status_code=201)
async def start_loop(
    request: StartLoopRequest,
    orchestrator: LoopOrchestrator = Depends(get_orchestrator),
):
    """Create a loop and start it in the background."""
    try:
        loop = orchestrator.start_loop(
            repo_owner=request.repo_owner,
            repo_name=request.repo_name,
            started_by=request.started_by,
            channel_id=request.channel_id,
            mode=request.mode,
            iteration_max=request.iteration_max,
            thread_ts=request.thread_ts,
        )
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConcurrencyLimitError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return LoopView.model_validate(loop)


@router.get("/loops/{loop_id}", response_model=LoopDetail)
async def get_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    loop = _find(orchestrator, loop_id)
    # Loop objects are detached snapshots, so tasks are loaded separately
    return LoopDetail(
        **LoopView.model_validate(loop).model_dump(),
        tasks=[TaskView.model_validate(t) for t in orchestrator.get_tasks(loop.id)],
    )


@router.get("/loops/{loop_id}/logs", response_model=list[LogView])
async def get_loop_logs(
    loop_id: str,
    limit: int = 50,
    orchestrator: LoopOrchestrator = Depends(get_orchestrator),
):
    loop = _find(orchestrator, loop_id)
    return [LogView.model_validate(entry) for entry in orchestrator.get_logs(loop.id, limit)]


@router.post("/loops/{loop_id}/stop", response_model=StopView)
async def stop_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    loop = _find(orchestrator, loop_id)
    result = orchestrator.stop_loop(loop.id)
    return StopView(**vars(result))


@router.post("/loops/{loop_id}/approve", response_model=LoopView)
async def approve_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    """Merge the PR under review and continue."""
    loop = _find(orchestrator, loop_id)
    try:
        return LoopView.model_validate(await orchestrator.approve(loop.id))
    except InvalidLoopStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MergeFailedError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.post("/loops/{loop_id}/skip", response_model=LoopView)
async def skip_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    """Continue without merging the PR under review."""
    loop = _find(orchestrator, loop_id)
    try:
        return LoopView.model_validate(await orchestrator.skip(loop.id))
    except InvalidLoopStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/loops/{loop_id}/pause", response_model=LoopView)
async def pause_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    loop = _find(orchestrator, loop_id)
    try:
        return LoopView.model_validate(orchestrator.pause(loop.id))
    except InvalidLoopStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/loops/{loop_id}/resume", response_model=LoopView)
async def resume_loop(loop_id: str, orchestrator: LoopOrchestrator = Depends(get_orchestrator)):
    loop = _find(orchestrator, loop_id)
    try:
        return LoopView.model_validate(orchestrator.resume(loop.id))
    except InvalidLoopStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/repos/{owner}/{name}/issues", status_code=201)
async def create_issue(
    owner: str,
    name: str,
    request: CreateIssueRequest,
    orchestrator: LoopOrchestrator = Depends(get_orchestrator),
):
    """Create a GitHub issue (a task for the agent) on a configured repo."""
    try:
        issue = await orchestrator.create_issue(owner, name, request.title, request.body)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except GitHubError as e:
        logger.error(f"Creating issue in {owner}/{name} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return issue.model_dump()


def _find(orchestrator: LoopOrchestrator, loop_id: str):
    try:
        return orchestrator.get_loop(loop_id)
    except LoopNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
