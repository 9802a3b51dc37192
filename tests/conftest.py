"""Shared test fixtures for Loop Pilot tests."""

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional, Union

import pytest

from loop_pilot.config import LoopConfig
from loop_pilot.core.notifications import LoopObserver
from loop_pilot.core.process import IterationResult, ProcessSupervisor
from loop_pilot.db.session import create_db_engine, init_db
from loop_pilot.db.store import SQLLoopStore


@pytest.fixture
def store() -> SQLLoopStore:
    """A fresh in-memory loop store."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    return SQLLoopStore(engine)


@pytest.fixture
def loop_config() -> LoopConfig:
    return LoopConfig.model_validate(
        {
            "github": {"token": "ghp_test"},
            "agent": {"default_api_key": "fk_default"},
            "repos": [
                {"owner": "acme", "name": "widgets"},
                {"owner": "acme", "name": "gadgets", "default_branch": "develop"},
            ],
            "user_keys": {"U1": "fk_user"},
            "concurrency": {"max_parallel_loops": 2, "max_per_repo": 1},
        }
    )


class FakeWorkspaceManager:
    """Returns a fixed directory without touching git."""

    def __init__(self, path: Path, error: Optional[Exception] = None):
        self.path = path
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    async def ensure_workspace(self, owner: str, repo: str, branch: str, clone_url=None) -> Path:
        self.calls.append((owner, repo, branch))
        if self.error is not None:
            raise self.error
        return self.path


Step = Union[str, Exception, Callable[[str], Any]]


class ScriptedRunner:
    """Agent runner that replays a script of outputs.

    Each step is an output string, an exception to raise, or a callable that
    receives the loop id and returns an output string (for simulating work
    done concurrently with the run, such as a stop request).
    """

    def __init__(self, steps: list[Step], default: str = "working on it"):
        self.steps = list(steps)
        self.default = default
        self.supervisor = ProcessSupervisor()
        self.calls: list[dict[str, Any]] = []

    async def run_iteration(self, loop_id: str, workspace: Path, api_key: str, prompt_path: str):
        self.calls.append(
            {"loop_id": loop_id, "workspace": workspace, "api_key": api_key, "prompt_path": prompt_path}
        )
        await asyncio.sleep(0)
        step: Step = self.steps.pop(0) if self.steps else self.default
        if callable(step) and not isinstance(step, str):
            step = step(loop_id)
        if isinstance(step, Exception):
            raise step
        return IterationResult(output=step, exit_code=0)


class RecordingObserver(LoopObserver):
    """Records every hook call as (event, args)."""

    def __init__(self):
        self.events: list[tuple[str, tuple]] = []

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    async def on_start(self, loop):
        self.events.append(("start", (loop.id,)))

    async def on_iteration(self, loop, iteration, output):
        self.events.append(("iteration", (iteration,)))

    async def on_task_complete(self, loop, issue_number, pr_number):
        self.events.append(("task_complete", (issue_number, pr_number)))

    async def on_waiting_approval(self, loop, issue_number, pr_number):
        self.events.append(("waiting_approval", (issue_number, pr_number)))

    async def on_complete(self, loop):
        self.events.append(("complete", ()))

    async def on_error(self, loop, error):
        self.events.append(("error", (error,)))


class FakeGitHub:
    """Records merges; merge outcome is configurable."""

    def __init__(self, merge_ok: bool = True):
        self.merge_ok = merge_ok
        self.merged: list[tuple[str, str, int]] = []
        self.created: list[tuple[str, str, str, Optional[str]]] = []

    async def merge_pull_request(self, owner: str, repo: str, pr_number: int) -> bool:
        if self.merge_ok:
            self.merged.append((owner, repo, pr_number))
        return self.merge_ok

    async def create_issue(self, owner, repo, title, body=None, labels=None):
        from loop_pilot.github.client import Issue

        self.created.append((owner, repo, title, body))
        return Issue(
            number=len(self.created),
            title=title,
            body=body,
            state="open",
            html_url=f"https://github.com/{owner}/{repo}/issues/{len(self.created)}",
            created_at="2024-01-01T00:00:00Z",
        )


def pr_output(pr_number: int, issue_number: int = 7) -> str:
    return (
        f"Fixed #{issue_number} by updating the parser\n"
        f"Opened https://github.com/acme/widgets/pull/{pr_number}\n"
    )
