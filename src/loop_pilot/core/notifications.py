"""Loop lifecycle notifications.

The iteration driver reports progress through a LoopObserver. Observers are
presentation only: the driver guards every call, so a failing observer never
changes how a loop runs.
"""

import logging
import re
from datetime import datetime
from typing import Any, Optional

import httpx

from loop_pilot.db.models import Loop

logger = logging.getLogger(__name__)

_FILE_CHANGE_PATTERN = re.compile(r"^[AMD]\s+\S+")


class LoopObserver:
    """Receives loop lifecycle callbacks. All hooks are no-ops by default."""

    async def on_start(self, loop: Loop) -> None:
        pass

    async def on_iteration(self, loop: Loop, iteration: int, output: str) -> None:
        pass

    async def on_task_complete(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        pass

    async def on_waiting_approval(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        pass

    async def on_complete(self, loop: Loop) -> None:
        pass

    async def on_error(self, loop: Loop, error: str) -> None:
        pass


def extract_summary(output: str) -> str:
    """Pick a short human-readable summary out of raw agent output."""
    lines = output.split("\n")

    file_changes = [
        line for line in lines
        if _FILE_CHANGE_PATTERN.match(line) or "modified:" in line or "created:" in line
    ]
    if file_changes:
        return "Files changed:\n" + "\n".join(f.strip() for f in file_changes[:5])

    for line in lines:
        if "pull/" in line or "PR #" in line:
            return line.strip()

    meaningful = [line for line in lines if line.strip()][-3:]
    return "\n".join(meaningful) or "Processing..."


class LoggingNotifier(LoopObserver):
    """Writes loop events to the application log."""

    def __init__(self, iteration_updates: bool = True):
        self.iteration_updates = iteration_updates

    async def on_start(self, loop: Loop) -> None:
        logger.info(f"Loop {loop.id} started on {loop.repo_full_name} ({loop.mode.value} mode)")

    async def on_iteration(self, loop: Loop, iteration: int, output: str) -> None:
        if not self.iteration_updates:
            return
        logger.info(
            f"Loop {loop.id} iteration {iteration}/{loop.iteration_max}: "
            f"{extract_summary(output)}"
        )

    async def on_task_complete(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        logger.info(f"Loop {loop.id} finished issue #{issue_number} with PR #{pr_number}")

    async def on_waiting_approval(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        logger.info(
            f"Loop {loop.id} waiting for approval of PR #{pr_number} (issue #{issue_number})"
        )

    async def on_complete(self, loop: Loop) -> None:
        logger.info(
            f"Loop {loop.id} complete after {loop.iteration_current} iteration(s)"
        )

    async def on_error(self, loop: Loop, error: str) -> None:
        logger.error(f"Loop {loop.id} failed: {error}")


class WebhookNotifier(LoggingNotifier):
    """Logs events and also POSTs them as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        iteration_updates: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        super().__init__(iteration_updates=iteration_updates)
        self.url = url
        self._transport = transport
        self._timeout = timeout

    async def on_start(self, loop: Loop) -> None:
        await super().on_start(loop)
        await self._post("start", loop)

    async def on_iteration(self, loop: Loop, iteration: int, output: str) -> None:
        await super().on_iteration(loop, iteration, output)
        if self.iteration_updates:
            await self._post("iteration", loop, iteration=iteration, summary=extract_summary(output))

    async def on_task_complete(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        await super().on_task_complete(loop, issue_number, pr_number)
        await self._post("task_complete", loop, issue_number=issue_number, pr_number=pr_number)

    async def on_waiting_approval(self, loop: Loop, issue_number: int, pr_number: int) -> None:
        await super().on_waiting_approval(loop, issue_number, pr_number)
        await self._post("waiting_approval", loop, issue_number=issue_number, pr_number=pr_number)

    async def on_complete(self, loop: Loop) -> None:
        await super().on_complete(loop)
        await self._post("complete", loop)

    async def on_error(self, loop: Loop, error: str) -> None:
        await super().on_error(loop, error)
        await self._post("error", loop, error=error)

    async def _post(self, event: str, loop: Loop, **fields: Any) -> None:
        payload = {
            "event": event,
            "timestamp": datetime.utcnow().isoformat(),
            "loop": loop_payload(loop),
            **fields,
        }
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout
            ) as client:
                response = await client.post(self.url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Webhook delivery of {event} for loop {loop.id} failed: {e}")


def loop_payload(loop: Loop) -> dict[str, Any]:
    return {
        "id": loop.id,
        "repo": loop.repo_full_name,
        "channel_id": loop.channel_id,
        "thread_ts": loop.thread_ts,
        "status": loop.status.value,
        "mode": loop.mode.value,
        "iteration_current": loop.iteration_current,
        "iteration_max": loop.iteration_max,
        "current_issue": loop.current_issue,
        "current_pr": loop.current_pr,
    }
