"""Process runner for the coding agent.

Spawns one `droid exec` process per loop iteration and keeps a registry of
live processes keyed by loop id, so a stop request can interrupt a run.
Each agent runs in its own session; signals go to the whole process group
so tools the agent started die with it.
"""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loop_pilot.config import settings
from loop_pilot.core.output import has_completion_sentinel

logger = logging.getLogger(__name__)


class AgentProcessError(Exception):
    """The agent process failed to start or exited without finishing."""

    def __init__(self, message: str, exit_code: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class ProcessAlreadyRunningError(AgentProcessError):
    """A live process is already registered for the loop."""


@dataclass
class IterationResult:
    """Result of one agent run."""

    output: str
    exit_code: int
    completed: bool = False  # output carried a completion sentinel


def signal_process_group(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Send sig to the process group led by proc (agents start their own session)."""
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        # group already gone
        pass


class ProcessSupervisor:
    """Registry of live agent processes, one per loop id.

    A slot is reserved before spawning, so two runs for the same loop can
    never both start a process. A reserved slot holds None until the process
    is attached.
    """

    def __init__(self) -> None:
        self._processes: dict[str, Optional[asyncio.subprocess.Process]] = {}

    def reserve(self, loop_id: str) -> None:
        if loop_id in self._processes:
            raise ProcessAlreadyRunningError(
                f"An agent process is already running for loop {loop_id}"
            )
        self._processes[loop_id] = None

    def attach(self, loop_id: str, proc: asyncio.subprocess.Process) -> bool:
        """Fill a reserved slot. False if the reservation was terminated meanwhile."""
        if loop_id not in self._processes or self._processes[loop_id] is not None:
            return False
        self._processes[loop_id] = proc
        return True

    def register(self, loop_id: str, proc: asyncio.subprocess.Process) -> None:
        self.reserve(loop_id)
        self._processes[loop_id] = proc

    def unregister(self, loop_id: str, proc: Optional[asyncio.subprocess.Process]) -> bool:
        """Remove the entry if it still belongs to proc (None releases a reservation)."""
        if loop_id in self._processes and self._processes[loop_id] is proc:
            del self._processes[loop_id]
            return True
        return False

    def terminate(self, loop_id: str) -> bool:
        """Signal the loop's process group and drop it from the registry.

        Returns False when nothing is registered, which is a normal outcome
        (the run already finished or never started).
        """
        if loop_id not in self._processes:
            return False

        proc = self._processes.pop(loop_id)
        if proc is None:
            logger.info(f"Cancelled agent start for loop {loop_id}")
            return True

        # Signalled even if the agent itself exited: its tools may still hold the pipes
        signal_process_group(proc, signal.SIGTERM)
        logger.info(f"Terminated agent process for loop {loop_id} (pid {proc.pid})")
        return True

    def terminate_all(self) -> int:
        loop_ids = list(self._processes)
        for loop_id in loop_ids:
            self.terminate(loop_id)
        return len(loop_ids)

    def is_running(self, loop_id: str) -> bool:
        return loop_id in self._processes

    def count(self) -> int:
        return len(self._processes)


class AgentRunner:
    """Runs the coding agent CLI for a single iteration."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        binary: Optional[str] = None,
        autonomy: Optional[str] = None,
        key_env: Optional[str] = None,
        timeout: Optional[float] = None,
        tail_chars: Optional[int] = None,
    ):
        self.supervisor = supervisor
        self.binary = binary or settings.agent_binary
        self.autonomy = autonomy or settings.agent_autonomy
        self.key_env = key_env or settings.agent_key_env
        self.timeout = timeout if timeout is not None else settings.agent_timeout_seconds
        self.tail_chars = tail_chars or settings.output_tail_chars

    def build_command(self, prompt_path: str) -> list[str]:
        return [self.binary, "exec", "--auto", self.autonomy, "-f", prompt_path]

    async def run_iteration(
        self,
        loop_id: str,
        workspace: Path,
        api_key: str,
        prompt_path: str,
    ) -> IterationResult:
        """Run the agent once and return its combined output.

        The run counts as successful if the exit code is zero or the output
        contains a completion sentinel.

        Raises:
            AgentProcessError: spawn failure, timeout, or nonzero exit
                without a completion sentinel
        """
        # Reserving first keeps overlapping calls for one loop from both spawning
        self.supervisor.reserve(loop_id)

        cmd = self.build_command(prompt_path)
        env = {**os.environ, self.key_env: api_key}

        proc: Optional[asyncio.subprocess.Process] = None
        chunks: list[str] = []
        try:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=workspace,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                    start_new_session=True,
                )
            except OSError as e:
                raise AgentProcessError(f"Failed to start {self.binary}: {e}") from e

            if not self.supervisor.attach(loop_id, proc):
                await self._reap(proc)
                raise AgentProcessError(f"{self.binary} for loop {loop_id} was stopped before it started")
            logger.info(f"Started {self.binary} for loop {loop_id} (pid {proc.pid})")

            try:
                exit_code = await asyncio.wait_for(
                    self._collect(proc, chunks), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                await self._reap(proc)
                output = "".join(chunks)
                raise AgentProcessError(
                    f"{self.binary} timed out after {self.timeout} seconds: {output[-self.tail_chars:]}",
                    output=output,
                )
            except asyncio.CancelledError:
                await self._reap(proc)
                raise
        finally:
            self.supervisor.unregister(loop_id, proc)

        output = "".join(chunks)
        completed = has_completion_sentinel(output)

        if exit_code != 0 and not completed:
            raise AgentProcessError(
                f"{self.binary} exited with code {exit_code}: {output[-self.tail_chars:]}",
                exit_code=exit_code,
                output=output,
            )

        return IterationResult(output=output, exit_code=exit_code, completed=completed)

    async def _collect(self, proc: asyncio.subprocess.Process, chunks: list[str]) -> int:
        # stdout and stderr are appended as they arrive; ordering across the
        # two streams is approximate
        await asyncio.gather(
            self._pump(proc.stdout, chunks),
            self._pump(proc.stderr, chunks),
        )
        return await proc.wait()

    async def _pump(self, stream: Optional[asyncio.StreamReader], chunks: list[str]) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(4096)
            if not data:
                break
            chunks.append(decoder.decode(data))
        tail = decoder.decode(b"", final=True)
        if tail:
            chunks.append(tail)

    async def _reap(self, proc: asyncio.subprocess.Process) -> None:
        """Kill the agent's process group and wait for the agent to exit."""
        signal_process_group(proc, signal.SIGKILL)
        await proc.wait()
