"""Process driver: run the command and feed its output to the engine.

output-streamer runtime module v0.1.0

This module provides:
- Subprocess isolation (new session / process group) so Ctrl+C in the
  terminal reaches the streamer, not the child directly
- Concurrent stdout/stderr pumping into the BroadcastEngine (anyio task group)
- Exactly one ProcessOutcome per run, including launch failures
- Graceful termination on cancellation (SIGTERM -> timeout -> SIGKILL),
  shielded so cleanup finishes even while the caller is being cancelled

Key design points:
- POSIX: start_new_session=True, signals go to the whole process group
- Windows: CREATE_NEW_PROCESS_GROUP + CTRL_BREAK_EVENT
- After the child exits, pumps get ``drain_timeout`` seconds to flush the
  last partial lines; a grandchild that keeps a pipe open cannot hold the
  engine open forever
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import anyio

from ..streaming.engine import BroadcastEngine, EngineState, ProcessOutcome
from ..streaming.lines import LineSource

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_DRAIN_TIMEOUT = 5.0  # seconds to flush pipes after exit
EXIT_POLL_INTERVAL = 0.05


@dataclass(frozen=True)
class ProcessSpec:
    """Command to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory (None = inherit)
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None

    @classmethod
    def from_command(
        cls,
        command: str,
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "ProcessSpec":
        """Build a spec from a shell-style command string.

        Raises:
            ValueError: The command is empty or has unbalanced quotes
        """
        argv = shlex.split(command, posix=not IS_WINDOWS)
        if not argv:
            raise ValueError("empty command")
        return cls(argv=argv, cwd=cwd, env=env)

    @property
    def command_line(self) -> str:
        return shlex.join(self.argv)


def outcome_for_returncode(returncode: int) -> ProcessOutcome:
    """Translate a return code into a ProcessOutcome."""
    if returncode == 0:
        return ProcessOutcome(success=True, exit_code=0)
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return ProcessOutcome(
            success=False,
            exit_code=returncode,
            detail=f"terminated by {name}",
        )
    return ProcessOutcome(success=False, exit_code=returncode)


def _close_transport(process: asyncio.subprocess.Process) -> None:
    """Close the subprocess transport and any pipe it still holds.

    Pipes kept open by a grandchild are not closed by the child's exit.
    """
    transport = getattr(process, "_transport", None)
    if transport is not None and not transport.is_closing():
        transport.close()
        logger.debug(f"Closed subprocess transport pid={process.pid}")


async def _wait_exit(process: asyncio.subprocess.Process) -> int:
    """Wait for the process itself to exit.

    Process.wait() also waits for every pipe to close, which never happens
    while a background grandchild holds stdout open.
    """
    while process.returncode is None:
        await asyncio.sleep(EXIT_POLL_INTERVAL)
    return process.returncode


@dataclass
class ProcessRunner:
    """Runs one command and streams its output into a BroadcastEngine.

    Example:
        runner = ProcessRunner()
        async with BroadcastEngine(capacity=1000) as engine:
            outcome = await runner.run(ProcessSpec.from_command("make test"), engine)
            print(outcome.describe())
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT

    async def run(
        self,
        spec: ProcessSpec,
        engine: BroadcastEngine,
        *,
        framer_options: Mapping[str, Any] | None = None,
    ) -> ProcessOutcome:
        """Run the command to completion.

        1. Ingests a system line announcing the command
        2. Starts the subprocess in an isolated process group/session
        3. Pumps stdout and stderr into the engine concurrently
        4. Reports the ProcessOutcome to the engine (STREAMING -> DRAINING)
        5. Waits up to ``drain_timeout`` for the pumps (engine -> CLOSED)

        A launch failure is reported as a failed outcome, not raised.
        On cancellation the process group is terminated and the engine is
        closed before CancelledError propagates.

        Args:
            spec: Command to run
            engine: Running BroadcastEngine to feed
            framer_options: Extra LineFramer options (e.g. max_line_bytes)

        Returns:
            The ProcessOutcome handed to the engine
        """
        options = dict(framer_options or {})
        process: asyncio.subprocess.Process | None = None

        await engine.ingest(LineSource.SYSTEM, f"Executing command: {spec.command_line}")

        try:
            try:
                process = await asyncio.create_subprocess_exec(
                    *spec.argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=spec.cwd,
                    **self._build_subprocess_kwargs(spec),
                )
            except OSError as e:
                logger.error(f"Failed to start {spec.argv[0]!r}: {e}")
                outcome = ProcessOutcome(success=False, detail=f"failed to start command: {e}")
                await engine.process_exited(outcome)
                return outcome

            logger.info(f"Started subprocess pid={process.pid} argv={spec.command_line}")

            async with anyio.create_task_group() as tg:
                tg.start_soon(self._pump, engine, process.stdout, LineSource.STDOUT, options)
                tg.start_soon(self._pump, engine, process.stderr, LineSource.STDERR, options)

                returncode = await _wait_exit(process)
                outcome = outcome_for_returncode(returncode)
                logger.info(f"Subprocess exited pid={process.pid} returncode={returncode}")
                await engine.process_exited(outcome)

                # Pumps still flushing get a bounded amount of time
                tg.cancel_scope.deadline = anyio.current_time() + self.drain_timeout

            if tg.cancel_scope.cancelled_caught:
                logger.warning(
                    f"Output pipes still open {self.drain_timeout}s after exit "
                    f"pid={process.pid}, stopped reading"
                )
            return outcome

        finally:
            await self._safe_cleanup(process, engine)

    async def _pump(
        self,
        engine: BroadcastEngine,
        reader: asyncio.StreamReader | None,
        source: LineSource,
        options: dict[str, Any],
    ) -> None:
        if reader is None:
            return
        await engine.pump(reader, source, **options)

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if spec.env is not None:
            kwargs["env"] = dict(spec.env)
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    async def _safe_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        engine: BroadcastEngine,
    ) -> None:
        """Run cleanup shielded from cancellation of the caller."""
        try:
            await asyncio.shield(self._do_cleanup(process, engine))
        except asyncio.CancelledError:
            # Shield itself was cancelled: still make sure the child is gone
            await self._do_cleanup(process, engine)
            raise

    async def _do_cleanup(
        self,
        process: asyncio.subprocess.Process | None,
        engine: BroadcastEngine,
    ) -> None:
        if process is not None and process.returncode is None:
            await self._terminate_process(process)
        if process is not None:
            _close_transport(process)

        if engine.state is EngineState.CLOSED or not engine.is_running:
            return
        # Cancelled before the outcome was reported, or pumps stuck
        if engine.outcome is None:
            returncode = process.returncode if process is not None else None
            await engine.process_exited(
                ProcessOutcome(success=False, exit_code=returncode, detail="command cancelled")
            )
        await engine.shutdown("command cancelled")

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL if it does not exit."""
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")
        try:
            self._signal_group(process, force=False)
            try:
                await asyncio.wait_for(_wait_exit(process), timeout=self.term_timeout)
                logger.debug(f"Subprocess terminated pid={pid} returncode={process.returncode}")
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            self._signal_group(process, force=True)
            try:
                await asyncio.wait_for(_wait_exit(process), timeout=self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")
        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    def _signal_group(self, process: asyncio.subprocess.Process, *, force: bool) -> None:
        if IS_WINDOWS:
            if force:
                process.kill()
                return
            try:
                os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            except OSError as e:
                logger.debug(f"CTRL_BREAK_EVENT failed, falling back to terminate: {e}")
                process.terminate()
            return

        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.killpg(os.getpgid(process.pid), sig)
            logger.debug(f"Sent {sig.name} to process group of pid={process.pid}")
        except ProcessLookupError:
            raise
        except OSError as e:
            logger.debug(f"killpg failed, signalling pid only: {e}")
            process.send_signal(sig)
