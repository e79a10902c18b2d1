"""
gitwatch Process Supervisor

Owns the single long-running process that is restarted on every change.
Handles spawning, the immediate-exit check, graceful stop with a forced
kill after the timeout, and restarting after unexpected exits.

Both restart paths (a new deployment and the exit watcher) go through the
same lock, so there is never more than one live instance.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from gitwatch import context as ctx
from gitwatch.command import POSIX, spawn
from gitwatch.errors import ConfigError, ProcessExitedUnexpectedly, ProcessSpawnError

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 10.0
DEFAULT_RETRIES = 0
# A process has to survive this long to count as started
DEFAULT_STARTUP_CHECK = 0.5

PROCESS_ACTION_NAME = "PROCESS"


def default_stop_signal() -> Optional[int]:
    """SIGINT where signals exist, None (always kill) elsewhere."""
    return signal.SIGINT if POSIX else None


def parse_signal(value: str | int | None) -> Optional[int]:
    """
    Parse a signal given as a name (SIGTERM, TERM) or a number.

    Raises:
        ConfigError: If the signal is unknown on this platform.
    """
    if value is None or value == "":
        return default_stop_signal()
    name = str(value).strip().upper()
    if name.isdigit():
        try:
            return signal.Signals(int(name))
        except ValueError:
            raise ConfigError(f"Unknown signal {value}")
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return signal.Signals[name]
    except KeyError:
        raise ConfigError(f"Unknown signal {value}")


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessHandle:
    """Read-only view of the supervisor state."""
    state: ProcessState
    pid: Optional[int]
    restarts: int


class ProcessSupervisor:
    """
    Manages the lifecycle of the managed process.

    The process never gets the cycle context in its environment. It sees the
    environment gitwatch was started with plus a few fixed entries, see
    process_env.
    """

    def __init__(
        self,
        command: str,
        directory: str | Path,
        shell: bool = False,
        retries: int = DEFAULT_RETRIES,
        stop_signal: Optional[int] = None,
        stop_timeout: float = DEFAULT_STOP_TIMEOUT,
        startup_check: float = DEFAULT_STARTUP_CHECK,
    ):
        """
        Initialize the supervisor. Nothing is started yet.

        Args:
            command: Command line of the process.
            directory: Working directory.
            shell: Run through the platform shell.
            retries: How many times to retry a failed start or crash.
            stop_signal: Signal for graceful stop (default SIGINT).
            stop_timeout: Seconds to wait before killing.
            startup_check: Seconds the process has to stay alive after spawn.
        """
        self.command = command
        self.directory = Path(directory)
        self.shell = shell
        self.retries = retries
        self.stop_signal = stop_signal if stop_signal is not None else default_stop_signal()
        self.stop_timeout = stop_timeout
        self.startup_check = startup_check

        self._state = ProcessState.STOPPED
        self._process: Optional[asyncio.subprocess.Process] = None
        self._restarts = 0
        self._lock = asyncio.Lock()
        self._watch_task: Optional[asyncio.Task] = None
        self._output_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        """Get the process ID."""
        return self._process.pid if self._process else None

    @property
    def restarts(self) -> int:
        """Consecutive restarts since the last deployment."""
        return self._restarts

    @property
    def is_running(self) -> bool:
        return self._state == ProcessState.RUNNING and self._process is not None

    @property
    def handle(self) -> ProcessHandle:
        return ProcessHandle(state=self._state, pid=self.pid, restarts=self._restarts)

    async def start(self) -> None:
        """
        Start the process with a fresh retry budget.

        A running instance is stopped first, the new one is only spawned
        after the old one fully exited.

        Raises:
            ProcessSpawnError: If every attempt failed.
        """
        async with self._lock:
            await self._stop_locked()
            self._restarts = 0
            if not await self._launch():
                raise ProcessSpawnError(
                    f"Process {self.command!r} failed to start after {self._restarts + 1} attempt(s)"
                )

    async def stop(self) -> None:
        """Stop the process gracefully, killing it after the stop timeout."""
        async with self._lock:
            await self._stop_locked()

    def kill_now(self) -> None:
        """Kill the process without waiting, for forced shutdowns."""
        process = self._process
        if process is None or process.returncode is not None:
            return

        logger.warning(f"Killing process {self.command!r} (PID {process.pid})")
        self._process = None
        self._state = ProcessState.STOPPED
        self._signal(process, None)

    def process_env(self) -> dict[str, str]:
        """Our environment plus CI=true and the action entries, never the git context."""
        return {
            **os.environ,
            "CI": "true",
            ctx.ACTION_NAME: PROCESS_ACTION_NAME,
            ctx.DIRECTORY: str(self.directory),
        }

    async def _launch(self) -> bool:
        """Spawn until it sticks or the retry budget runs out. Lock must be held."""
        while True:
            self._state = ProcessState.STARTING
            try:
                await self._spawn_once()
                self._state = ProcessState.RUNNING
                return True
            except ProcessSpawnError as e:
                self._state = ProcessState.FAILED
                if self._restarts >= self.retries:
                    logger.error(f"{e}, giving up")
                    return False
                self._restarts += 1
                logger.warning(f"{e}, retrying ({self._restarts}/{self.retries})")

    async def _spawn_once(self) -> None:
        logger.info(f"Starting process {self.command!r}")

        try:
            process = await spawn(
                self.command,
                self.shell,
                cwd=self.directory,
                env=self.process_env(),
                new_session=True,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Process {self.command!r} cannot start: {e}")

        self._process = process
        self._output_task = asyncio.create_task(self._process_output(process))

        try:
            exit_code = await asyncio.wait_for(process.wait(), timeout=self.startup_check)
        except asyncio.TimeoutError:
            self._watch_task = asyncio.create_task(self._watch(process))
            logger.debug(f"Process {self.command!r} running with PID {process.pid}")
            return

        self._process = None
        await self._finish_output()
        raise ProcessSpawnError(f"Process {self.command!r} exited immediately with code {exit_code}")

    async def _process_output(self, process: asyncio.subprocess.Process) -> None:
        """Log stdout from the process line by line."""
        if not process.stdout:
            return

        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break

                line_str = line.decode("utf-8", errors="replace").rstrip()
                if line_str:
                    logger.debug(f"[process] {line_str}")

        except asyncio.CancelledError:
            logger.debug(f"Output processing cancelled for {self.command!r}")
        except Exception as e:
            logger.error(f"Error processing output for {self.command!r}: {e}")

    async def _finish_output(self) -> None:
        if self._output_task and not self._output_task.done():
            try:
                await asyncio.wait_for(self._output_task, timeout=1)
            except asyncio.TimeoutError:
                self._output_task.cancel()
        self._output_task = None

    async def _watch(self, process: asyncio.subprocess.Process) -> None:
        """Notice exits we didn't cause and apply the retry policy."""
        exit_code = await process.wait()

        async with self._lock:
            # Stopped or replaced by us in the meantime
            if process is not self._process:
                return

            error = ProcessExitedUnexpectedly(self.command, exit_code)
            logger.error(f"{error}")
            self._process = None
            self._state = ProcessState.FAILED
            await self._finish_output()

            if self._restarts >= self.retries:
                logger.error(f"Process {self.command!r} failed, not restarting until the next change")
                return

            self._restarts += 1
            logger.warning(f"Restarting process ({self._restarts}/{self.retries})")
            await self._launch()

    async def _stop_locked(self) -> None:
        process = self._process
        if process is None:
            if self._state != ProcessState.FAILED:
                self._state = ProcessState.STOPPED
            return

        if process.returncode is not None:
            self._process = None
            self._state = ProcessState.STOPPED
            return

        self._state = ProcessState.STOPPING
        logger.info(f"Stopping process {self.command!r} (PID {process.pid})")

        if self.stop_signal is None:
            self._signal(process, None)
            await process.wait()
        else:
            self._signal(process, self.stop_signal)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Process {self.command!r} did not stop in {self.stop_timeout}s, killing..."
                )
                self._signal(process, None)
                await process.wait()

        self._process = None
        await self._finish_output()
        self._state = ProcessState.STOPPED
        logger.debug(f"Process {self.command!r} stopped with code {process.returncode}")

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: Optional[int]) -> None:
        """Signal the process group, or kill it when no signal is given."""
        try:
            if POSIX:
                os.killpg(process.pid, signal.SIGKILL if sig is None else sig)
            elif sig is None:
                process.kill()
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass
