"""
gitwatch Actions

Runs the declared steps after a change: scripts, and at most one managed
process which is restarted on every deployment.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from gitwatch import context as ctx
from gitwatch.command import spawn, validate_command
from gitwatch.context import Context
from gitwatch.errors import ConfigError, ScriptFailure
from gitwatch.supervisor import (
    DEFAULT_RETRIES,
    DEFAULT_STARTUP_CHECK,
    DEFAULT_STOP_TIMEOUT,
    ProcessState,
    ProcessSupervisor,
)

logger = logging.getLogger(__name__)

SCRIPT_ACTION_NAME = "SCRIPT"


@dataclass(frozen=True)
class ScriptStep:
    """A command that runs to completion on every change."""
    command: str
    shell: bool = False


@dataclass(frozen=True)
class ProcessStep:
    """The long-running process restarted on every change."""
    command: str
    shell: bool = False
    retries: int = DEFAULT_RETRIES
    stop_signal: Optional[int] = None
    stop_timeout: float = DEFAULT_STOP_TIMEOUT


ActionStep = Union[ScriptStep, ProcessStep]


def validate_actions(steps: list[ActionStep]) -> tuple[ActionStep, ...]:
    """
    Validate the action list once, at startup.

    Returns:
        The steps as an immutable tuple.

    Raises:
        ConfigError: On empty commands, bad retry/timeout values or more
            than one process.
    """
    processes = [s for s in steps if isinstance(s, ProcessStep)]
    if len(processes) > 1:
        raise ConfigError(
            f"Only one process can be managed, got {len(processes)}: "
            + ", ".join(repr(p.command) for p in processes)
        )

    for step in steps:
        if not isinstance(step, (ScriptStep, ProcessStep)):
            raise ConfigError(f"Unknown action {step!r}")
        validate_command(step.command, step.shell)
        if isinstance(step, ProcessStep):
            if step.retries < 0:
                raise ConfigError("Process retries cannot be negative")
            if step.stop_timeout < 0:
                raise ConfigError("Process stop timeout cannot be negative")

    return tuple(steps)


def build_env(context: Context, base: Optional[dict[str, str]] = None) -> dict[str, str]:
    """
    Environment for a script: ours plus the context.

    A context key never overrides a variable that is already set.
    """
    env = dict(os.environ if base is None else base)
    for key, value in context.as_dict().items():
        if key not in env:
            env[key] = value
    return env


async def run_script(
    step: ScriptStep,
    directory: str | Path,
    context: Context,
) -> str:
    """
    Run a script and wait for it, however long it takes.

    Args:
        step: The script to run.
        directory: Working directory.
        context: Cycle context exposed as environment variables.

    Returns:
        Combined stdout and stderr.

    Raises:
        ScriptFailure: If the script cannot start or exits non-zero.
    """
    logger.info(f"Running script: {step.command} in directory {directory}")

    try:
        process = await spawn(step.command, step.shell, cwd=directory, env=build_env(context))
    except OSError as e:
        logger.error(f"Script {step.command!r} cannot start: {e}")
        raise ScriptFailure(step.command, 127)

    try:
        stdout, _ = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
        raise

    output = stdout.decode("utf-8", errors="replace").strip() if stdout else ""
    for line in output.splitlines():
        logger.debug(f"[script] {line}")

    if process.returncode != 0:
        raise ScriptFailure(step.command, process.returncode)

    return output


class ActionRunner:
    """
    Walks the action list in order for one cycle.

    Scripts before the process run first, then the process is restarted,
    then the scripts after it. The first failure aborts the rest.
    """

    def __init__(
        self,
        steps: list[ActionStep],
        directory: str | Path,
        startup_check: float = DEFAULT_STARTUP_CHECK,
    ):
        """
        Initialize the runner.

        Args:
            steps: Declared actions, in order.
            directory: Working directory for every action.
            startup_check: Seconds the process must survive to count as started.

        Raises:
            ConfigError: If the action list is invalid.
        """
        self.steps = validate_actions(steps)
        self.directory = Path(directory).resolve()
        self.supervisor: Optional[ProcessSupervisor] = None

        for step in self.steps:
            if isinstance(step, ProcessStep):
                self.supervisor = ProcessSupervisor(
                    command=step.command,
                    directory=self.directory,
                    shell=step.shell,
                    retries=step.retries,
                    stop_signal=step.stop_signal,
                    stop_timeout=step.stop_timeout,
                    startup_check=startup_check,
                )

    @property
    def has_process(self) -> bool:
        return self.supervisor is not None

    @property
    def stop_timeout(self) -> float:
        """How long a graceful process stop may take."""
        return self.supervisor.stop_timeout if self.supervisor else DEFAULT_STOP_TIMEOUT

    async def run(self, context: Context) -> None:
        """
        Run every step for this cycle.

        Raises:
            ActionError: From the first step that failed.
        """
        if any(isinstance(s, ScriptStep) for s in self.steps):
            context.update({
                ctx.ACTION_NAME: SCRIPT_ACTION_NAME,
                ctx.DIRECTORY: str(self.directory),
            })

        for step in self.steps:
            if isinstance(step, ScriptStep):
                await run_script(step, self.directory, context)
            else:
                await self.supervisor.start()

    async def start_process(self) -> None:
        """Start the managed process if it isn't up yet."""
        if self.supervisor and self.supervisor.state in (ProcessState.STOPPED, ProcessState.FAILED):
            await self.supervisor.start()

    async def stop_process(self) -> None:
        """Gracefully stop the managed process, if any."""
        if self.supervisor:
            await self.supervisor.stop()

    def kill_process(self) -> None:
        """Kill the managed process without waiting."""
        if self.supervisor:
            self.supervisor.kill_now()
