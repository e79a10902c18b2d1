"""
gitwatch Orchestrator

Responsible for the full lifecycle of the agent:
- Parse and validate the YAML configuration
- Initialize all components (git checkout, checker, actions, triggers)
- The run loop: one inbox, one cycle at a time, bursts coalesced
- Startup/shutdown sequences, including the forced second-signal exit
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from gitwatch.actions import (
    ActionRunner,
    ActionStep,
    ProcessStep,
    ScriptStep,
    validate_actions,
)
from gitwatch.checker import CheckMode, GitChecker, parse_check_mode
from gitwatch.context import CycleOutcome, RunRequest
from gitwatch.credentials import CredentialChain
from gitwatch.duration import parse_duration
from gitwatch.errors import (
    ActionError,
    CheckError,
    ConfigError,
    ShutdownRequested,
    TriggerError,
)
from gitwatch.known_hosts import ProvisioningError, setup_gitconfig, setup_known_hosts
from gitwatch.repository import GitRepository
from gitwatch.supervisor import DEFAULT_RETRIES, DEFAULT_STOP_TIMEOUT, parse_signal
from gitwatch.triggers import (
    OnceTrigger,
    ScheduleTrigger,
    SignalListener,
    Trigger,
    WebhookTrigger,
    parse_address,
)

logger = logging.getLogger(__name__)

# Default configuration values
DEFAULT_EVERY = 60.0
DEFAULT_CHECK_MODE = "push"

# Exit status after a second shutdown request
FORCED_EXIT_CODE = 130


# ============================================================================
# Configuration Dataclasses
# ============================================================================


@dataclass
class CheckConfig:
    """What to follow in the repository."""
    mode: CheckMode = field(default_factory=CheckMode)
    branch: Optional[str] = None


@dataclass
class GitConfig:
    """Credentials and host keys for fetching."""
    ssh_key: Optional[str] = None
    username: Optional[str] = None
    token: Optional[str] = None
    known_hosts: list[str] = field(default_factory=list)


@dataclass
class TriggersConfig:
    """When to check for updates."""
    every: float = DEFAULT_EVERY
    http: Optional[str] = None
    once: bool = False


@dataclass
class GwConfig:
    """Complete gitwatch configuration."""
    directory: str
    check: CheckConfig = field(default_factory=CheckConfig)
    git: GitConfig = field(default_factory=GitConfig)
    triggers: TriggersConfig = field(default_factory=TriggersConfig)
    actions: list[ActionStep] = field(default_factory=list)


def parse_action(entry: Any) -> ActionStep:
    """
    Parse one entry of the actions list.

    Raises:
        ConfigError: If the entry is malformed.
    """
    if not isinstance(entry, dict):
        raise ConfigError(f"Each action must be a mapping, got {entry!r}")

    has_script = "script" in entry
    has_process = "process" in entry
    if has_script == has_process:
        raise ConfigError(f"Each action needs exactly one of 'script' or 'process': {entry!r}")

    shell = bool(entry.get("shell", False))

    if has_script:
        return ScriptStep(command=str(entry["script"] or ""), shell=shell)

    retries = entry.get("retries", DEFAULT_RETRIES)
    if not isinstance(retries, int) or isinstance(retries, bool):
        raise ConfigError(f"Process retries must be an integer, got {retries!r}")

    return ProcessStep(
        command=str(entry["process"] or ""),
        shell=shell,
        retries=retries,
        stop_signal=parse_signal(entry.get("stop_signal")),
        stop_timeout=parse_duration(entry.get("stop_timeout", DEFAULT_STOP_TIMEOUT)),
    )


def _section(raw: dict, key: str, kind: type = dict):
    """Return a config section, empty when absent."""
    value = raw.get(key)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        expected = "a mapping" if kind is dict else "a list"
        raise ConfigError(f"Config {key} must be {expected}, got {value!r}")
    return value


def parse_config_dict(
    raw: dict,
    base_dir: Optional[Path] = None,
    validate: bool = True,
) -> GwConfig:
    """
    Build a configuration from already loaded YAML.

    Args:
        raw: The loaded mapping.
        base_dir: Relative directories are resolved against this.
        validate: Run validate_config, off when flags are merged in later.

    Raises:
        ConfigError: If the configuration is invalid.
    """
    if not isinstance(raw, dict):
        raise ConfigError("Config must be a mapping")

    directory = raw.get("directory")
    if directory:
        directory = Path(str(directory)).expanduser()
        if base_dir and not directory.is_absolute():
            directory = base_dir / directory
    elif validate:
        raise ConfigError("Config directory is required")

    # Parse check; YAML 1.1 reads a bare `on` key as True
    check_raw = _section(raw, "check")
    mode = check_raw.get("on", check_raw.get(True, DEFAULT_CHECK_MODE))
    check = CheckConfig(
        mode=parse_check_mode(str(mode)),
        branch=check_raw.get("branch"),
    )

    # Parse git
    git_raw = _section(raw, "git")
    known_hosts = git_raw.get("known_hosts") or []
    if isinstance(known_hosts, str):
        known_hosts = [known_hosts]
    git = GitConfig(
        ssh_key=git_raw.get("ssh_key"),
        username=git_raw.get("username"),
        token=git_raw.get("token"),
        known_hosts=[str(h) for h in known_hosts],
    )

    # Parse triggers
    triggers_raw = _section(raw, "triggers")
    triggers = TriggersConfig(
        every=parse_duration(triggers_raw.get("every", DEFAULT_EVERY)),
        http=triggers_raw.get("http"),
        once=bool(triggers_raw.get("once", False)),
    )

    # Parse actions
    actions = [parse_action(entry) for entry in _section(raw, "actions", list)]

    config = GwConfig(
        directory=str(directory) if directory else "",
        check=check,
        git=git,
        triggers=triggers,
        actions=actions,
    )
    if validate:
        validate_config(config)
    return config


def parse_config(config_path: Path, validate: bool = True) -> GwConfig:
    """
    Parse a gitwatch YAML file into typed configuration.

    Args:
        config_path: Path to the YAML file.
        validate: Run validate_config on the result.

    Returns:
        Parsed GwConfig.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {config_path}: {e}")

    if not raw:
        raise ConfigError("Config file is empty")

    return parse_config_dict(raw, base_dir=config_path.parent.resolve(), validate=validate)


def validate_config(config: GwConfig) -> None:
    """
    Check everything that can be checked before the run loop starts.

    Raises:
        ConfigError: On the first problem found.
    """
    if not config.directory:
        raise ConfigError("Directory is required")

    validate_actions(config.actions)

    if config.triggers.every < 0:
        raise ConfigError("Schedule delay cannot be negative")
    if config.triggers.http:
        parse_address(config.triggers.http)

    if not config.triggers.once and config.triggers.every == 0 and not config.triggers.http:
        raise ConfigError("You have to define at least one trigger")


# ============================================================================
# Orchestrator
# ============================================================================


@dataclass(frozen=True)
class ShutdownEvent:
    """Shutdown request as delivered through the inbox."""
    force: bool = False
    exit_code: Optional[int] = None


# Put in the inbox once the graceful shutdown completed
_STOPPED = object()

InboxItem = Union[tuple, ShutdownEvent, object]


def _reject(future: asyncio.Future) -> None:
    if not future.done():
        future.set_exception(ShutdownRequested("Shutting down, request dropped"))
        # Triggers that don't wait for their outcome shouldn't get warnings
        future.exception()


class Orchestrator:
    """
    The run loop.

    Triggers and the signal listener feed one inbox. Only the orchestrator
    calls the checker and the action runner, and the run-lock makes sure at
    most one cycle is active. Requests arriving during a cycle collapse into
    a single follow-up cycle.
    """

    def __init__(
        self,
        checker: GitChecker,
        runner: ActionRunner,
        triggers: Optional[list[Trigger]] = None,
        signals: Optional[SignalListener] = None,
        start_process: bool = True,
    ):
        """
        Initialize the orchestrator.

        Args:
            checker: Checks for and applies updates.
            runner: Runs the actions after a change.
            triggers: Trigger sources, started by run().
            signals: Signal listener, or None to ignore signals.
            start_process: Start the managed process before the first change.
        """
        self.checker = checker
        self.runner = runner
        self.triggers = list(triggers or [])
        self.signals = signals
        self.start_process = start_process

        self.cycles = 0

        self._inbox: asyncio.Queue[InboxItem] = asyncio.Queue()
        self._run_lock = asyncio.Lock()
        self._pending: Optional[RunRequest] = None
        self._pending_futures: list[asyncio.Future] = []
        self._cycle_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        self._exit_code = 0

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def is_busy(self) -> bool:
        """A cycle is running right now."""
        return self._run_lock.locked()

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def submit(self, request: RunRequest) -> asyncio.Future[CycleOutcome]:
        """
        Ask for a cycle. Never blocks.

        Returns:
            Future resolving to the outcome of the cycle that serviced the
            request. Requests dropped by a shutdown fail with
            ShutdownRequested.
        """
        future = asyncio.get_running_loop().create_future()
        if self._shutting_down:
            _reject(future)
            return future

        self._inbox.put_nowait((request, future))
        return future

    def request_shutdown(self, force: bool = False, exit_code: Optional[int] = None) -> None:
        """
        Ask the run loop to stop.

        A second request while the first is still in progress terminates
        immediately.
        """
        self._inbox.put_nowait(ShutdownEvent(force=force, exit_code=exit_code))

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def run(self) -> int:
        """
        Start everything and serve requests until shut down.

        Returns:
            Exit code (0 normally, the once outcome, or 130 when forced).
        """
        if self.signals:
            self.signals.start(self)

        try:
            if self.start_process:
                try:
                    await self.runner.start_process()
                except ActionError as e:
                    logger.error(f"Process failed to start: {e}")

            try:
                for trigger in self.triggers:
                    await trigger.start(self)
            except TriggerError as e:
                logger.error(f"Trigger failed: {e}")
                self._shutting_down = True
                self._exit_code = 1
                await self._shutdown()
                return self._exit_code

            logger.debug("Waiting on triggers")
            await self._serve()

        finally:
            if self.signals:
                self.signals.stop()
            self._drain()

        logger.debug("Finished running")
        return self._exit_code

    async def _serve(self) -> None:
        while True:
            item = await self._inbox.get()

            if item is _STOPPED:
                return

            if isinstance(item, ShutdownEvent):
                if self._shutting_down or item.force:
                    await self._terminate()
                    return
                self._begin_shutdown(item)
                continue

            request, future = item
            if self._shutting_down:
                _reject(future)
                continue

            if self._run_lock.locked():
                # Last writer wins, every waiting future gets the follow-up outcome
                self._pending = request
                self._pending_futures.append(future)
                logger.debug(f"Cycle in progress, queued {request.origin.value} request")
                continue

            # Never suspends while the lock is free
            await self._run_lock.acquire()
            self._cycle_task = asyncio.create_task(self._run_cycles(request, [future]))

    async def _run_cycles(self, request: RunRequest, futures: list[asyncio.Future]) -> None:
        """Run a cycle, then one more as long as requests came in meanwhile."""
        try:
            while True:
                try:
                    outcome = await self.run_cycle(request)
                except Exception as e:
                    # The engine outlives any single cycle
                    logger.exception(f"Cycle failed unexpectedly: {e}")
                    outcome = CycleOutcome.failed("cycle", str(e))

                for future in futures:
                    if not future.done():
                        future.set_result(outcome)

                if self._pending is None or self._shutting_down:
                    return

                request, futures = self._pending, self._pending_futures
                self._pending, self._pending_futures = None, []

        except asyncio.CancelledError:
            for future in futures:
                _reject(future)
            raise

        finally:
            self._run_lock.release()

    async def run_cycle(self, request: RunRequest) -> CycleOutcome:
        """
        One check-then-action cycle.

        Check and action errors end up in the outcome, they never stop
        the engine.
        """
        self.cycles += 1
        context = request.build_context()
        logger.debug(f"Checking for updates ({request.origin.value})")

        try:
            changed = await self.checker.check(context)
        except CheckError as e:
            logger.error(f"Check failed: {e}")
            return CycleOutcome.failed("check", str(e))

        if not changed:
            logger.debug("There are no updates")
            return CycleOutcome.no_change()

        if not self.runner.steps:
            logger.info("There are updates, pulling")
            return CycleOutcome.succeeded()

        logger.info("There are updates, running actions")
        try:
            await self.runner.run(context)
        except ActionError as e:
            logger.error(f"Action failed: {e}")
            return CycleOutcome.failed("action", str(e))

        logger.info("Actions finished successfully")
        return CycleOutcome.succeeded()

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _begin_shutdown(self, event: ShutdownEvent) -> None:
        self._shutting_down = True
        if event.exit_code is not None:
            self._exit_code = event.exit_code

        for future in self._pending_futures:
            _reject(future)
        self._pending, self._pending_futures = None, []

        self._shutdown_task = asyncio.create_task(self._shutdown())

    async def _shutdown(self) -> None:
        """Stop triggers, let the current cycle finish, stop the process."""
        logger.info("Shutting down...")

        for trigger in self.triggers:
            try:
                await trigger.stop()
            except Exception as e:
                logger.error(f"Error stopping {trigger.name} trigger: {e}")

        if self._cycle_task and not self._cycle_task.done():
            timeout = self.runner.stop_timeout
            logger.info(f"Waiting up to {timeout}s for the running cycle")
            try:
                await asyncio.wait_for(asyncio.shield(self._cycle_task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Cycle did not finish in time, cancelling it")
                await self._cancel(self._cycle_task)

        await self.runner.stop_process()
        logger.info("Shutdown complete")
        self._inbox.put_nowait(_STOPPED)

    async def _terminate(self) -> None:
        """Second shutdown request: kill everything without waiting."""
        logger.warning("Terminating immediately")
        self._shutting_down = True
        self._exit_code = FORCED_EXIT_CODE

        self.runner.kill_process()
        for task in (self._shutdown_task, self._cycle_task):
            await self._cancel(task)

    def _drain(self) -> None:
        """Reject whatever is still queued once the loop is gone."""
        for future in self._pending_futures:
            _reject(future)
        self._pending, self._pending_futures = None, []

        while not self._inbox.empty():
            item = self._inbox.get_nowait()
            if isinstance(item, tuple):
                _reject(item[1])

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


# ============================================================================
# Convenience Functions
# ============================================================================


def build_triggers(config: TriggersConfig) -> list[Trigger]:
    """Create the trigger sources for a configuration."""
    if config.once:
        return [OnceTrigger()]

    triggers: list[Trigger] = []
    if config.every > 0:
        triggers.append(ScheduleTrigger(config.every))
    if config.http:
        triggers.append(WebhookTrigger(config.http))
    return triggers


def build_orchestrator(config: GwConfig, home: Optional[Path] = None) -> Orchestrator:
    """
    Wire up every component for a configuration.

    Args:
        config: Validated configuration.
        home: Home directory for ssh/git provisioning (default: the user's).

    Raises:
        ConfigError: If the actions are invalid.
        CheckError: If the directory is not a usable checkout.
    """
    directory = Path(config.directory).expanduser().resolve()

    try:
        setup_known_hosts(config.git.known_hosts, home=home)
        setup_gitconfig(directory, home=home)
    except ProvisioningError as e:
        logger.warning(f"{e}")

    credentials = CredentialChain.default(
        ssh_key=config.git.ssh_key,
        username=config.git.username,
        token=config.git.token,
        home=home,
    )
    repository = GitRepository(directory, credentials)
    checker = GitChecker(repository, config.check.mode, config.check.branch)
    runner = ActionRunner(config.actions, directory)

    logger.info(
        f"Watching {directory} on {checker.branch} ({config.check.mode}), "
        f"remote {checker.remote_name}"
    )

    return Orchestrator(
        checker=checker,
        runner=runner,
        triggers=build_triggers(config.triggers),
        signals=SignalListener(),
        start_process=not config.triggers.once,
    )


async def run_gw(config: GwConfig, home: Optional[Path] = None) -> int:
    """
    Run gitwatch with the given configuration.

    Args:
        config: Validated configuration.
        home: Home directory for ssh/git provisioning.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    try:
        orchestrator = build_orchestrator(config, home=home)
    except (ConfigError, CheckError) as e:
        logger.error(f"{e}")
        return 1

    return await orchestrator.run()
