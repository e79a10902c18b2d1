"""Tests for the process supervisor, using real child processes."""

import asyncio
import os
import signal
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from gitwatch.command import spawn
from gitwatch.errors import ConfigError, ProcessSpawnError
from gitwatch.supervisor import (
    DEFAULT_STOP_TIMEOUT,
    ProcessState,
    ProcessSupervisor,
    default_stop_signal,
    parse_signal,
)

pytestmark = pytest.mark.skipif(os.name == "nt", reason="needs POSIX signals and process groups")

# Ignores the usual stop signals, only SIGKILL gets rid of it
STUBBORN = "trap '' INT TERM; sleep 30"


class TestParseSignal:
    """Tests for parsing stop signals."""

    def test_names(self):
        """Names work with and without the SIG prefix."""
        assert parse_signal("SIGTERM") == signal.SIGTERM
        assert parse_signal("term") == signal.SIGTERM
        assert parse_signal("SIGHUP") == signal.SIGHUP

    def test_numbers(self):
        """Numbers are accepted as strings and integers."""
        assert parse_signal("15") == signal.SIGTERM
        assert parse_signal(9) == signal.SIGKILL

    def test_default(self):
        """No value means SIGINT."""
        assert parse_signal(None) == signal.SIGINT
        assert default_stop_signal() == signal.SIGINT

    def test_unknown(self):
        """Unknown signals are configuration errors."""
        with pytest.raises(ConfigError):
            parse_signal("SIGNOPE")
        with pytest.raises(ConfigError):
            parse_signal("999")


class TestDefaults:
    """Tests for supervisor defaults."""

    def test_initial_state(self, tmp_path):
        """A new supervisor has nothing running."""
        supervisor = ProcessSupervisor("sleep 30", tmp_path)

        assert supervisor.state == ProcessState.STOPPED
        assert supervisor.pid is None
        assert supervisor.restarts == 0
        assert supervisor.stop_signal == signal.SIGINT
        assert supervisor.stop_timeout == DEFAULT_STOP_TIMEOUT
        assert supervisor.handle.state == ProcessState.STOPPED


class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, tmp_path):
        """start() reaches RUNNING, stop() returns to STOPPED."""
        supervisor = make_supervisor("sleep 30", tmp_path)

        await supervisor.start()
        pid = supervisor.pid

        assert supervisor.state == ProcessState.RUNNING
        assert supervisor.is_running is True
        assert is_alive(pid)

        await supervisor.stop()

        assert supervisor.state == ProcessState.STOPPED
        assert supervisor.pid is None
        assert not is_alive(pid)

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, tmp_path):
        """Stopping nothing is a no-op."""
        supervisor = make_supervisor("sleep 30", tmp_path)
        await supervisor.stop()
        assert supervisor.state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_start_replaces_instance(self, tmp_path):
        """start() stops the old instance before starting a new one."""
        supervisor = make_supervisor("sleep 30", tmp_path)
        await supervisor.start()
        old_pid = supervisor.pid

        await supervisor.start()

        assert supervisor.state == ProcessState.RUNNING
        assert supervisor.pid != old_pid
        assert not is_alive(old_pid)

        await supervisor.stop()

    @pytest.mark.asyncio
    async def test_runs_in_directory(self, tmp_path):
        """The process runs in the watched directory."""
        supervisor = make_supervisor("pwd > cwd.txt; exec sleep 30", tmp_path, shell=True)
        await supervisor.start()
        await supervisor.stop()

        assert (tmp_path / "cwd.txt").read_text().strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_stop_timeout_kills(self, tmp_path):
        """A process ignoring the stop signal is killed after the timeout, then replaced."""
        supervisor = make_supervisor(STUBBORN, tmp_path, shell=True, stop_timeout=2)
        await supervisor.start()
        old_pid = supervisor.pid

        started = time.monotonic()
        await supervisor.start()
        elapsed = time.monotonic() - started

        assert elapsed >= 1.9
        assert elapsed < DEFAULT_STOP_TIMEOUT
        assert not is_alive(old_pid)
        assert supervisor.state == ProcessState.RUNNING
        assert supervisor.pid != old_pid

        supervisor.kill_now()

    @pytest.mark.asyncio
    async def test_no_stop_signal_kills_right_away(self, tmp_path):
        """Without a stop signal the process is killed without waiting."""
        supervisor = make_supervisor(STUBBORN, tmp_path, shell=True, stop_timeout=5)
        supervisor.stop_signal = None
        await supervisor.start()

        started = time.monotonic()
        await supervisor.stop()

        assert time.monotonic() - started < 2
        assert supervisor.state == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_no_stop_signal_kills_the_group(self, tmp_path):
        """Killing without a stop signal also takes down the children."""
        command = "sleep 30 & echo $! > child.pid; wait"
        supervisor = make_supervisor(command, tmp_path, shell=True)
        supervisor.stop_signal = None
        await supervisor.start()
        assert await wait_until(lambda: read_text(tmp_path / "child.pid"))
        child_pid = int(read_text(tmp_path / "child.pid"))

        await supervisor.stop()

        assert await wait_until(lambda: not is_alive(child_pid))

    @pytest.mark.asyncio
    async def test_environment(self, tmp_path):
        """The process sees CI and the action entries, no git context."""
        supervisor = make_supervisor("env > process-env.txt; exec sleep 30", tmp_path, shell=True)
        await supervisor.start()
        await supervisor.stop()

        env = (tmp_path / "process-env.txt").read_text().splitlines()
        assert "CI=true" in env
        assert "GW_ACTION_NAME=PROCESS" in env
        assert f"GW_DIRECTORY={tmp_path}" in env
        assert not any(line.startswith("GW_GIT_") for line in env)

    @pytest.mark.asyncio
    async def test_custom_stop_signal(self, tmp_path):
        """The configured stop signal is the one sent."""
        marker = tmp_path / "got-term"
        command = f"trap 'touch {marker}; exit 0' TERM; trap '' INT; sleep 30 & wait"
        supervisor = make_supervisor(command, tmp_path, shell=True, stop_signal=signal.SIGTERM)
        await supervisor.start()

        await supervisor.stop()

        assert marker.exists()

    @pytest.mark.asyncio
    async def test_kill_now(self, tmp_path):
        """kill_now() doesn't wait for anything."""
        supervisor = make_supervisor(STUBBORN, tmp_path, shell=True)
        await supervisor.start()
        pid = supervisor.pid

        supervisor.kill_now()

        assert supervisor.state == ProcessState.STOPPED
        assert supervisor.pid is None
        assert await wait_until(lambda: not is_alive(pid))


class TestMutualExclusion:
    """Tests for never running two instances."""

    @pytest.mark.asyncio
    async def test_concurrent_restarts(self, tmp_path):
        """Overlapping restarts still run one instance at a time."""
        command = (
            "for p in $(cat pids 2>/dev/null); do "
            "kill -0 $p 2>/dev/null && echo $p >> overlaps; done; "
            "echo $$ >> pids; exec sleep 30"
        )
        supervisor = make_supervisor(command, tmp_path, shell=True)

        await asyncio.gather(
            supervisor.start(),
            supervisor.start(),
            supervisor.start(),
        )

        pids = [int(p) for p in (tmp_path / "pids").read_text().split()]
        assert len(pids) == 3
        assert not (tmp_path / "overlaps").exists()
        assert supervisor.pid == pids[-1]
        assert [is_alive(p) for p in pids] == [False, False, True]

        await supervisor.stop()


class TestFailures:
    """Tests for spawn failures and the retry policy."""

    @pytest.mark.asyncio
    async def test_immediate_exit_fails(self, tmp_path):
        """A process that exits right away never counts as started."""
        supervisor = make_supervisor("true", tmp_path)

        with pytest.raises(ProcessSpawnError):
            await supervisor.start()

        assert supervisor.state == ProcessState.FAILED
        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_missing_executable_fails(self, tmp_path):
        """Unknown executables fail to spawn."""
        supervisor = make_supervisor("definitely-not-a-real-binary-xyz", tmp_path)

        with pytest.raises(ProcessSpawnError):
            await supervisor.start()

        assert supervisor.state == ProcessState.FAILED

    @pytest.mark.asyncio
    async def test_retries_before_failing(self, tmp_path):
        """A failing start is retried up to the limit."""
        supervisor = make_supervisor("false", tmp_path, retries=2)

        with patch("gitwatch.supervisor.spawn", wraps=spawn) as mock_spawn:
            with pytest.raises(ProcessSpawnError):
                await supervisor.start()

        assert mock_spawn.call_count == 3
        assert supervisor.restarts == 2
        assert supervisor.state == ProcessState.FAILED

    @pytest.mark.asyncio
    async def test_start_resets_retry_budget(self, tmp_path):
        """Every deployment starts with a fresh budget."""
        supervisor = make_supervisor("false", tmp_path, retries=1)
        with pytest.raises(ProcessSpawnError):
            await supervisor.start()

        supervisor.command = "sleep 30"
        await supervisor.start()

        assert supervisor.state == ProcessState.RUNNING
        assert supervisor.restarts == 0

        await supervisor.stop()


class TestWatcher:
    """Tests for noticing unexpected exits."""

    @pytest.mark.asyncio
    async def test_crash_without_retries_fails(self, tmp_path):
        """An unexpected exit settles in FAILED when there are no retries."""
        supervisor = make_supervisor("sleep 0.5", tmp_path)
        await supervisor.start()
        assert supervisor.state == ProcessState.RUNNING

        assert await wait_until(lambda: supervisor.state == ProcessState.FAILED)
        assert supervisor.restarts == 0
        assert supervisor.pid is None

    @pytest.mark.asyncio
    async def test_crash_is_restarted(self, tmp_path):
        """An unexpected exit is retried within the budget."""
        supervisor = make_supervisor("echo $$ >> pids; sleep 0.5", tmp_path, shell=True, retries=1)
        await supervisor.start()

        assert await wait_until(lambda: supervisor.restarts == 1)
        assert await wait_until(lambda: supervisor.state == ProcessState.FAILED)

        assert len((tmp_path / "pids").read_text().split()) == 2

    @pytest.mark.asyncio
    async def test_our_own_stop_is_not_a_crash(self, tmp_path):
        """Stopping the process doesn't trigger the retry policy."""
        supervisor = make_supervisor("sleep 30", tmp_path, retries=3)
        await supervisor.start()

        await supervisor.stop()
        await asyncio.sleep(0.3)

        assert supervisor.state == ProcessState.STOPPED
        assert supervisor.restarts == 0


# --- Helpers ---

def make_supervisor(command, directory, **kwargs):
    kwargs.setdefault("startup_check", 0.2)
    return ProcessSupervisor(command, directory, **kwargs)


def is_alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # Orphans stay zombies until something reaps them
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return True
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def read_text(path):
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return ""


async def wait_until(condition, timeout=5.0):
    """Poll a condition while letting the event loop run."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        await asyncio.sleep(0.05)
    return condition()
