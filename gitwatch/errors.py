"""
gitwatch exception hierarchy

Check errors abort the current cycle, action errors abort the remaining
steps of the current cycle. Neither stops the engine. ConfigError is raised
before the run loop starts and is fatal.
"""


class GitwatchError(Exception):
    """Base exception for all gitwatch errors."""


class ConfigError(GitwatchError):
    """Raised when the configuration is invalid."""


# ============================================================================
# Check errors
# ============================================================================


class CheckError(GitwatchError):
    """Base class for everything that can go wrong while checking for updates."""


class RepositoryError(CheckError):
    """Raised when the directory is not a usable git repository."""


class NotOnBranchError(CheckError):
    """Raised when HEAD is not on a branch and no branch is configured."""


class NoRemoteError(CheckError):
    """Raised when the tracked branch has no upstream remote."""


class AuthError(CheckError):
    """Raised when no credential strategy is accepted by the remote."""


class NetworkError(CheckError):
    """Raised when fetching fails for a reason other than authentication."""


class CheckoutError(CheckError):
    """Raised when the working tree cannot be moved to the new commit."""


class GitOperationError(CheckError):
    """Raised when a local git command fails."""


class DirtyWorkingTreeError(CheckError):
    """There are local modifications, updating would overwrite them."""


class TagPatternNoMatch(CheckError):
    """No tag matches the configured pattern."""

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        super().__init__(f"No tag matches {pattern}")


# ============================================================================
# Action errors
# ============================================================================


class ActionError(GitwatchError):
    """Base class for failed actions."""


class ScriptFailure(ActionError):
    """Raised when a script exits with a non-zero code."""

    def __init__(self, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"Script {command!r} failed with exit code {exit_code}")


class ProcessSpawnError(ActionError):
    """Raised when the managed process cannot be started."""


class ProcessExitedUnexpectedly(ActionError):
    """Raised when the managed process exits without being stopped."""

    def __init__(self, command: str, exit_code: int) -> None:
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"Process {command!r} exited with code {exit_code}")


class ShutdownRequested(GitwatchError):
    """Set on run requests that are dropped because of a shutdown."""


class TriggerError(GitwatchError):
    """Raised when a trigger cannot start, e.g. the webhook port is taken."""
