"""
gitwatch Credentials

Authentication for git fetches. Every strategy hands git a set of
environment variables; the chain tries them in a fixed order and stops at
the first one the remote accepts.

Order:
1. Explicit key or username/token given by the operator
2. Whatever git is configured with (credential helper, ssh-agent)
3. The default ssh keys in ~/.ssh, one at a time
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Callable, Iterator, Optional, TypeVar

from git.exc import GitCommandError

from gitwatch.errors import AuthError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Probed in this order, only the ones that exist are tried
DEFAULT_SSH_KEYS = [
    ".ssh/id_dsa",
    ".ssh/id_ecdsa",
    ".ssh/id_ecdsa_sk",
    ".ssh/id_ed25519",
    ".ssh/id_ed25519_sk",
    ".ssh/id_rsa",
]

# Fragments of git/ssh stderr that mean the remote rejected our credentials
AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "host key verification failed",
)

# Git must never stop and wait for a password
BASE_ENV = {"GIT_TERMINAL_PROMPT": "0"}

CREDENTIAL_HELPER_SCRIPT = (
    '!f() { echo "username=${GITWATCH_USERNAME}"; echo "password=${GITWATCH_TOKEN}"; }; f'
)


def is_auth_failure(error: GitCommandError) -> bool:
    """Check if a failed git command was rejected for its credentials."""
    stderr = str(error.stderr or "").lower()
    return any(marker in stderr for marker in AUTH_FAILURE_MARKERS)


def ssh_command(key_path: str | Path) -> str:
    """Build a GIT_SSH_COMMAND that uses exactly one key."""
    return (
        f"ssh -i {shlex.quote(str(key_path))} "
        "-o IdentitiesOnly=yes -o BatchMode=yes"
    )


class CredentialStrategy:
    """Base class: yields one or more git environments to try."""

    name = "base"

    def candidates(self) -> Iterator[dict[str, str]]:
        raise NotImplementedError


class ExplicitCredentials(CredentialStrategy):
    """Key file or username/token passed by the operator."""

    name = "explicit"

    def __init__(
        self,
        ssh_key: Optional[str] = None,
        username: Optional[str] = None,
        token: Optional[str] = None,
    ):
        self.ssh_key = ssh_key
        self.username = username
        self.token = token

    def candidates(self) -> Iterator[dict[str, str]]:
        if self.ssh_key:
            yield {"GIT_SSH_COMMAND": ssh_command(Path(self.ssh_key).expanduser())}
        if self.token:
            # Reset any configured helper, then answer with our own
            yield {
                "GIT_CONFIG_COUNT": "2",
                "GIT_CONFIG_KEY_0": "credential.helper",
                "GIT_CONFIG_VALUE_0": "",
                "GIT_CONFIG_KEY_1": "credential.helper",
                "GIT_CONFIG_VALUE_1": CREDENTIAL_HELPER_SCRIPT,
                "GITWATCH_USERNAME": self.username or "git",
                "GITWATCH_TOKEN": self.token,
            }


class CredentialHelper(CredentialStrategy):
    """Defer to git's own configuration: credential.helper and ssh-agent."""

    name = "credential-helper"

    def candidates(self) -> Iterator[dict[str, str]]:
        yield {}


class DefaultKeyFiles(CredentialStrategy):
    """Try the conventional ssh keys from the home directory."""

    name = "default-keys"

    def __init__(self, home: Optional[Path] = None):
        self.home = Path(home) if home else Path.home()

    def key_paths(self) -> list[Path]:
        return [self.home / key for key in DEFAULT_SSH_KEYS if (self.home / key).exists()]

    def candidates(self) -> Iterator[dict[str, str]]:
        keys = self.key_paths()
        if not keys:
            logger.debug(
                "There are no ssh keys in ~/.ssh, run ssh-keygen or mount your .ssh directory"
            )
        for key in keys:
            yield {"GIT_SSH_COMMAND": ssh_command(key)}


class CredentialChain:
    """
    Fixed, ordered list of credential strategies behind one interface.

    run() calls the operation once per candidate environment. Failures that
    look like rejected credentials move on to the next candidate, any other
    failure is raised straight away.
    """

    def __init__(self, strategies: list[CredentialStrategy]):
        self.strategies = strategies

    @classmethod
    def default(
        cls,
        ssh_key: Optional[str] = None,
        username: Optional[str] = None,
        token: Optional[str] = None,
        home: Optional[Path] = None,
    ) -> CredentialChain:
        """Build the standard explicit -> helper -> key files chain."""
        return cls([
            ExplicitCredentials(ssh_key=ssh_key, username=username, token=token),
            CredentialHelper(),
            DefaultKeyFiles(home=home),
        ])

    def run(self, operation: Callable[[dict[str, str]], T]) -> T:
        """
        Run an authenticated git operation.

        Args:
            operation: Callable receiving the environment to run git with.

        Returns:
            Whatever the first accepted attempt returned.

        Raises:
            AuthError: If every candidate was rejected.
            GitCommandError: If an attempt failed for a non-auth reason.
        """
        last_error: Optional[GitCommandError] = None

        for strategy in self.strategies:
            for env in strategy.candidates():
                logger.debug(f"Trying {strategy.name} credentials")
                try:
                    return operation({**BASE_ENV, **env})
                except GitCommandError as e:
                    if not is_auth_failure(e):
                        raise
                    logger.debug(f"Credentials from {strategy.name} rejected: {e.stderr}")
                    last_error = e

        detail = f": {str(last_error.stderr).strip()}" if last_error else ""
        raise AuthError(f"No valid authentication available{detail}")
