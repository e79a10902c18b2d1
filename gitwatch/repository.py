"""
gitwatch Git Repository

Thin layer over GitPython for the handful of operations the checker needs:
fetching with credentials, listing tags, detecting local modifications and
moving the working tree to a new commit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import git
from git import Repo
from git.exc import BadName, GitCommandError

from gitwatch.credentials import CredentialChain
from gitwatch.errors import (
    AuthError,
    CheckoutError,
    GitOperationError,
    NetworkError,
    NoRemoteError,
    RepositoryError,
)

logger = logging.getLogger(__name__)


@dataclass
class RemoteRefs:
    """Result of a fetch: where the remote branch points."""
    remote: str
    branch: Optional[str] = None
    head: Optional[str] = None


class GitRepository:
    """
    A local git checkout watched by gitwatch.

    All methods block; the checker runs them in a worker thread.
    """

    def __init__(
        self,
        directory: str | Path,
        credentials: Optional[CredentialChain] = None,
    ):
        """
        Open the repository.

        Args:
            directory: Path to the working tree.
            credentials: Credential chain used for fetches.

        Raises:
            RepositoryError: If the path is not a valid git repository.
        """
        self.directory = Path(directory).resolve()
        self.credentials = credentials or CredentialChain.default()

        try:
            self.repo = Repo(self.directory)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError):
            raise RepositoryError(
                f"{self.directory} does not exist, is not accessible or is not a git repository"
            )

    def head_commit(self) -> str:
        """Get the sha HEAD points to."""
        try:
            return self.repo.head.commit.hexsha
        except ValueError:
            raise RepositoryError(f"Repository {self.directory} has no commits")

    def current_branch(self) -> Optional[str]:
        """Get the checked out branch name, or None for a detached HEAD."""
        if self.repo.head.is_detached:
            return None
        return self.repo.active_branch.name

    def upstream(self, branch: str) -> tuple[str, str]:
        """
        Get the remote and remote branch a local branch tracks.

        Returns:
            Tuple of (remote_name, remote_branch_name).

        Raises:
            NoRemoteError: If the branch has no upstream.
        """
        try:
            tracking = self.repo.branches[branch].tracking_branch()
        except IndexError:
            raise NoRemoteError(f"Branch {branch} does not exist")

        if tracking is None:
            raise NoRemoteError(f"Branch {branch} doesn't have a remote")

        return tracking.remote_name, tracking.remote_head

    def remote_url(self, remote: str) -> str:
        """Get the fetch URL of a remote."""
        try:
            return self.repo.remote(remote).url
        except ValueError:
            raise NoRemoteError(f"Remote {remote} does not exist")

    def fetch(
        self,
        remote: str,
        branch: str,
        tags: bool = False,
    ) -> RemoteRefs:
        """
        Fetch a branch (and optionally all tags) from the remote.

        Args:
            remote: Remote name, e.g. origin.
            branch: Remote branch to update refs/remotes/<remote>/<branch> from.
            tags: Also fetch every tag, moving tags that changed.

        Returns:
            RemoteRefs with the fetched branch head.

        Raises:
            AuthError: If no credential was accepted.
            NetworkError: If the fetch failed otherwise.
        """
        refspec = f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}"
        args = [remote, refspec]
        if tags:
            args = ["--tags", "--force"] + args

        def run_fetch(env: dict[str, str]) -> None:
            with self.repo.git.custom_environment(**env):
                self.repo.git.fetch(*args)

        logger.debug(f"Fetching {branch} from {remote}")
        try:
            self.credentials.run(run_fetch)
        except AuthError:
            raise
        except GitCommandError as e:
            raise NetworkError(f"Cannot fetch from {remote}: {str(e.stderr).strip()}")

        head = self.rev_parse(f"refs/remotes/{remote}/{branch}")
        return RemoteRefs(remote=remote, branch=branch, head=head)

    def rev_parse(self, ref: str) -> str:
        """Resolve a ref (tags peeled) to a commit sha."""
        try:
            return self.repo.commit(ref).hexsha
        except (BadName, ValueError) as e:
            raise CheckoutError(f"Cannot resolve {ref}: {e}")

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """
        Check if one commit is reachable from another.

        Raises:
            GitOperationError: If git cannot compare the two commits.
        """
        try:
            return self.repo.is_ancestor(ancestor, descendant)
        except GitCommandError as e:
            raise GitOperationError(
                f"Cannot compare {ancestor} and {descendant}: {str(e.stderr).strip()}"
            )

    def list_tags(self, pattern: str = "*", merged: Optional[str] = None) -> list[str]:
        """
        List tag names, highest version first.

        Args:
            pattern: Glob the tag names must match.
            merged: Only tags reachable from this ref.

        Returns:
            Tag names ordered by git's version:refname sort, descending.

        Raises:
            GitOperationError: If git cannot list the tags.
        """
        args = ["--list", "--sort=-version:refname"]
        if merged:
            args += ["--merged", merged]
        # Patterns starting with a dash are not options
        args += ["--", pattern]
        try:
            output = self.repo.git.tag(*args)
        except GitCommandError as e:
            raise GitOperationError(f"Cannot list tags matching {pattern}: {str(e.stderr).strip()}")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def is_dirty(self) -> bool:
        """Check for uncommitted modifications to tracked files."""
        return self.repo.is_dirty(untracked_files=False)

    def checkout(self, ref: str, detach: bool = False) -> str:
        """
        Move the working tree to a new commit.

        Without detach, the checked out branch is fast-forwarded to ref.
        With detach, HEAD is detached at ref and branches are left alone.

        Returns:
            The sha HEAD points to afterwards.

        Raises:
            CheckoutError: If git refuses, e.g. the histories diverged.
        """
        try:
            if detach:
                self.repo.git.checkout("--detach", ref)
            else:
                self.repo.git.merge("--ff-only", ref)
        except GitCommandError as e:
            raise CheckoutError(f"Cannot update to {ref}: {str(e.stderr).strip()}")

        return self.head_commit()
