"""
gitwatch Checker

Decides whether the watched checkout is behind its remote and, if so,
moves it forward. Two modes:

- push: follow the tracked branch, fast-forwarding on every new commit
- tag[:glob]: follow the highest matching tag reachable from the branch
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from gitwatch import context as ctx
from gitwatch.context import Context
from gitwatch.errors import (
    ConfigError,
    DirtyWorkingTreeError,
    NotOnBranchError,
    TagPatternNoMatch,
)
from gitwatch.repository import GitRepository

logger = logging.getLogger(__name__)

CHECK_NAME = "GIT"
SHORT_SHA_LENGTH = 7

REF_TYPE_BRANCH = "branch"
REF_TYPE_TAG = "tag"


@dataclass(frozen=True)
class CheckMode:
    """What to follow: every push, or matching tags."""
    kind: str = "push"
    pattern: str = "*"

    @property
    def is_tag(self) -> bool:
        return self.kind == "tag"

    def __str__(self) -> str:
        return f"tag:{self.pattern}" if self.is_tag else "push"


def parse_check_mode(value: str) -> CheckMode:
    """
    Parse push, tag or tag:<glob>.

    Raises:
        ConfigError: If the value is none of these.
    """
    value = (value or "push").strip()
    if value == "push":
        return CheckMode("push")
    if value == "tag":
        return CheckMode("tag", "*")
    if value.startswith("tag:"):
        pattern = value[len("tag:"):] or "*"
        return CheckMode("tag", pattern)
    raise ConfigError(f"Cannot parse {value!r}, valid values: push, tag, tag:<glob>")


def short_sha(sha: str) -> str:
    return sha[:SHORT_SHA_LENGTH]


@dataclass(frozen=True)
class RepositoryState:
    """Snapshot of where the checkout is. Replaced whole after each update."""
    branch: str
    ref_name: str
    ref_type: str
    before_commit: str
    after_commit: str
    remote_name: str
    remote_url: str
    tag_name: Optional[str] = None

    def context_entries(self) -> dict[str, str]:
        """Entries for the cycle context, in a stable order."""
        entries = {
            ctx.CHECK_NAME: CHECK_NAME,
            ctx.GIT_BEFORE_COMMIT_SHA: self.before_commit,
            ctx.GIT_BEFORE_COMMIT_SHORT_SHA: short_sha(self.before_commit),
            ctx.GIT_COMMIT_SHA: self.after_commit,
            ctx.GIT_COMMIT_SHORT_SHA: short_sha(self.after_commit),
            ctx.GIT_BRANCH_NAME: self.branch,
            ctx.GIT_REF_NAME: self.ref_name,
            ctx.GIT_REF_TYPE: self.ref_type,
            ctx.GIT_REMOTE_NAME: self.remote_name,
            ctx.GIT_REMOTE_URL: self.remote_url,
        }
        if self.tag_name:
            entries[ctx.GIT_TAG_NAME] = self.tag_name
        return entries


class GitChecker:
    """
    The check step of a cycle.

    Owns the RepositoryState: nobody else writes it, and it only changes
    after a checkout went through.
    """

    def __init__(
        self,
        repository: GitRepository,
        mode: Optional[CheckMode] = None,
        branch: Optional[str] = None,
    ):
        """
        Resolve the tracked branch and its remote.

        Args:
            repository: The checkout to watch.
            mode: push (default) or tag mode.
            branch: Branch to track (default: the checked out branch).

        Raises:
            NotOnBranchError: If HEAD is detached and no branch was given.
            NoRemoteError: If the branch has no upstream.
        """
        self.repository = repository
        self.mode = mode or CheckMode()

        self.branch = branch or repository.current_branch()
        if not self.branch:
            raise NotOnBranchError(
                "We are currently not on a branch, check out one or configure it"
            )

        self.remote_name, self.remote_branch = repository.upstream(self.branch)
        head = repository.head_commit()

        self._state = RepositoryState(
            branch=self.branch,
            ref_name=f"refs/heads/{self.branch}",
            ref_type=REF_TYPE_BRANCH,
            before_commit=head,
            after_commit=head,
            remote_name=self.remote_name,
            remote_url=repository.remote_url(self.remote_name),
        )

    @property
    def state(self) -> RepositoryState:
        """Current repository state (read-only snapshot)."""
        return self._state

    @property
    def remote_ref(self) -> str:
        return f"refs/remotes/{self.remote_name}/{self.remote_branch}"

    async def check(self, context: Context) -> bool:
        """
        Check for updates and synchronize the checkout.

        Git runs in a worker thread so triggers and signals keep flowing.

        Args:
            context: Cycle context, extended with GW_GIT_* keys on change.

        Returns:
            True if the checkout moved, False if there was nothing to do.

        Raises:
            CheckError: On auth, network or checkout failures.
        """
        try:
            new_state = await asyncio.to_thread(self._sync)
        except DirtyWorkingTreeError as e:
            logger.warning(f"{e}, skipping update")
            return False
        except TagPatternNoMatch as e:
            logger.debug(f"{e}, nothing to update to")
            return False

        if new_state is None:
            return False

        self._state = new_state
        context.update(new_state.context_entries())
        return True

    def _sync(self) -> Optional[RepositoryState]:
        if self.mode.is_tag:
            return self._sync_tag()
        return self._sync_push()

    def _sync_push(self) -> Optional[RepositoryState]:
        current = self.repository.current_branch()
        if current != self.branch:
            raise NotOnBranchError(
                f"Expected {self.branch} to be checked out, found {current or 'a detached HEAD'}"
            )

        refs = self.repository.fetch(self.remote_name, self.remote_branch)
        local = self.repository.head_commit()

        if refs.head == local:
            logger.debug(f"{self.branch} is up to date with {self.remote_name}")
            return None

        if self.repository.is_ancestor(refs.head, local):
            logger.debug(f"{self.branch} is ahead of {self.remote_name}, nothing to pull")
            return None

        if self.repository.is_dirty():
            raise DirtyWorkingTreeError("There are changes in the directory")

        after = self.repository.checkout(self.remote_ref)
        logger.debug(f"Updated {self.branch} from {short_sha(local)} to {short_sha(after)}")

        return RepositoryState(
            branch=self.branch,
            ref_name=f"refs/heads/{self.branch}",
            ref_type=REF_TYPE_BRANCH,
            before_commit=local,
            after_commit=after,
            remote_name=self.remote_name,
            remote_url=self.repository.remote_url(self.remote_name),
        )

    def _sync_tag(self) -> Optional[RepositoryState]:
        self.repository.fetch(self.remote_name, self.remote_branch, tags=True)

        tags = self.repository.list_tags(self.mode.pattern, merged=self.remote_ref)
        if not tags:
            raise TagPatternNoMatch(self.mode.pattern)

        tag = tags[0]
        target = self.repository.rev_parse(f"refs/tags/{tag}")
        local = self.repository.head_commit()

        if target == local:
            logger.debug(f"Tag {tag} is already checked out")
            return None

        if self.repository.is_dirty():
            raise DirtyWorkingTreeError("There are changes in the directory")

        after = self.repository.checkout(f"refs/tags/{tag}", detach=True)
        logger.debug(f"Checked out tag {tag} at {short_sha(after)}")

        return RepositoryState(
            branch=self.branch,
            ref_name=f"refs/tags/{tag}",
            ref_type=REF_TYPE_TAG,
            before_commit=local,
            after_commit=after,
            remote_name=self.remote_name,
            remote_url=self.repository.remote_url(self.remote_name),
            tag_name=tag,
        )
