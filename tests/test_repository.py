"""Unit tests for the GitPython-backed repository layer."""

import subprocess
from pathlib import Path

import pytest

from gitwatch.credentials import CredentialChain
from gitwatch.errors import (
    CheckoutError,
    GitOperationError,
    NetworkError,
    NoRemoteError,
    RepositoryError,
)
from gitwatch.repository import GitRepository


class TestOpen:
    """Tests for opening repositories."""

    def test_not_a_repository(self, tmp_path):
        """A plain directory is rejected."""
        with pytest.raises(RepositoryError):
            GitRepository(tmp_path)

    def test_missing_path(self, tmp_path):
        """A missing directory is rejected."""
        with pytest.raises(RepositoryError):
            GitRepository(tmp_path / "nope")

    def test_head_and_branch(self, checkout, repository):
        """HEAD and the checked out branch are reported."""
        assert repository.head_commit() == git(checkout, "rev-parse", "HEAD")
        assert repository.current_branch() == "main"

    def test_detached_head_has_no_branch(self, checkout, repository):
        """A detached HEAD is not on a branch."""
        git(checkout, "checkout", "--detach", "HEAD")
        assert repository.current_branch() is None


class TestRemotes:
    """Tests for upstream and remote lookups."""

    def test_upstream(self, repository):
        """The tracked branch comes from the branch configuration."""
        assert repository.upstream("main") == ("origin", "main")

    def test_branch_without_upstream(self, checkout, repository):
        """Local-only branches have no remote."""
        git(checkout, "branch", "local-only")
        with pytest.raises(NoRemoteError):
            repository.upstream("local-only")

    def test_unknown_branch(self, repository):
        """Unknown branches have no remote either."""
        with pytest.raises(NoRemoteError):
            repository.upstream("does-not-exist")

    def test_remote_url(self, remote, repository):
        """The remote URL is the path we cloned from."""
        assert Path(repository.remote_url("origin")).resolve() == remote.resolve()

    def test_unknown_remote_url(self, repository):
        """Asking for a missing remote fails."""
        with pytest.raises(NoRemoteError):
            repository.remote_url("upstream")


class TestFetch:
    """Tests for fetching."""

    def test_fetch_updates_remote_ref_only(self, checkout, upstream, repository):
        """Fetching moves origin/main but not HEAD."""
        before = repository.head_commit()
        pushed = push_commit(upstream, "feature.txt")

        refs = repository.fetch("origin", "main")

        assert refs.head == pushed
        assert refs.remote == "origin"
        assert repository.head_commit() == before

    def test_fetch_tags(self, upstream, repository):
        """Fetching with tags brings in the remote tags."""
        git(upstream, "tag", "v1.0")
        git(upstream, "push", "origin", "v1.0")

        repository.fetch("origin", "main", tags=True)

        assert "v1.0" in repository.list_tags()

    def test_fetch_failure_is_network_error(self, checkout, tmp_path):
        """An unreachable remote is a network error, not an auth error."""
        git(checkout, "remote", "set-url", "origin", str(tmp_path / "gone.git"))
        repository = GitRepository(checkout, CredentialChain.default(home=tmp_path))

        with pytest.raises(NetworkError):
            repository.fetch("origin", "main")


class TestTags:
    """Tests for listing tags."""

    def test_version_order(self, checkout, repository):
        """Tags come highest version first."""
        for tag in ("v1.0", "v1.10", "v1.2"):
            git(checkout, "tag", tag)

        assert repository.list_tags("v*") == ["v1.10", "v1.2", "v1.0"]

    def test_pattern(self, checkout, repository):
        """Only tags matching the glob are listed."""
        git(checkout, "tag", "v1.0")
        git(checkout, "tag", "release-1")

        assert repository.list_tags("release-*") == ["release-1"]
        assert repository.list_tags("nothing-*") == []

    def test_pattern_starting_with_dash(self, checkout, repository):
        """A pattern that looks like an option is still a pattern."""
        git(checkout, "tag", "v1.0")

        assert repository.list_tags("-x*") == []

    def test_merged_filter(self, checkout, repository):
        """Tags not reachable from the given ref are skipped."""
        git(checkout, "tag", "v1.0")
        git(checkout, "checkout", "-b", "side")
        commit(checkout, "side.txt")
        git(checkout, "tag", "v2.0")
        git(checkout, "checkout", "main")

        assert repository.list_tags("v*", merged="main") == ["v1.0"]
        assert repository.list_tags("v*") == ["v2.0", "v1.0"]


class TestWorkingTree:
    """Tests for dirty detection and checkouts."""

    def test_clean(self, repository):
        """A fresh clone is clean."""
        assert repository.is_dirty() is False

    def test_modified_file_is_dirty(self, checkout, repository):
        """Changes to tracked files make the tree dirty."""
        (checkout / "README.md").write_text("changed")
        assert repository.is_dirty() is True

    def test_untracked_file_is_not_dirty(self, checkout, repository):
        """Untracked files don't count."""
        (checkout / "notes.txt").write_text("scratch")
        assert repository.is_dirty() is False

    def test_fast_forward(self, upstream, repository):
        """checkout fast-forwards the current branch."""
        pushed = push_commit(upstream, "feature.txt")
        repository.fetch("origin", "main")

        assert repository.checkout("refs/remotes/origin/main") == pushed
        assert repository.current_branch() == "main"

    def test_detach(self, checkout, upstream, repository):
        """checkout with detach leaves the branch where it was."""
        main_before = git(checkout, "rev-parse", "main")
        pushed = push_commit(upstream, "feature.txt")
        repository.fetch("origin", "main")

        assert repository.checkout("refs/remotes/origin/main", detach=True) == pushed
        assert repository.current_branch() is None
        assert git(checkout, "rev-parse", "main") == main_before

    def test_diverged_is_checkout_error(self, checkout, upstream, repository):
        """Diverged histories cannot be fast-forwarded."""
        push_commit(upstream, "theirs.txt")
        commit(checkout, "ours.txt")
        repository.fetch("origin", "main")

        with pytest.raises(CheckoutError):
            repository.checkout("refs/remotes/origin/main")

    def test_rev_parse_unknown_ref(self, repository):
        """Unknown refs cannot be resolved."""
        with pytest.raises(CheckoutError):
            repository.rev_parse("refs/tags/nope")

    def test_is_ancestor(self, checkout, repository):
        """Older commits are ancestors of newer ones."""
        old = repository.head_commit()
        new = commit(checkout, "more.txt")

        assert repository.is_ancestor(old, new) is True
        assert repository.is_ancestor(new, old) is False

    def test_is_ancestor_unknown_commit(self, repository):
        """Comparing with a commit that doesn't exist is a git error."""
        with pytest.raises(GitOperationError):
            repository.is_ancestor("0" * 40, repository.head_commit())


# --- Helpers ---

def git(cwd, *args):
    """Run git and return its stripped stdout."""
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def configure(repo_path):
    git(repo_path, "config", "user.email", "test@test.com")
    git(repo_path, "config", "user.name", "Test User")


def commit(repo_path, name, content="content"):
    """Commit a file and return the new HEAD."""
    (repo_path / name).write_text(content)
    git(repo_path, "add", name)
    git(repo_path, "commit", "-m", f"Add {name}")
    return git(repo_path, "rev-parse", "HEAD")


def push_commit(repo_path, name):
    sha = commit(repo_path, name)
    git(repo_path, "push", "origin", "main")
    return sha


# --- Fixtures ---

@pytest.fixture
def remote(tmp_path):
    """Create a bare remote repository with an initial commit on main."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init")
    configure(seed)
    commit(seed, "README.md", "# Test Repo")
    git(seed, "branch", "-M", "main")

    bare = tmp_path / "remote.git"
    git(tmp_path, "clone", "--bare", str(seed), str(bare))
    return bare


@pytest.fixture
def upstream(tmp_path, remote):
    """A second clone that pushes new commits to the remote."""
    path = tmp_path / "upstream"
    git(tmp_path, "clone", str(remote), str(path))
    configure(path)
    return path


@pytest.fixture
def checkout(tmp_path, remote):
    """The clone being watched."""
    path = tmp_path / "checkout"
    git(tmp_path, "clone", str(remote), str(path))
    configure(path)
    return path


@pytest.fixture
def repository(checkout, tmp_path):
    """A GitRepository for the watched clone."""
    return GitRepository(checkout, CredentialChain.default(home=tmp_path))
