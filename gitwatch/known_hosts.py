"""
gitwatch SSH and git config provisioning

Containers usually start without ~/.ssh/known_hosts or ~/.gitconfig,
which makes every ssh fetch fail. These helpers create them with sensible
defaults. Existing files are only ever appended to.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# https://docs.github.com/en/authentication/keeping-your-account-and-data-secure/githubs-ssh-key-fingerprints
GITHUB_HOST_KEYS = [
    "github.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBEmKSENjQEezOmxkZMy7opKgwFB9nkt5YRrYMjNuG5N87uRgg6CLrbo5wAdT/y6v0mKV0U2w0WZ2YB/++Tpockg=",
    "github.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl",
    "github.com ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABgQCj7ndNxQowgcQnjshcLrqPEiiphnt+VTTvDP6mHBL9j1aNUkY4Ue1gvwnGLVlOhGeYrnZaMgRK6+PKCUXaDbC7qtbW8gIkhL7aGCsOr/C56SJMy/BCZfxd1nWzAOxSDPgVsmerOBYfNqltV9/hWCqBywINIR+5dIg6JTJ72pcEpEjcYgXkE2YEFXV1JHnsKgbLWNlhScqb2UmyRkQyytRLtL+38TGxkxCflmO+5Z8CSSNY7GidjMIZ7Q4zMjA2n1nGrlTDkzwDCsw+wqFPGQA179cnfGWOWRVruj16z6XyvxvjJwbz0wQZ75XK5tKSb7FNyeIEs4TT4jk+S4dhPeAUC5y+bDYirYgM4GC7uEnztnZyaVWQ7B381AK4Qdrwt51ZqExKbQpTUNn+EjqoTwvqNj4kqx5QUCI0ThS/YkOxJCXmPUWZbhjpCg56i+2aB6CmK2JGhn57K5mj0MNdBXA4/WnwH6XoPWJzK5Nyu2zB3nAZp+S5hpQs+p1vN1/wsjk=",
]

# https://docs.gitlab.com/ee/user/gitlab_com/index.html#ssh-host-keys-fingerprints
GITLAB_HOST_KEYS = [
    "gitlab.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBFSMqzJeV9rUzU4kWitGjeR4PWSa29SPqJ1fVkhtj3Hw9xjLVXVYrU9QlYWrOLXBpQ6KWjbjTDTdDkoohFzgbEY=",
    "gitlab.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIAfuCHKVTjquxvt6CM6tdG4SLp1Btn/nOeHHE5UOzRdf",
    "gitlab.com ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABAQCsj2bNKTBSpIYDEGk9KxsGh3mySTRgMtXL583qmBpzeQ+jqCMRgBqB98u3z++J1sKlXHWfM9dyhSevkMwSbhoR8XIq/U0tCNyokEi/ueaBMCvbcTHhO7FcwzY92WK4Yt0aGROY5qX2UKSeOvuP4D6TPqKF1onrSzH9bx9XUf2lEdWT/ia1NEKjunUqu1xOB/StKDHMoX4/OKyIzuS0q/T1zOATthvasJFoPrAjkohTyaDUz2LN5JoH839hViyEG82yB+MjcFV5MU3N1l1QL3cVUCh93xSaua1N85qivl+siMkPGbO5xR/En4iEY6K2XPASUEMaieWVNTRCtJ4S8H+9",
]

# https://bitbucket.org/site/ssh
BITBUCKET_HOST_KEYS = [
    "bitbucket.org ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBPIQmuzMBuKdWeF4+a2sjSSpBK0iqitSQ+5BM9KhpexuGt20JpTVM7u5BDZngncgrqDMbWdxMWWOGtZ9UgbqgZE=",
    "bitbucket.org ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIIazEu89wgQZ4bqs3d63QSMzYVa0MuJ2e2gKTKqu+UUO",
    "bitbucket.org ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAABgQDQeJzhupRu0u0cdegZIa8e86EG2qOCsIsD1Xw0xSeiPDlCr7kq97NLmMbpKTX6Esc30NuoqEEHCuc7yWtwp8dI76EEEB1VqY9QJq6vk+aySyboD5QF61I/1WeTwu+deCbgKMGbUijeXhtfbxSxm6JwGrXrhBdofTsbKRUsrN1WoNgUa8uqN1Vx6WAJw1JHPhglEGGHea6QICwJOAr/6mrui/oB7pkaWKHj3z7d1IC4KWLtY47elvjbaTlkN04Kc/5LFEirorGYVbt15kAUlqGM65pk6ZBxtaO3+30LVlORZkxOh+LKL/BvbZ/iRNhItLqNyieoQj/uh/7Iv4uyH/cV/0b4WDSd3DptigWq84lJubb9t/DnZlrJazxyDCulTmKdOR7vs9gMTo+uoIrPSb8ScTtvw65+odKAlBj59dhnVp9zd7QUojOpXlL62Aw56U4oO+FALuevvMjiWeavKhJqlR7i5n9srYcrNV7ttmDw7kf/97P5zauIhxcjX+xHv4M=",
]

DEFAULT_HOST_KEYS = GITHUB_HOST_KEYS + GITLAB_HOST_KEYS + BITBUCKET_HOST_KEYS


class ProvisioningError(Exception):
    """Raised when the ssh or git configuration cannot be written."""
    pass


def setup_known_hosts(
    extra_hosts: Optional[list[str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """
    Make sure ~/.ssh/known_hosts can verify the usual git hosts.

    A missing file is created with the built-in GitHub, GitLab and
    Bitbucket keys plus the extra entries. An existing file only gets the
    extra entries it doesn't contain yet.

    Args:
        extra_hosts: Operator supplied known_hosts lines.
        home: Home directory (default: the current user's).

    Returns:
        Path to the known_hosts file.

    Raises:
        ProvisioningError: If the file cannot be read or written.
    """
    home = Path(home) if home else Path.home()
    extra_hosts = [h.strip() for h in (extra_hosts or []) if h.strip()]
    ssh_dir = home / ".ssh"
    known_hosts = ssh_dir / "known_hosts"

    try:
        ssh_dir.mkdir(mode=0o700, exist_ok=True)

        if not known_hosts.exists():
            logger.warning(f"There is no {known_hosts}, creating with default fingerprints")
            known_hosts.write_text("\n".join(DEFAULT_HOST_KEYS + extra_hosts) + "\n")
            return known_hosts

        existing = known_hosts.read_text()
        missing = [h for h in extra_hosts if h not in existing]
        if missing:
            logger.debug(f"Host keys not found in {known_hosts}, adding from arguments")
            prefix = "" if not existing or existing.endswith("\n") else "\n"
            with open(known_hosts, "a") as f:
                f.write(prefix + "\n".join(missing) + "\n")

    except OSError as e:
        raise ProvisioningError(f"Failed to set up {known_hosts}: {e}")

    return known_hosts


def setup_gitconfig(directory: str | Path, home: Optional[Path] = None) -> Optional[Path]:
    """
    Create ~/.gitconfig marking the watched directory as safe.

    Git refuses to work in repositories owned by another user, which is the
    norm for mounted volumes. Only done when there is no gitconfig at all.

    Returns:
        Path to the created file, or None if one already existed.
    """
    home = Path(home) if home else Path.home()
    config = home / ".gitconfig"

    if config.exists():
        return None

    try:
        config.write_text(f"[safe]\n  directory = {Path(directory).resolve()}\n")
    except OSError as e:
        raise ProvisioningError(f"Failed to create {config}: {e}")

    logger.debug(f"Created {config} with {directory} as safe directory")
    return config
