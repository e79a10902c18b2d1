"""
gitwatch command spawning

Scripts and the managed process are started either directly (argument
vector, no shell) or through the platform shell.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Optional

from gitwatch.errors import ConfigError

logger = logging.getLogger(__name__)

# The platform supports process groups and POSIX signals
POSIX = os.name != "nt"

_VARIABLE = re.compile(r"\$[A-Za-z{]")
_SHELL_OPERATORS = (" | ", " && ", " || ")


def split_command(command: str) -> list[str]:
    """
    Split a direct-mode command into an argument vector.

    Raises:
        ConfigError: If the command is empty or has unbalanced quotes.
    """
    try:
        args = shlex.split(command)
    except ValueError as e:
        raise ConfigError(f"Cannot parse command {command!r}: {e}")

    if not args:
        raise ConfigError("Command cannot be empty")

    return args


def looks_like_shell(command: str) -> bool:
    """Check for variables or operators that only a shell understands."""
    return bool(_VARIABLE.search(command)) or any(op in command for op in _SHELL_OPERATORS)


def validate_command(command: str, shell: bool) -> None:
    """
    Validate a command at configuration time.

    Direct commands that look like they need a shell only get a warning.
    """
    if not command or not command.strip():
        raise ConfigError("Command cannot be empty")

    if shell:
        return

    split_command(command)
    if looks_like_shell(command):
        logger.warning(
            f"The command {command!r} contains a variable or other shell-specific "
            "character: you might want to run it in a shell (-S or -P)"
        )


async def spawn(
    command: str,
    shell: bool,
    cwd: Optional[str | Path] = None,
    env: Optional[dict[str, str]] = None,
    new_session: bool = False,
) -> asyncio.subprocess.Process:
    """
    Start a command with stdout and stderr merged into one pipe.

    Args:
        command: Command line as configured.
        shell: Run through the platform shell instead of directly.
        cwd: Working directory.
        env: Full environment (None inherits ours).
        new_session: Put the child in its own process group (POSIX only).

    Raises:
        OSError: If the executable cannot be started.
    """
    kwargs = dict(
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    if new_session and POSIX:
        kwargs["start_new_session"] = True

    if shell:
        logger.debug(f"Running {command!r} in a shell")
        return await asyncio.create_subprocess_shell(command, **kwargs)

    args = split_command(command)
    logger.debug(f"Running {args!r}")
    return await asyncio.create_subprocess_exec(*args, **kwargs)
