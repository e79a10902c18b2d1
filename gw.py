#!/usr/bin/env python3
"""
gw - watch a git repository and deploy on every change

Usage:
  gw /srv/app -s "make build" -p "./server"
        Check every minute, run the build and restart the server on changes

  gw /srv/app --http 0.0.0.0:1234 -d 0 -S 'echo "$GW_GIT_COMMIT_SHA"'
        Check on webhook calls only

  gw /srv/app --once -s "make deploy"
        Check once and exit, suitable for crontabs

  gw -c gitwatch.yaml
        Read everything from a configuration file
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

__version__ = "0.4.0"

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(message)s"

# Loggers of libraries that are only shown with -vv
THIRD_PARTY_LOGGERS = ("git", "uvicorn", "asyncio")


def setup_logging(verbose: int = 0, quiet: bool = False) -> None:
    """
    Configure the root logger from -v/-q.

    Default INFO, -v DEBUG for gitwatch, -vv DEBUG for everything,
    -q only errors.
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr, force=True)

    third_party_level = logging.DEBUG if verbose >= 2 else max(level, logging.WARNING)
    for name in THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)


def script_step(command: str):
    from gitwatch.actions import ScriptStep
    return ScriptStep(command=command, shell=False)


def shell_script_step(command: str):
    from gitwatch.actions import ScriptStep
    return ScriptStep(command=command, shell=True)


def process_step(command: str):
    from gitwatch.actions import ProcessStep
    return ProcessStep(command=command, shell=False)


def shell_process_step(command: str):
    from gitwatch.actions import ProcessStep
    return ProcessStep(command=command, shell=True)


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="gw",
        description="Watch a git repository, pull changes and run actions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  gw /srv/app -s "make build" -p "./server"
  gw /srv/app --on tag:v* --http 0.0.0.0:1234
  gw /srv/app --once -S 'echo "deployed $GW_GIT_COMMIT_SHORT_SHA"'
  gw -c gitwatch.yaml -v
"""
    )

    parser.add_argument(
        "directory",
        nargs="?",
        help="The git repository to watch"
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to a YAML config file, flags override its values"
    )

    # All actions share one list to keep their order
    actions = parser.add_argument_group("actions")
    actions.add_argument(
        "--script", "-s",
        dest="steps",
        action="append",
        type=script_step,
        metavar="COMMAND",
        help="Script to run on changes, can be given multiple times"
    )
    actions.add_argument(
        "--script-shell", "-S",
        dest="steps",
        action="append",
        type=shell_script_step,
        metavar="COMMAND",
        help="Script to run in a shell on changes, can be given multiple times"
    )
    actions.add_argument(
        "--process", "-p",
        dest="steps",
        action="append",
        type=process_step,
        metavar="COMMAND",
        help="Process to (re)start on changes"
    )
    actions.add_argument(
        "--process-shell", "-P",
        dest="steps",
        action="append",
        type=shell_process_step,
        metavar="COMMAND",
        help="Process to (re)start in a shell on changes"
    )
    actions.add_argument(
        "--process-retries",
        type=int,
        help="How many times to retry a failing process (default: 0)"
    )
    actions.add_argument(
        "--stop-signal",
        help="Signal to stop the process with (default: SIGINT)"
    )
    actions.add_argument(
        "--stop-timeout",
        help="Time to wait for the process to stop before killing it (default: 10s)"
    )

    # Checks
    checks = parser.add_argument_group("checks")
    checks.add_argument(
        "--on",
        help="What to follow: push (default), tag or tag:<glob>"
    )
    checks.add_argument(
        "--ssh-key",
        help="SSH key for fetching"
    )
    checks.add_argument(
        "--git-username",
        help="Username for https remotes"
    )
    checks.add_argument(
        "--git-token",
        help="Token or password for https remotes"
    )
    checks.add_argument(
        "--git-known-host",
        dest="known_hosts",
        action="append",
        metavar="LINE",
        help="Extra known_hosts entry, can be given multiple times"
    )

    # Triggers
    triggers = parser.add_argument_group("triggers")
    triggers.add_argument(
        "--every", "-d",
        help="Check with this delay, e.g. 30s, 5m, 1h; 0 disables (default: 1m)"
    )
    triggers.add_argument(
        "--http",
        metavar="ADDRESS",
        help="Run an HTTP server on this address, every request triggers a check"
    )
    triggers.add_argument(
        "--once",
        action="store_true",
        default=None,
        help="Check once, run the actions if needed and exit"
    )

    # Output
    parser.add_argument(
        "--verbose", "-v",
        action="count",
        default=0,
        help="More output: -v for debug, -vv for debug from libraries too"
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Only print errors"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser


def build_config(args: argparse.Namespace):
    """
    Merge the config file (if any) with the command-line flags.

    Raises:
        ConfigError: If the result is invalid.
    """
    from gitwatch.actions import ProcessStep
    from gitwatch.checker import parse_check_mode
    from gitwatch.duration import parse_duration
    from gitwatch.errors import ConfigError
    from gitwatch.orchestrator import GwConfig, parse_config, validate_config
    from gitwatch.supervisor import parse_signal

    if args.config:
        config = parse_config(Path(args.config), validate=False)
    elif args.directory:
        config = GwConfig(directory=args.directory)
    else:
        raise ConfigError("Give a directory to watch or a config file with -c")

    if args.directory:
        config.directory = str(Path(args.directory).expanduser())

    if args.on:
        config.check.mode = parse_check_mode(args.on)

    if args.ssh_key:
        config.git.ssh_key = args.ssh_key
    if args.git_username:
        config.git.username = args.git_username
    if args.git_token:
        config.git.token = args.git_token
    if args.known_hosts:
        config.git.known_hosts = config.git.known_hosts + args.known_hosts

    if args.every is not None:
        config.triggers.every = parse_duration(args.every)
    if args.http:
        config.triggers.http = args.http
    if args.once:
        config.triggers.once = True

    if args.steps:
        config.actions = list(args.steps)

    # Process flags apply to the process, wherever it was declared
    overrides = {}
    if args.process_retries is not None:
        overrides["retries"] = args.process_retries
    if args.stop_signal:
        overrides["stop_signal"] = parse_signal(args.stop_signal)
    if args.stop_timeout:
        overrides["stop_timeout"] = parse_duration(args.stop_timeout)
    if overrides:
        config.actions = [
            replace(step, **overrides) if isinstance(step, ProcessStep) else step
            for step in config.actions
        ]

    validate_config(config)
    return config


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.quiet)
    logger = logging.getLogger("gw")

    from gitwatch.errors import ConfigError
    from gitwatch.orchestrator import run_gw

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    return asyncio.run(run_gw(config))


if __name__ == "__main__":
    sys.exit(main())
