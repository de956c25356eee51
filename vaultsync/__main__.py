"""Main module for vaultsync."""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime, timezone

from vaultsync import __version__
from vaultsync.config import add_config_arguments, load_config
from vaultsync.core import (
    MergeConflictError,
    Resolution,
    SyncStatus,
    VaultSyncError,
)
from vaultsync.sync import VaultSync

LOGLEVEL = os.environ.get("VAULTSYNC_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("vaultsync-cli")
logger.setLevel(LOGLEVEL)

RESOLUTION_CHOICES = [r.value for r in Resolution]


def create_cli_parser():
    """Create the CLI parser with one subcommand per operation."""
    parser = argparse.ArgumentParser(
        prog="vaultsync", description="Sync a vault with S3 through git"
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    add_config_arguments(parser)

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    subparsers.required = True

    subparsers.add_parser("connect", help="Connect the vault directory to the bucket")

    push_parser = subparsers.add_parser("push", help="Commit and push local changes")
    push_parser.add_argument(
        "--strategy",
        type=str,
        choices=RESOLUTION_CHOICES,
        default=None,
        help="resolve every merge conflict this way instead of prompting",
    )

    subparsers.add_parser("pull", help="Merge remote changes into the vault")

    restore_parser = subparsers.add_parser(
        "restore", help="Discard all local changes (cannot be undone)"
    )
    restore_parser.add_argument(
        "--yes", "-y", action="store_true", help="do not ask for confirmation"
    )

    commit_parser = subparsers.add_parser("commit", help="Commit local changes")
    commit_parser.add_argument(
        "--message", "-m", type=str, default=None, help="the commit message"
    )

    subparsers.add_parser("status", help="Show the vault status")

    log_parser = subparsers.add_parser("log", help="Show recent commits")
    log_parser.add_argument(
        "--count", "-n", type=int, default=10, help="number of commits to show"
    )

    subparsers.add_parser("diff", help="Show uncommitted changes")
    return parser


def print_status(status: SyncStatus):
    line = status.state.value
    if status.step:
        line += f": {status.step}"
    if status.message and status.state.value == "error":
        line += f" ({status.message})"
    print(line)


def ask(prompt: str) -> str:
    try:
        return input(prompt)
    except EOFError:
        return ""


def prompt_resolutions(conflicts):
    """Ask for a resolution per conflicting path; an empty answer cancels."""
    resolutions = {}
    for conflict in conflicts:
        print(f"\n--- {conflict.path} ---")
        print(conflict.content)
        while True:
            answer = ask(f"Keep [{'/'.join(RESOLUTION_CHOICES)}] for {conflict.path} (empty to cancel): ")
            answer = answer.strip().lower()
            if not answer:
                return None
            if answer in RESOLUTION_CHOICES:
                resolutions[conflict.path] = Resolution(answer)
                break
            print(f"Please answer one of: {', '.join(RESOLUTION_CHOICES)}")
    return resolutions


def confirm(message: str) -> bool:
    return ask(f"{message} [y/N] ").strip().lower() in ("y", "yes")


def format_commit(commit) -> str:
    date = datetime.fromtimestamp(commit.author.timestamp, tz=timezone.utc)
    subject = commit.message.splitlines()[0] if commit.message else ""
    return f"{commit.oid[:8]} {date:%Y-%m-%d %H:%M} {commit.author.name}: {subject}"


async def run_command(args) -> int:
    config = load_config(args)
    decide = None
    if args.command == "push":
        if args.strategy:
            strategy = Resolution(args.strategy)
            decide = lambda conflicts: {c.path: strategy for c in conflicts}
        else:
            decide = prompt_resolutions

    sync = VaultSync(config, on_status=print_status, decide=decide, confirm=confirm)

    if args.command == "connect":
        await sync.connect()
    elif args.command == "push":
        await sync.push()
    elif args.command == "pull":
        await sync.pull()
    elif args.command == "restore":
        if not await sync.restore(confirmed=args.yes):
            print("Restore cancelled")
    elif args.command == "commit":
        oid = await sync.commit(args.message)
        if oid:
            print(oid)
    elif args.command == "status":
        await sync.refresh_status()
        if sync.repo.exists():
            _, status = await sync.diff()
            for label, paths in [
                ("staged", status.staged),
                ("modified", status.modified),
                ("untracked", status.untracked),
                ("deleted", status.deleted),
            ]:
                for path in paths:
                    print(f"  {label}: {path}")
    elif args.command == "log":
        for commit in await sync.log(args.count):
            print(format_commit(commit))
    elif args.command == "diff":
        text, _ = await sync.diff()
        print(text)
    return 0


def main():
    """Main entry point for the CLI."""
    parser = create_cli_parser()
    args = parser.parse_args()
    try:
        sys.exit(asyncio.run(run_command(args)))
    except MergeConflictError as e:
        print(f"Push suspended: {e}", file=sys.stderr)
        sys.exit(1)
    except VaultSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
