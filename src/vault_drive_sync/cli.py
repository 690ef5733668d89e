"""Command-line interface for vault-drive-sync.

Each invocation builds one ``SyncEngine`` for the configured vault, runs a
single command and exits:

    0  success
    1  the operation failed (configuration, Drive or vault error)
    2  conflicts remain and need ``resolve``
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from vault_drive_sync import __version__
from vault_drive_sync.config import Config, load_config, to_sync_settings
from vault_drive_sync.config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
)
from vault_drive_sync.config_schema import UnifiedConfig, build_config
from vault_drive_sync.core.drive_client import DriveClient
from vault_drive_sync.logger import setup_logging
from vault_drive_sync.sync.engine import SyncEngine
from vault_drive_sync.sync.models import (
    ConflictChoice,
    SyncReport,
    SyncStatus,
)
from vault_drive_sync.vault import LocalVault

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFLICT = 2


def _stderr_print(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-drive-sync",
        description="Two-way Google Drive sync for note vaults",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show pending changes in both directions
  vault-drive-sync status

  # Download remote changes, then upload local ones
  vault-drive-sync pull && vault-drive-sync push

  # Keep the local side of every conflict found by pull
  vault-drive-sync resolve local

  # Restore a trashed file by id
  vault-drive-sync trash restore 1AbCdEf

Settings come from CLI args, VAULT_SYNC_* environment variables (.env is
loaded), then .vault_sync/config.yml. Run `vault-drive-sync init-config`
for a starter file.
        """,
    )
    parser.add_argument(
        "--vault",
        help="Vault directory (overrides VAULT_SYNC_PATH and config files)",
    )
    parser.add_argument(
        "--token",
        help="Drive OAuth access token (overrides VAULT_SYNC_ACCESS_TOKEN)"
        " (visible in process list -- prefer the env var)",
    )
    parser.add_argument(
        "--root-folder",
        help="Drive folder holding the vault (overrides VAULT_SYNC_ROOT_FOLDER)",
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default=None,
        help="Log record format (default: text)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"vault-drive-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show sync status and pending changes")
    sub.add_parser("push", help="Upload local changes")
    sub.add_parser("pull", help="Download remote changes")
    sub.add_parser("full-push", help="Make Drive mirror the vault")
    sub.add_parser("full-pull", help="Make the vault mirror Drive")

    resolve = sub.add_parser("resolve", help="Resolve pull conflicts")
    resolve.add_argument("choice", choices=[c.value for c in ConflictChoice])
    resolve.add_argument(
        "--file-id", help="Resolve only this file (default: every conflict)"
    )

    trash = sub.add_parser("trash", help="Manage the remote trash folder")
    trash.add_argument("action", choices=("list", "restore", "purge"))
    trash.add_argument("file_ids", nargs="*", metavar="FILE_ID")

    backups = sub.add_parser("backups", help="Manage conflict backups")
    backups.add_argument("action", choices=("list", "restore", "delete"))
    backups.add_argument("file_ids", nargs="*", metavar="FILE_ID")
    backups.add_argument(
        "--name", help="Vault path to restore a backup to (restore only)"
    )

    sub.add_parser("init-config", help="Write a starter config file")
    return parser


# ---------------------------------------------------------------------------
# Configuration and wiring
# ---------------------------------------------------------------------------


def load_unified_config() -> UnifiedConfig | None:
    """Load .env, then the YAML config files if any exist.

    ``.env`` goes first so ``${VAR}`` interpolation in YAML can use it.
    """
    load_dotenv()
    if not discover_config_files():
        return None
    return build_config(load_hierarchical_config())


def load_runtime_config(
    args: argparse.Namespace, unified: UnifiedConfig | None
) -> Config:
    """Resolve settings: CLI > env (.env loaded) > YAML config > defaults.

    Raises:
        ValueError: If required settings are missing or invalid.
    """
    yaml_fallbacks: dict[str, Any] | None = None
    if unified is not None:
        yaml_fallbacks = unified.fallbacks()
    return load_config(
        vault_path=args.vault,
        access_token=args.token,
        root_folder=args.root_folder,
        debug=args.debug,
        yaml_fallbacks=yaml_fallbacks,
    )


def build_engine(config: Config) -> SyncEngine:
    return SyncEngine(
        LocalVault(Path(config.vault_path)),
        DriveClient(config.access_token),
        to_sync_settings(config),
    )


def exit_code_for(report: SyncReport) -> int:
    """Map a report (and its follow-up) to a process exit code."""
    if report.error:
        return EXIT_ERROR
    if report.follow_up is not None:
        return exit_code_for(report.follow_up)
    if report.status is SyncStatus.CONFLICT:
        return EXIT_CONFLICT
    return EXIT_OK


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _cmd_status(engine: SyncEngine) -> int:
    await engine.refresh_sync_counts()
    print(f"Local changes:  {engine.local_modified_count}")
    print(f"Remote changes: {engine.remote_modified_count}")
    for direction in ("push", "pull"):
        listing = await engine.compute_sync_file_list(direction)
        for item in listing.files:
            label = f"{item.old_name} -> {item.name}" if item.old_name else item.name
            print(f"  {direction:<4} {item.type.value:<12} {label}")
    return EXIT_OK


async def _cmd_resolve(
    engine: SyncEngine, choice: ConflictChoice, file_id: str | None
) -> int:
    # Conflicts are discovered by a pull; nothing is written while any remain
    report = await engine.pull()
    print(report.summary())
    if report.error:
        return EXIT_ERROR
    if not engine.conflicts:
        print("No conflicts to resolve.")
        return EXIT_OK

    targets = (
        [file_id] if file_id else [c.file_id for c in list(engine.conflicts)]
    )
    code = EXIT_OK
    for target in targets:
        report = await engine.resolve_conflict(target, choice)
        print(report.summary())
        code = exit_code_for(report)
        if code == EXIT_ERROR:
            break
    if engine.conflicts and code == EXIT_OK:
        code = EXIT_CONFLICT
    return code


async def _cmd_trash(engine: SyncEngine, action: str, file_ids: list[str]) -> int:
    housekeeping = engine.housekeeping
    match action:
        case "list":
            for f in await housekeeping.list_trash_files():
                print(f"{f.id}\t{f.modified_time or ''}\t{f.name}")
        case "restore":
            count = await housekeeping.restore_from_trash(file_ids)
            print(f"Restored {count} of {len(file_ids)} file(s); pull to download.")
        case "purge":
            count = await housekeeping.permanent_delete_files(file_ids)
            print(f"Deleted {count} of {len(file_ids)} file(s).")
    return EXIT_OK


async def _cmd_backups(
    engine: SyncEngine, action: str, file_ids: list[str], name: str | None
) -> int:
    housekeeping = engine.housekeeping
    match action:
        case "list":
            for f in await housekeeping.list_conflict_files():
                print(f"{f.id}\t{f.modified_time or ''}\t{f.name}")
        case "restore":
            if len(file_ids) != 1 or not name:
                _stderr_print("ERROR: restore takes exactly one FILE_ID and --name")
                return EXIT_ERROR
            await housekeeping.restore_conflict_file(file_ids[0], name)
            print(f"Restored backup to {name}.")
        case "delete":
            count = await housekeeping.delete_conflict_files(file_ids)
            print(f"Deleted {count} of {len(file_ids)} backup(s).")
    return EXIT_OK


async def main(args: argparse.Namespace, engine: SyncEngine) -> int:
    """Run one command against ``engine`` and return the exit code."""
    try:
        match args.command:
            case "status":
                return await _cmd_status(engine)
            case "resolve":
                return await _cmd_resolve(
                    engine, ConflictChoice(args.choice), args.file_id
                )
            case "trash":
                return await _cmd_trash(engine, args.action, args.file_ids)
            case "backups":
                return await _cmd_backups(
                    engine, args.action, args.file_ids, args.name
                )

        operation = {
            "push": engine.push,
            "pull": engine.pull,
            "full-push": engine.full_push,
            "full-pull": engine.full_pull,
        }[args.command]
        report = await operation()
        print(report.summary())
        return exit_code_for(report)
    finally:
        await engine.drain_background()


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    args = build_parser().parse_args(argv)

    if args.command == "init-config":
        setup_logging(mode="cli", debug=args.debug)
        print(f"Config file: {ensure_config()}")
        sys.exit(EXIT_OK)

    try:
        unified = load_unified_config()
    except (OSError, ValueError, yaml.YAMLError) as e:
        _stderr_print(f"ERROR: Configuration file error: {e}")
        sys.exit(EXIT_ERROR)

    log_settings = (unified or UnifiedConfig()).logging
    setup_logging(
        mode="cli",
        debug=args.debug or log_settings.level.upper() == "DEBUG",
        log_file=args.log_file or log_settings.file,
        log_format=args.log_format or log_settings.format,
    )

    try:
        config = load_runtime_config(args, unified)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        _stderr_print(f"ERROR: Configuration error: {e}")
        sys.exit(EXIT_ERROR)

    if config.debug and not args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        code = asyncio.run(main(args, build_engine(config)))
    except KeyboardInterrupt:
        _stderr_print("\nInterrupted.")
        sys.exit(EXIT_OK)
    except Exception as e:
        logger.exception("Command failed")
        _stderr_print(f"ERROR: {e}")
        sys.exit(EXIT_ERROR)
    sys.exit(code)


if __name__ == "__main__":
    run()
