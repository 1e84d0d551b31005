"""
playlist-sync CLI - entry point

Subcommands run one component each: the watcher loop, a worker pass (plus a
reconcile pass), maintenance of the change log, and credential import.
"""

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger

from playlist_sync.core import database
from playlist_sync.core.config import (
    Config,
    ensure_directories,
    get_config_path,
    get_data_dir,
    load_config,
)
from playlist_sync.core.console import get_console, print_table
from playlist_sync.core.errors import ConfigError, StoreCorruptionError
from playlist_sync.core.output import log, set_quiet, setup_loguru

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CORRUPT = 3

DAY_MS = 24 * 60 * 60 * 1000


def _format_ms(timestamp_ms: Optional[int]) -> Optional[str]:
    if timestamp_ms is None:
        return None
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _format_seconds(timestamp: Optional[int]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def setup(config_path: Optional[Path], verbose: bool) -> Config:
    """Load config, configure logging, and open the database.

    Raises:
        ConfigError: If the configuration is unusable
    """
    config = load_config(config_path)
    ensure_directories()

    if config.database.path:
        database.set_database_path(Path(config.database.path))

    log_file = (
        Path(config.logging.log_file)
        if config.logging.log_file
        else get_data_dir() / "playlist-sync.log"
    )
    setup_loguru(
        log_file,
        level="DEBUG" if verbose else config.logging.level,
        console_output=config.logging.console_output or verbose,
        max_file_size_mb=config.logging.max_file_size_mb,
        backup_count=config.logging.backup_count,
    )

    from playlist_sync.domain.remote import list_providers, provider_exists

    if not provider_exists(config.worker.provider):
        raise ConfigError(
            f"Unknown provider '{config.worker.provider}'. "
            f"Available: {', '.join(list_providers())}"
        )

    database.init_database()
    database.check_integrity()
    return config


def _sync_context(config: Config, role: str):
    from playlist_sync.domain.sync import ProviderSession, SyncContext, new_holder_id

    holder = new_holder_id(role)
    session = ProviderSession.from_config(config, holder)
    return SyncContext(config=config, session=session, holder=holder)


def run_watch(config: Config) -> int:
    from playlist_sync.domain.sync import run_watcher

    log(f"Watching {config.root_folder} (Ctrl+C to stop)")
    run_watcher(config)
    return EXIT_OK


def run_work(config: Config, reconcile: bool = True) -> int:
    from playlist_sync.domain.sync import run_reconcile_once, run_worker_once

    ctx = _sync_context(config, "worker")
    report = run_worker_once(ctx)
    log(
        f"Worker: {len(report.synced)} playlists synced, {report.events_synced} events, "
        f"{report.mutations} remote changes"
    )
    for name, error in report.failed.items():
        log(f"  ✗ {name}: {error}", level="warning")
    if report.stopped == "auth_failure":
        log("Authentication failed; run auth-import with a fresh token", level="error")
        return EXIT_FAILED
    if report.stopped == "backpressure":
        log("Queue above threshold; remote sync skipped", level="warning")
        return EXIT_OK

    if reconcile:
        return _report_reconcile(run_reconcile_once(ctx))
    return EXIT_FAILED if report.failed else EXIT_OK


def run_reconcile(config: Config) -> int:
    from playlist_sync.domain.sync import run_reconcile_once

    return _report_reconcile(run_reconcile_once(_sync_context(config, "reconciler")))


def _report_reconcile(report) -> int:
    log(
        f"Reconcile: {len(report.reconciled)} playlists checked, "
        f"{report.mutations} remote changes"
    )
    for name in report.orphans:
        log(f"  ? {name}: no local folder", level="warning")
    for name, error in report.failed.items():
        log(f"  ✗ {name}: {error}", level="warning")
    return EXIT_FAILED if report.failed else EXIT_OK


def run_status(config: Config) -> int:
    from playlist_sync.domain.sync import leases

    console = get_console()
    console.print(f"[bold]Library:[/bold] {config.root_folder}")
    console.print(f"[bold]Provider:[/bold] {config.worker.provider}")
    console.print(f"[bold]Database:[/bold] {database.get_database_path()}")

    print_table(
        "Pending events",
        ["Playlist", "Pending", "Oldest"],
        (
            (row["playlist_name"], row["pending"], _format_ms(row["oldest"]))
            for row in database.get_queue_summary()
        ),
    )
    print_table(
        "Playlist mappings",
        ["Playlist", "Remote id", "Snapshot", "Last synced"],
        (
            (
                m.playlist_name,
                m.remote_id,
                m.remote_snapshot_id[:12] if m.remote_snapshot_id else None,
                _format_seconds(m.last_synced_at),
            )
            for m in database.list_playlist_mappings()
        ),
    )
    now = database.now_seconds()
    print_table(
        "Leases",
        ["Name", "Holder", "Expires", "State"],
        (
            (
                lease.name,
                lease.holder,
                _format_seconds(lease.expires_at),
                "held" if lease.is_valid(now) else "expired",
            )
            for lease in leases.list_leases()
        ),
    )
    stats = database.get_track_cache_stats()
    console.print(
        f"Track cache: {stats['total']} entries, {stats['unresolved']} unresolved"
    )
    return EXIT_OK


def run_prune(days: int) -> int:
    cutoff = database.now_ms() - days * DAY_MS
    removed = database.prune_synced_events(cutoff)
    log(f"Pruned {removed} synced events older than {days} days")
    return EXIT_OK


def run_clear_queue(playlist: Optional[str]) -> int:
    removed = database.clear_unsynced_events(playlist)
    target = f"'{playlist}'" if playlist else "all playlists"
    log(f"Dropped {removed} unsynced events for {target}", level="warning")
    return EXIT_OK


def run_auth_import(provider: str, token_file: Path) -> int:
    from playlist_sync.domain.remote import list_providers, provider_exists

    if not provider_exists(provider):
        print(
            f"Unknown provider '{provider}'. Available: {', '.join(list_providers())}",
            file=sys.stderr,
        )
        return EXIT_FAILED

    try:
        token_data = json.loads(token_file.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"Cannot read token file {token_file}: {e}", file=sys.stderr)
        return EXIT_FAILED

    if not isinstance(token_data, dict) or not token_data.get("access_token"):
        print("Token file must be a JSON object with an access_token", file=sys.stderr)
        return EXIT_FAILED

    database.save_credential(provider, token_data)
    log(f"Stored {provider} credentials")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="playlist-sync",
        description="Keep folder playlists in sync with a streaming service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml")
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Debug logging to stderr"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only write messages to the log file"
    )

    subparsers = parser.add_subparsers(dest="subcommand", help="Available commands")

    subparsers.add_parser("watch", help="Watch the library and record changes")

    work_parser = subparsers.add_parser(
        "work", help="Push pending changes, then reconcile"
    )
    work_parser.add_argument(
        "--no-reconcile", action="store_true", help="Skip the reconcile pass"
    )

    subparsers.add_parser("reconcile", help="Make every remote playlist match local")
    subparsers.add_parser("status", help="Show queue, mappings and leases")

    prune_parser = subparsers.add_parser("prune", help="Delete old synced events")
    prune_parser.add_argument(
        "--days", type=int, default=30, help="Keep synced events newer than this"
    )

    clear_parser = subparsers.add_parser("clear-queue", help="Drop unsynced events")
    clear_parser.add_argument("--playlist", help="Only this playlist")

    subparsers.add_parser("config-validate", help="Check the configuration file")

    auth_parser = subparsers.add_parser(
        "auth-import", help="Store a provider token from a JSON file"
    )
    auth_parser.add_argument("provider", help="Provider name (spotify, tidal)")
    auth_parser.add_argument("token_file", type=Path, help="JSON token file")

    return parser


def main(argv: Optional[list] = None) -> None:
    """Main entry point for the playlist-sync command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.subcommand:
        parser.print_help()
        sys.exit(EXIT_CONFIG)

    set_quiet(args.quiet)
    try:
        config = setup(args.config, args.verbose)
        if args.subcommand == "watch":
            code = run_watch(config)
        elif args.subcommand == "work":
            code = run_work(config, reconcile=not args.no_reconcile)
        elif args.subcommand == "reconcile":
            code = run_reconcile(config)
        elif args.subcommand == "status":
            code = run_status(config)
        elif args.subcommand == "prune":
            code = run_prune(args.days)
        elif args.subcommand == "clear-queue":
            code = run_clear_queue(args.playlist)
        elif args.subcommand == "config-validate":
            log(f"Configuration OK: {args.config or get_config_path()}")
            code = EXIT_OK
        elif args.subcommand == "auth-import":
            code = run_auth_import(args.provider, args.token_file)
        else:
            parser.error(f"unknown command {args.subcommand}")
    except StoreCorruptionError as e:
        logger.critical(f"Sync database is corrupted: {e}")
        print(
            f"Sync database {database.get_database_path()} is corrupted: {e}",
            file=sys.stderr,
        )
        sys.exit(EXIT_CORRUPT)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    sys.exit(code)


if __name__ == "__main__":
    main()
