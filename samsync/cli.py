#!/usr/bin/env python3
"""
Synchronize the SAM v2 medication formulary exports into PostgreSQL.

Examples:
  uv run python -m samsync init-db
  uv run python -m samsync sync
  uv run python -m samsync sync --resume --verbose
  uv run python -m samsync sync --dry-run --skip-download --export-dir data/sam-export
"""

from __future__ import annotations

import argparse
import datetime as dt
from pathlib import Path

from loguru import logger

from samsync.config import DEFAULT_BATCH_SIZE
from samsync.config import DEFAULT_EXPORT_DIR
from samsync.config import DEFAULT_LOCK_FILE
from samsync.config import DEFAULT_PROGRESS_FILE
from samsync.config import LOG_FILE
from samsync.config import LOG_LEVEL
from samsync.db import get_engine
from samsync.db import init_db
from samsync.db import resolve_pg_dsn
from samsync.errors import ConfigurationError
from samsync.errors import SyncError
from samsync.lock import exclusive_sync_lock
from samsync.logging import configure_logger
from samsync.runner import new_sync_id
from samsync.runner import run_sync
from samsync.state import SyncContext


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SAM v2 formulary sync.")
    parser.add_argument("--db-url", default=None, help="Database DSN override.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging and parse progress.")
    parser.add_argument("--log-file", default=LOG_FILE, help="Log file name under logs/ ('' disables).")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the formulary tables.")

    sync_cmd = sub.add_parser("sync", help="Download, import and publish a full SAM export.")
    sync_cmd.add_argument("--dry-run", action="store_true", help="Parse and count without writing.")
    sync_cmd.add_argument("--resume", action="store_true", help="Continue an interrupted sync.")
    sync_cmd.add_argument(
        "--skip-download",
        action="store_true",
        help="Use XML files already present in the export directory.",
    )
    sync_cmd.add_argument("--export-dir", type=Path, default=DEFAULT_EXPORT_DIR)
    sync_cmd.add_argument("--progress-file", type=Path, default=DEFAULT_PROGRESS_FILE)
    sync_cmd.add_argument("--lock-file", type=Path, default=DEFAULT_LOCK_FILE)
    sync_cmd.add_argument("--batch-size", type=int, default=DEFAULT_BATCH_SIZE)
    return parser


def _build_context(args: argparse.Namespace) -> SyncContext:
    if args.batch_size <= 0:
        raise ConfigurationError(f"--batch-size must be positive, got {args.batch_size}")
    engine = None if args.dry_run else get_engine(resolve_pg_dsn(args.db_url))
    return SyncContext(
        sync_id=new_sync_id(),
        today=dt.date.today(),
        engine=engine,
        dry_run=args.dry_run,
        resume=args.resume,
        verbose=args.verbose,
        skip_download=args.skip_download,
        export_dir=args.export_dir,
        progress_file=args.progress_file,
        batch_size=args.batch_size,
    )


def _sync(args: argparse.Namespace) -> int:
    if args.dry_run:
        logger.info("Mode: DRY RUN (no database changes)")
    if args.resume:
        logger.info("Mode: RESUME (continuing previous sync)")

    try:
        ctx = _build_context(args)
    except SyncError as exc:
        logger.error("Invalid sync configuration: {}", exc)
        return 1

    try:
        if args.dry_run:
            progress = run_sync(ctx)
        else:
            with exclusive_sync_lock(args.lock_file):
                progress = run_sync(ctx)
    except SyncError as exc:
        logger.error("Sync failed: {}", exc)
        return 1
    except Exception:
        logger.exception("Sync {} failed unexpectedly", ctx.sync_id)
        return 1

    logger.info("Sync {} complete: {} tables", progress.sync_id, len(progress.tables_imported))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logger(level="DEBUG" if args.verbose else LOG_LEVEL, log_file=args.log_file or None)

    if args.command == "init-db":
        init_db(get_engine(resolve_pg_dsn(args.db_url)))
        logger.info("Initialized formulary schema.")
        return 0

    return _sync(args)


if __name__ == "__main__":
    raise SystemExit(main())
