"""Logging helpers for the sync run."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from loguru import logger


def configure_logger(level: str = "INFO", log_file: str | None = "sam_sync.log", log_dir: Path = Path("logs")):
    """
    Configure loguru for a sync run: console on stderr plus a rotating file.
    """
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{extra[phase]}</cyan> - <level>{message}</level>",
        level=level,
    )

    if log_file:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / log_file,
            rotation="10 MB",
            retention="10 days",
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[phase]} | {name}:{function}:{line} - {message}",
            backtrace=True,
            diagnose=False,
        )

    logger.configure(extra={"phase": "-"})


def bind_context(**kwargs: Any):
    """Return a logger with bound contextual fields (phase/sync_id/file_type)."""
    return logger.bind(**{k: v for k, v in kwargs.items() if v is not None})


def phase_started(phase: str, sync_id: int | None = None):
    bind_context(phase=phase, sync_id=sync_id).info("phase_start")


def phase_finished(phase: str, summary: dict[str, Any], sync_id: int | None = None):
    bind_context(phase=phase, sync_id=sync_id).info("phase_end {}", summary)


def log_drop_counts(file_type: str, drops: dict[tuple[str, str], int]):
    for (entity, reason), count in sorted(drops.items()):
        bind_context(file_type=file_type).info("Dropped {} {} records: {}", count, entity, reason)
