"""Run state for a sync: the explicit context and the persisted progress record."""

from __future__ import annotations

import datetime as dt
import json
from collections import Counter
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Any

from loguru import logger
from sqlalchemy import Table
from sqlalchemy.engine import Engine

from samsync.config import DEFAULT_BATCH_SIZE
from samsync.config import DEFAULT_EXPORT_DIR
from samsync.config import DEFAULT_PROGRESS_FILE
from samsync.config import REQUIRED_FILE_TYPES
from samsync.config import RETRY_WAIT_MULTIPLIER
from samsync.config import UPSERT_BATCH_SIZE


PHASES = ("download", "stage", "import", "finalize", "done")


def _utc_now() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


@dataclass(slots=True)
class ProgressState:
    sync_id: int
    phase: str = "download"
    started_at: str = field(default_factory=_utc_now)
    last_updated: str = field(default_factory=_utc_now)
    file_types_located: dict[str, str] = field(default_factory=dict)
    steps_completed: list[str] = field(default_factory=list)
    tables_imported: list[str] = field(default_factory=list)
    record_counts: dict[str, int] = field(default_factory=dict)
    drop_counts: dict[str, int] = field(default_factory=dict)
    # Step key -> {"processed", "counts", "drops"} for a step interrupted mid-file.
    checkpoints: dict[str, dict[str, Any]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    def advance(self, phase: str) -> None:
        if PHASES.index(phase) < PHASES.index(self.phase):
            raise ValueError(f"Cannot move sync from phase {self.phase!r} back to {phase!r}")
        self.phase = phase

    def complete_step(self, step: str, counts: dict[str, int]) -> None:
        for table, count in counts.items():
            self.record_counts[table] = self.record_counts.get(table, 0) + count
            if count and table not in self.tables_imported:
                self.tables_imported.append(table)
        if step not in self.steps_completed:
            self.steps_completed.append(step)
        self.checkpoints.pop(step, None)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProgressState:
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in payload.items() if k in known})


class ProgressStore:
    """JSON progress file, replaced atomically on every save."""

    def __init__(self, path: Path, enabled: bool = True) -> None:
        self.path = path
        self.enabled = enabled

    def load(self) -> ProgressState | None:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable progress file {}: {}", self.path, exc)
            return None
        return ProgressState.from_dict(payload)

    def save(self, state: ProgressState) -> None:
        state.last_updated = _utc_now()
        if not self.enabled:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(asdict(state), f, indent=2, sort_keys=True)
        tmp.replace(self.path)

    def clear(self) -> None:
        if self.enabled:
            self.path.unlink(missing_ok=True)


@dataclass(slots=True)
class SyncContext:
    sync_id: int
    today: dt.date
    engine: Engine | None = None
    dry_run: bool = False
    resume: bool = False
    verbose: bool = False
    skip_download: bool = False
    export_dir: Path = DEFAULT_EXPORT_DIR
    progress_file: Path = DEFAULT_PROGRESS_FILE
    batch_size: int = DEFAULT_BATCH_SIZE
    upsert_batch_size: int = UPSERT_BATCH_SIZE
    retry_wait_multiplier: float = RETRY_WAIT_MULTIPLIER
    required_file_types: tuple[str, ...] = REQUIRED_FILE_TYPES
    source_url: str | None = None
    # Cross-file validator: "dmppCode:deliveryEnvironment" seen in the AMP export.
    dmpp_keys: set[str] = field(default_factory=set)
    tables_with_data: set[str] = field(default_factory=set)
    drop_counts: Counter = field(default_factory=Counter)
    staging_tables: dict[str, Table] = field(default_factory=dict)
    progress: ProgressState | None = None
