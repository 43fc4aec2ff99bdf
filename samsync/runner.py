"""Sync coordinator: download -> stage -> import -> finalize -> done.

Each phase is persisted in the progress file before the next one starts,
so an interrupted run can resume where it stopped. Live tables are only
modified by the finalize swap, and only after every expected table
received data.
"""

from __future__ import annotations

import datetime as dt
import time
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from samsync.config import DERIVED_TABLES
from samsync.config import FILE_TABLE_MAPPING
from samsync.download import SamExportDownloader
from samsync.download import locate_export_files
from samsync.element import XmlElement
from samsync.errors import IncompleteImportError
from samsync.errors import MissingSourceFilesError
from samsync.importer import BatchImporter
from samsync.logging import bind_context
from samsync.logging import log_drop_counts
from samsync.logging import phase_finished
from samsync.logging import phase_started
from samsync.models import SYNCED_TABLES
from samsync.staging import create_staging_tables
from samsync.staging import drop_stale_staging_tables
from samsync.staging import staged_dmpp_keys
from samsync.staging import swap_staging_tables
from samsync.staging import sync_published
from samsync.state import ProgressState
from samsync.state import ProgressStore
from samsync.state import SyncContext
from samsync.transformers import Record
from samsync.transformers import Skipped
from samsync.transformers import transform_amp
from samsync.transformers import transform_atc_classification
from samsync.transformers import transform_chapter_iv_paragraph
from samsync.transformers import transform_company
from samsync.transformers import transform_legal_basis
from samsync.transformers import transform_pharmaceutical_form
from samsync.transformers import transform_reimbursement_context
from samsync.transformers import transform_route_of_administration
from samsync.transformers import transform_substance
from samsync.transformers import transform_vmp
from samsync.transformers import transform_vmp_group
from samsync.transformers import transform_vtm
from samsync.xml_stream import iter_elements


@dataclass(frozen=True, slots=True)
class ImportStep:
    file_type: str
    element: str
    transform: Callable[[XmlElement, SyncContext], object]

    @property
    def key(self) -> str:
        return f"{self.file_type}:{self.element}"


# Order matters: reimbursement contexts are validated against DMPPs from the
# AMP export.
IMPORT_PLAN: tuple[ImportStep, ...] = (
    ImportStep("REF", "Substance", transform_substance),
    ImportStep("REF", "AtcClassification", transform_atc_classification),
    ImportStep("REF", "PharmaceuticalForm", transform_pharmaceutical_form),
    ImportStep("REF", "RouteOfAdministration", transform_route_of_administration),
    ImportStep("CPN", "Company", transform_company),
    ImportStep("RML", "LegalBasis", transform_legal_basis),
    ImportStep("VMP", "Vtm", transform_vtm),
    ImportStep("VMP", "VmpGroup", transform_vmp_group),
    ImportStep("VMP", "Vmp", transform_vmp),
    ImportStep("AMP", "Amp", transform_amp),
    ImportStep("RMB", "ReimbursementContext", transform_reimbursement_context),
    ImportStep("CHAPTERIV", "Paragraph", transform_chapter_iv_paragraph),
)


def new_sync_id() -> int:
    return int(time.time())


def synced_tables_for(file_types: tuple[str, ...] | list[str]) -> list[str]:
    """Tables replaced by a run over ``file_types``, in swap order."""
    wanted: set[str] = set()
    for file_type in file_types:
        wanted.update(FILE_TABLE_MAPPING[file_type])
        wanted.update(DERIVED_TABLES.get(file_type, ()))
    return [name for name in SYNCED_TABLES if name in wanted]


def expected_tables(file_types: tuple[str, ...] | list[str]) -> list[str]:
    """Tables that must receive rows; derived tables may legitimately stay empty."""
    expected: list[str] = []
    for file_type in file_types:
        expected.extend(FILE_TABLE_MAPPING[file_type])
    return expected


def check_all_tables_have_data(ctx: SyncContext) -> None:
    missing = [t for t in expected_tables(ctx.required_file_types) if t not in ctx.tables_with_data]
    if missing:
        raise IncompleteImportError(missing)


# --- phases -----------------------------------------------------------------


def download_phase(ctx: SyncContext, downloader: SamExportDownloader | None = None) -> dict[str, Path]:
    if ctx.skip_download:
        located = locate_export_files(ctx.export_dir, ctx.required_file_types)
    else:
        downloader = downloader or SamExportDownloader()
        located = downloader.ensure_exports(ctx.export_dir, ctx.required_file_types)
        ctx.source_url = downloader.last_url

    for file_type, path in located.items():
        logger.info("{}: using {}", file_type, path.name)
    missing = [t for t in ctx.required_file_types if t not in located]
    if missing:
        raise MissingSourceFilesError(missing)
    ctx.progress.file_types_located = {t: str(p) for t, p in located.items()}
    return located


def _relocate_files(ctx: SyncContext) -> dict[str, Path]:
    located = {
        t: Path(p) for t, p in ctx.progress.file_types_located.items() if Path(p).exists()
    }
    missing = [t for t in ctx.required_file_types if t not in located]
    if missing:
        located.update(locate_export_files(ctx.export_dir, missing))
        missing = [t for t in ctx.required_file_types if t not in located]
    if missing:
        raise MissingSourceFilesError(missing)
    return located


def stage_phase(ctx: SyncContext, fresh: bool) -> None:
    table_names = synced_tables_for(ctx.required_file_types)
    if ctx.dry_run:
        ctx.staging_tables = {name: SYNCED_TABLES[name] for name in table_names}
        return
    if fresh:
        drop_stale_staging_tables(ctx.engine, keep_sync_id=ctx.sync_id)
    ctx.staging_tables = create_staging_tables(ctx.engine, ctx.sync_id, table_names)


def _drop_label(entity: str, reason: str) -> str:
    return f"{entity}: {reason}"


def _save_checkpoint(
    ctx: SyncContext,
    step: ImportStep,
    processed: int,
    counts: Counter,
    drops: Counter,
    store: ProgressStore | None,
) -> None:
    if ctx.progress is None:
        return
    ctx.progress.checkpoints[step.key] = {
        "processed": processed,
        "counts": dict(counts),
        "drops": {_drop_label(entity, reason): n for (entity, reason), n in drops.items()},
    }
    if store is not None:
        store.save(ctx.progress)


def run_step(
    ctx: SyncContext,
    step: ImportStep,
    path: Path,
    importer: BatchImporter,
    store: ProgressStore | None = None,
) -> Counter:
    """Import one element type from ``path``.

    Progress is checkpointed after every flush, so a resumed step skips the
    elements whose records were already written.
    """
    log = bind_context(file_type=step.file_type, sync_id=ctx.sync_id)
    checkpoint = ctx.progress.checkpoints.get(step.key, {}) if ctx.progress is not None else {}
    resume_from = checkpoint.get("processed", 0)
    counts: Counter = Counter(checkpoint.get("counts", {}))
    drops: Counter = Counter()
    for label, count in checkpoint.get("drops", {}).items():
        entity, _, reason = label.partition(": ")
        drops[(entity, reason)] = count
    if resume_from:
        log.info("Resuming <{}> from {} after element {}", step.element, path.name, resume_from)
    else:
        log.info("Processing <{}> from {}", step.element, path.name)

    buffer: list[Record] = []
    processed = 0

    for element in iter_elements(path, step.element, verbose=ctx.verbose):
        processed += 1
        if processed <= resume_from:
            continue
        result = step.transform(element, ctx)
        for item in result if isinstance(result, list) else [result]:
            if isinstance(item, Skipped):
                drops[(item.entity, item.reason)] += 1
            else:
                buffer.append(item)
        if len(buffer) >= ctx.batch_size:
            counts.update(importer.import_records(buffer))
            buffer = []
            _save_checkpoint(ctx, step, processed, counts, drops, store)
    if buffer:
        counts.update(importer.import_records(buffer))

    ctx.drop_counts.update(drops)
    log_drop_counts(step.file_type, dict(drops))
    log.info("Processed {} <{}> elements: {}", processed, step.element, dict(counts))
    return counts


def import_phase(ctx: SyncContext, files: dict[str, Path], store: ProgressStore) -> None:
    progress = ctx.progress
    importer = BatchImporter(
        ctx.engine,
        ctx.staging_tables,
        ctx.sync_id,
        ctx.today,
        batch_size=ctx.upsert_batch_size,
        dry_run=ctx.dry_run,
        retry_wait_multiplier=ctx.retry_wait_multiplier,
    )
    for step in IMPORT_PLAN:
        if step.file_type not in ctx.required_file_types:
            continue
        if step.key in progress.steps_completed:
            logger.info("Skipping {} (completed in a previous attempt)", step.key)
            continue
        counts = run_step(ctx, step, files[step.file_type], importer, store)
        progress.complete_step(step.key, dict(counts))
        for (entity, reason), count in ctx.drop_counts.items():
            progress.drop_counts[_drop_label(entity, reason)] = count
        ctx.tables_with_data.update(t for t, c in counts.items() if c)
        store.save(progress)


def finalize_phase(ctx: SyncContext) -> None:
    check_all_tables_have_data(ctx)
    if ctx.dry_run:
        logger.info("[DRY RUN] Would swap {} staging tables into place", len(ctx.staging_tables))
        return

    progress = ctx.progress
    swap_staging_tables(
        ctx.engine,
        ctx.staging_tables,
        ctx.sync_id,
        {
            "sync_id": ctx.sync_id,
            "sync_type": "full",
            "started_at": dt.datetime.fromisoformat(progress.started_at),
            "completed_at": dt.datetime.now(dt.UTC),
            "status": "completed",
            "source_url": ctx.source_url,
            "record_counts": dict(progress.record_counts),
        },
    )


# --- coordinator ------------------------------------------------------------


def _restore_from_progress(ctx: SyncContext) -> None:
    progress = ctx.progress
    ctx.tables_with_data = {t for t, c in progress.record_counts.items() if c > 0}
    for label, count in progress.drop_counts.items():
        entity, _, reason = label.partition(": ")
        ctx.drop_counts[(entity, reason)] = count
    amp_started = "AMP:Amp" in progress.steps_completed or "AMP:Amp" in progress.checkpoints
    if amp_started and "dmpp" in ctx.staging_tables:
        ctx.dmpp_keys = staged_dmpp_keys(ctx.engine, ctx.staging_tables["dmpp"])
        logger.info("Restored {} DMPP keys from staging", len(ctx.dmpp_keys))


def run_sync(ctx: SyncContext, downloader: SamExportDownloader | None = None) -> ProgressState:
    """Run (or resume) a full sync. Raises ``SyncError`` subclasses on failure."""
    store = ProgressStore(ctx.progress_file, enabled=not ctx.dry_run)
    progress = store.load() if ctx.resume and not ctx.dry_run else None
    resumed = progress is not None
    if progress is None:
        progress = ProgressState(sync_id=ctx.sync_id)
    else:
        logger.info("Resuming sync {} at phase {}", progress.sync_id, progress.phase)
    ctx.sync_id = progress.sync_id
    ctx.progress = progress

    try:
        if progress.phase == "done":
            logger.info("Sync {} already completed", ctx.sync_id)
            store.clear()
            return progress

        if resumed and progress.phase == "finalize" and sync_published(ctx.engine, ctx.sync_id):
            logger.info("Sync {} was already published, marking it done", ctx.sync_id)
            progress.advance("done")
            store.clear()
            return progress

        if progress.phase == "download":
            phase_started("download", ctx.sync_id)
            files = download_phase(ctx, downloader)
            progress.advance("stage")
            store.save(progress)
            phase_finished("download", {"files": len(files)}, ctx.sync_id)
        else:
            files = _relocate_files(ctx)

        phase_started("stage", ctx.sync_id)
        stage_phase(ctx, fresh=progress.phase == "stage")
        if progress.phase == "stage":
            progress.advance("import")
            store.save(progress)
        phase_finished("stage", {"tables": len(ctx.staging_tables)}, ctx.sync_id)

        if resumed:
            _restore_from_progress(ctx)

        if progress.phase == "import":
            phase_started("import", ctx.sync_id)
            import_phase(ctx, files, store)
            progress.advance("finalize")
            store.save(progress)
            phase_finished("import", dict(progress.record_counts), ctx.sync_id)

        if progress.phase == "finalize":
            phase_started("finalize", ctx.sync_id)
            finalize_phase(ctx)
            progress.advance("done")
            store.save(progress)
            phase_finished("finalize", {"tables": sorted(ctx.tables_with_data)}, ctx.sync_id)
    except Exception as exc:
        progress.errors.append(str(exc))
        store.save(progress)
        raise

    for table, count in sorted(progress.record_counts.items()):
        logger.info("  {}: {}", table, count)
    store.clear()
    return progress
