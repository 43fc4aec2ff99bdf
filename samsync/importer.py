"""Batched upserts of transformed records into the (staging) tables."""

from __future__ import annotations

import datetime as dt
from collections import Counter
from collections.abc import Iterable
from typing import Any

from loguru import logger
from sqlalchemy import Table
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError
from sqlalchemy.exc import InterfaceError
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import SQLAlchemyError
from tenacity import RetryCallState
from tenacity import Retrying
from tenacity import retry_if_exception
from tenacity import stop_after_attempt
from tenacity import wait_exponential

from samsync.config import EXPIRED_FILTER_TABLES
from samsync.config import PG_MAX_BIND_PARAMS
from samsync.config import RETRY_ATTEMPTS
from samsync.config import RETRY_WAIT_MULTIPLIER
from samsync.config import UPSERT_BATCH_SIZE
from samsync.transformers import Record
from samsync.transformers import is_expired


TRANSIENT_MARKERS = (
    "connection",
    "server closed",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "not queryable",
)


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        message = str(exc).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)
    return False


def _chunked(items: list[dict], chunk_size: int):
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


def _effective_batch_size(requested_batch_size: int, columns_per_row: int) -> int:
    if requested_batch_size <= 0:
        requested_batch_size = 1
    if columns_per_row <= 0:
        return requested_batch_size
    # Keep margin for dialect/bookkeeping parameters in complex statements.
    max_rows = max(1, (PG_MAX_BIND_PARAMS - 512) // columns_per_row)
    return max(1, min(requested_batch_size, max_rows))


def key_columns(table: Table) -> list[str]:
    return [column.name for column in table.primary_key.columns]


def deduplicate(rows: Iterable[dict[str, Any]], keys: list[str]) -> list[dict[str, Any]]:
    """Keep the last row for each natural key."""
    latest: dict[tuple, dict[str, Any]] = {}
    for row in rows:
        natural_key = tuple("" if row.get(k) is None else row.get(k) for k in keys)
        latest[natural_key] = row
    return list(latest.values())


def filter_expired(table_name: str, rows: list[dict[str, Any]], today: dt.date) -> list[dict[str, Any]]:
    if table_name not in EXPIRED_FILTER_TABLES:
        return rows
    return [row for row in rows if not is_expired(row, today)]


class BatchImporter:
    def __init__(
        self,
        engine: Engine | None,
        tables: dict[str, Table],
        sync_id: int,
        today: dt.date,
        batch_size: int = UPSERT_BATCH_SIZE,
        dry_run: bool = False,
        retry_wait_multiplier: float = RETRY_WAIT_MULTIPLIER,
    ) -> None:
        self.engine = engine
        self.tables = tables
        self.sync_id = sync_id
        self.today = today
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.retry_wait_multiplier = retry_wait_multiplier

    def import_records(self, records: Iterable[Record]) -> Counter:
        """Write records grouped by table; return rows accepted per table."""
        by_table: dict[str, list[dict[str, Any]]] = {}
        for record in records:
            by_table.setdefault(record.table, []).append(record.data)

        written: Counter = Counter()
        for table_name, rows in by_table.items():
            table = self.tables[table_name]
            rows = filter_expired(table_name, rows, self.today)
            rows = deduplicate(rows, key_columns(table))
            if not rows:
                continue
            if self.dry_run:
                written[table_name] += len(rows)
                continue
            written[table_name] += self._import_table(table, rows)
        return written

    def _import_table(self, table: Table, rows: list[dict[str, Any]]) -> int:
        by_columns: dict[tuple[str, ...], list[dict[str, Any]]] = {}
        for row in rows:
            stamped = {**row, "sync_id": self.sync_id}
            by_columns.setdefault(tuple(sorted(stamped)), []).append(stamped)

        written = 0
        for columns, group in by_columns.items():
            chunk_size = _effective_batch_size(self.batch_size, len(columns))
            for batch in _chunked(group, chunk_size):
                written += self._write_batch(table, batch)
        return written

    def _write_batch(self, table: Table, rows: list[dict[str, Any]]) -> int:
        try:
            self._execute(table, rows)
            return len(rows)
        except SQLAlchemyError as exc:
            if is_transient_error(exc):
                raise
            logger.warning(
                "Batch of {} rows for {} failed, falling back to row-by-row: {}",
                len(rows),
                table.name,
                exc.__class__.__name__,
            )

        keys = key_columns(table)
        written = 0
        for row in rows:
            try:
                self._execute(table, [row])
                written += 1
            except SQLAlchemyError as exc:
                if is_transient_error(exc):
                    raise
                logger.error(
                    "Skipping {} row {}: {}",
                    table.name,
                    {k: row.get(k) for k in keys},
                    exc,
                )
        return written

    def _reconnect(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient database error (attempt {}/{}), reconnecting: {}",
            retry_state.attempt_number,
            RETRY_ATTEMPTS,
            exc,
        )
        self.engine.dispose()

    def _execute(self, table: Table, rows: list[dict[str, Any]]) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=10),
            retry=retry_if_exception(is_transient_error),
            before_sleep=self._reconnect,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                with self.engine.begin() as conn:
                    conn.execute(self._upsert_statement(table, rows))

    def _upsert_statement(self, table: Table, rows: list[dict[str, Any]]):
        insert = pg_insert if self.engine.dialect.name == "postgresql" else sqlite_insert
        stmt = insert(table).values(rows)
        keys = key_columns(table)
        update_columns = [name for name in rows[0] if name not in keys]
        if not update_columns:
            return stmt.on_conflict_do_nothing(index_elements=keys)
        return stmt.on_conflict_do_update(
            index_elements=keys,
            set_={name: getattr(stmt.excluded, name) for name in update_columns},
        )
