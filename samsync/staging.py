"""Staging tables and the atomic swap that publishes them.

Each run writes into ``<table>__s<sync_id>`` copies of the live tables. Live
tables are only touched by ``swap_staging_tables``, which renames every
staged table into place inside a single transaction.
"""

from __future__ import annotations

import re
from typing import Any

from loguru import logger
from sqlalchemy import MetaData
from sqlalchemy import Table
from sqlalchemy import inspect
from sqlalchemy import insert
from sqlalchemy import select
from sqlalchemy.engine import Connection
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from samsync.errors import SwapError
from samsync.models import SYNCED_TABLES
from samsync.models import SyncMetadata


STAGING_NAME_RE = re.compile(r"^(\w+)__s(\d+)$")


def staging_name(table_name: str, sync_id: int) -> str:
    return f"{table_name}__s{sync_id}"


def displaced_name(table_name: str, sync_id: int) -> str:
    return f"{table_name}__old{sync_id}"


def staging_tables(sync_id: int, table_names: list[str] | None = None) -> dict[str, Table]:
    """Build (but do not create) the staging copies of the live tables."""
    metadata = MetaData()
    names = table_names if table_names is not None else list(SYNCED_TABLES)
    return {
        name: SYNCED_TABLES[name].to_metadata(metadata, name=staging_name(name, sync_id))
        for name in names
    }


def create_staging_tables(engine: Engine, sync_id: int, table_names: list[str] | None = None) -> dict[str, Table]:
    tables = staging_tables(sync_id, table_names)
    for table in tables.values():
        table.create(engine, checkfirst=True)
    SyncMetadata.__table__.create(engine, checkfirst=True)
    logger.info("Prepared {} staging tables for sync {}", len(tables), sync_id)
    return tables


def drop_stale_staging_tables(engine: Engine, keep_sync_id: int | None = None) -> list[str]:
    """Drop staging tables left behind by interrupted runs."""
    dropped: list[str] = []
    existing = inspect(engine).get_table_names()
    with engine.begin() as conn:
        for name in existing:
            match = STAGING_NAME_RE.match(name)
            if not match or match.group(1) not in SYNCED_TABLES:
                continue
            if keep_sync_id is not None and int(match.group(2)) == keep_sync_id:
                continue
            _drop_table(conn, name)
            dropped.append(name)
    if dropped:
        logger.info("Dropped {} stale staging tables", len(dropped))
    return dropped


def staged_dmpp_keys(engine: Engine, dmpp_table: Table) -> set[str]:
    with engine.connect() as conn:
        rows = conn.execute(
            select(dmpp_table.c.code, dmpp_table.c.delivery_environment)
        ).all()
    return {f"{code}:{environment}" for code, environment in rows}


def sync_published(engine: Engine, sync_id: int) -> bool:
    """True once the swap for ``sync_id`` has committed (it writes the metadata row)."""
    table = SyncMetadata.__table__
    if not inspect(engine).has_table(table.name):
        return False
    with engine.connect() as conn:
        found = conn.execute(select(table.c.id).where(table.c.sync_id == sync_id).limit(1)).first()
    return found is not None


def _quote(conn: Connection, name: str) -> str:
    return conn.dialect.identifier_preparer.quote(name)


def _rename_table(conn: Connection, old_name: str, new_name: str) -> None:
    conn.exec_driver_sql(f"ALTER TABLE {_quote(conn, old_name)} RENAME TO {_quote(conn, new_name)}")


def _drop_table(conn: Connection, name: str) -> None:
    conn.exec_driver_sql(f"DROP TABLE IF EXISTS {_quote(conn, name)}")


def swap_staging_tables(
    engine: Engine,
    tables: dict[str, Table],
    sync_id: int,
    metadata_row: dict[str, Any],
) -> None:
    """Publish every staged table and record the run, all or nothing.

    On any failure the transaction is rolled back: live tables keep their
    names and contents, staging tables stay in place for a retry.
    """
    try:
        with engine.begin() as conn:
            existing = set(inspect(conn).get_table_names())
            for name in SYNCED_TABLES:
                staged = tables.get(name)
                if staged is None:
                    continue
                if name in existing:
                    _rename_table(conn, name, displaced_name(name, sync_id))
                _rename_table(conn, staged.name, name)
                if name in existing:
                    _drop_table(conn, displaced_name(name, sync_id))
            conn.execute(insert(SyncMetadata.__table__).values(**metadata_row))
    except SQLAlchemyError as exc:
        raise SwapError(f"Swap of staging tables for sync {sync_id} failed and was rolled back: {exc}") from exc
    logger.info("Swapped {} staging tables into place for sync {}", len(tables), sync_id)
