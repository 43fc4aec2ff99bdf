from __future__ import annotations

import os
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy import event
from sqlalchemy.engine import Engine

from samsync.config import DEFAULT_PG_DSN


def resolve_pg_dsn(explicit_dsn: str | None = None) -> str:
    if explicit_dsn:
        return explicit_dsn
    return os.getenv("SAM_PG_DSN") or os.getenv("DATABASE_URL") or DEFAULT_PG_DSN


def _enable_sqlite_transactional_ddl(engine: Engine) -> None:
    # pysqlite commits implicitly around DDL; take over BEGIN so the table
    # swap can be rolled back like it is on PostgreSQL.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


@lru_cache(maxsize=8)
def get_engine(dsn: str) -> Engine:
    if dsn.startswith("sqlite"):
        engine = create_engine(dsn)
        _enable_sqlite_transactional_ddl(engine)
        return engine
    return create_engine(dsn, pool_pre_ping=True)


def init_db(engine: Engine) -> None:
    from samsync.models import Base

    Base.metadata.create_all(engine)
