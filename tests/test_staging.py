from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import inspect
from sqlalchemy import insert
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import TODAY
from samsync import staging
from samsync.db import init_db
from samsync.errors import SwapError
from samsync.importer import BatchImporter
from samsync.models import SYNCED_TABLES
from samsync.models import SyncMetadata
from samsync.transformers import Record


VMP_TABLES = ["vtm", "vmp_group", "vmp"]


def _seed_live(engine) -> None:
    init_db(engine)
    with engine.begin() as conn:
        conn.execute(insert(SYNCED_TABLES["vtm"]).values(code="old", name={"fr": "ancien"}, sync_id=1))
        conn.execute(insert(SYNCED_TABLES["vmp_group"]).values(code="g-old", name={"fr": "g"}, sync_id=1))
        conn.execute(insert(SYNCED_TABLES["vmp"]).values(code="v-old", name={"fr": "v"}, sync_id=1))


def _stage(engine, sync_id: int = 2):
    tables = staging.create_staging_tables(engine, sync_id, VMP_TABLES)
    BatchImporter(engine, tables, sync_id, TODAY).import_records(
        [
            Record("vtm", {"code": "new", "name": {"fr": "nouveau"}}),
            Record("vmp_group", {"code": "g-new", "name": {"fr": "g"}}),
            Record("vmp", {"code": "v-new", "name": {"fr": "v"}}),
        ]
    )
    return tables


def _codes(engine, table_name: str) -> list[str]:
    table = SYNCED_TABLES[table_name]
    with engine.connect() as conn:
        return list(conn.execute(select(table.c.code).order_by(table.c.code)).scalars())


def _metadata_row(sync_id: int = 2) -> dict:
    return {
        "sync_id": sync_id,
        "sync_type": "full",
        "started_at": dt.datetime(2025, 6, 1, 3, 0, tzinfo=dt.UTC),
        "status": "completed",
    }


def test_staging_tables_are_named_after_the_sync():
    tables = staging.staging_tables(1700000000, ["vtm", "amp_ingredient"])

    assert tables["vtm"].name == "vtm__s1700000000"
    assert [c.name for c in tables["amp_ingredient"].primary_key.columns] == [
        "amp_code",
        "component_sequence_nr",
        "rank",
    ]


def test_swap_publishes_staged_tables(engine):
    _seed_live(engine)
    tables = _stage(engine)

    staging.swap_staging_tables(engine, tables, 2, _metadata_row())

    assert _codes(engine, "vtm") == ["new"]
    assert _codes(engine, "vmp") == ["v-new"]
    names = set(inspect(engine).get_table_names())
    assert not any(name.startswith("vtm__") for name in names)
    with engine.connect() as conn:
        (row,) = conn.execute(select(SyncMetadata.__table__)).mappings().all()
    assert row["sync_id"] == 2
    assert row["status"] == "completed"


def test_swap_works_without_live_tables(engine):
    tables = _stage(engine)

    staging.swap_staging_tables(engine, tables, 2, _metadata_row())

    assert _codes(engine, "vtm") == ["new"]


@pytest.mark.parametrize("failing_call", [1, 2, 4, 6])
def test_failed_rename_rolls_back_every_table(engine, monkeypatch, failing_call):
    _seed_live(engine)
    tables = _stage(engine)
    real_rename = staging._rename_table
    calls = {"n": 0}

    def flaky_rename(conn, old_name, new_name):
        calls["n"] += 1
        if calls["n"] == failing_call:
            raise OperationalError("ALTER TABLE", {}, Exception("disk I/O error"))
        real_rename(conn, old_name, new_name)

    monkeypatch.setattr(staging, "_rename_table", flaky_rename)

    with pytest.raises(SwapError, match="rolled back"):
        staging.swap_staging_tables(engine, tables, 2, _metadata_row())

    assert _codes(engine, "vtm") == ["old"]
    assert _codes(engine, "vmp_group") == ["g-old"]
    assert _codes(engine, "vmp") == ["v-old"]
    names = set(inspect(engine).get_table_names())
    assert {"vtm__s2", "vmp_group__s2", "vmp__s2"} <= names
    assert not any("__old" in name for name in names)
    with engine.connect() as conn:
        assert conn.execute(select(SyncMetadata.__table__)).all() == []


def test_drop_stale_staging_tables_keeps_current_sync(engine):
    staging.create_staging_tables(engine, 1, ["vtm"])
    staging.create_staging_tables(engine, 2, ["vtm"])

    dropped = staging.drop_stale_staging_tables(engine, keep_sync_id=2)

    assert dropped == ["vtm__s1"]
    assert "vtm__s2" in inspect(engine).get_table_names()


def test_staged_dmpp_keys_reads_staging_table(engine):
    tables = staging.create_staging_tables(engine, 5, ["dmpp"])
    BatchImporter(engine, tables, 5, TODAY).import_records(
        [Record("dmpp", {"code": "0039347", "delivery_environment": "P", "ampp_cti_extended": "1-01"})]
    )

    assert staging.staged_dmpp_keys(engine, tables["dmpp"]) == {"0039347:P"}
