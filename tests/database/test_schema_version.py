import sqlite3

import aiosqlite
import pytest

from mmc_backend.adapters.db.schema import (
    aget_schema_version,
    aget_store_meta,
    ainit_store_meta,
    detect_version_conn,
)
from mmc_backend.adapters.db.sqlite import Sqlite
from tests.fakes import make_legacy_store, make_v1_store


@pytest.mark.asyncio
async def test_empty_store_has_no_version(tmp_path):
    db = Sqlite(tmp_path / "empty.db")
    res = await aget_schema_version(db)
    assert res.ok and res.data is None
    await db.aclose()


@pytest.mark.asyncio
async def test_legacy_store_is_version_zero(tmp_path):
    path = tmp_path / "legacy.db"
    make_legacy_store(path, [])
    db = Sqlite(path)
    res = await aget_schema_version(db)
    assert res.ok and res.data == 0
    await db.aclose()


@pytest.mark.asyncio
async def test_versioned_store_reads_store_meta(tmp_path):
    path = tmp_path / "v1.db"
    make_v1_store(path, [])
    db = Sqlite(path)
    assert (await aget_schema_version(db)).data == 1
    await db.aclose()

    async with aiosqlite.connect(str(path)) as conn:
        assert await detect_version_conn(conn) == 1


@pytest.mark.asyncio
async def test_init_store_meta_keeps_created_at(tmp_path):
    path = tmp_path / "v1.db"
    make_v1_store(path, [])
    db = Sqlite(path)
    assert (await ainit_store_meta(db, size_limit=1024, compression=True)).ok
    first = (await aget_store_meta(db)).data
    assert first["size_limit"] == "1024"
    assert first["compression"] == "1"
    assert (await ainit_store_meta(db, size_limit=None, compression=False)).ok
    second = (await aget_store_meta(db)).data
    assert second["created_at"] == first["created_at"]
    assert second["compression"] == "0"
    await db.aclose()


@pytest.mark.asyncio
async def test_invalid_version_value_is_an_error(tmp_path):
    path = tmp_path / "bad.db"
    make_v1_store(path, [])
    conn = sqlite3.connect(str(path))
    conn.execute("UPDATE store_meta SET value = 'abc' WHERE key = 'schema_version'")
    conn.commit()
    conn.close()

    db = Sqlite(path)
    res = await aget_schema_version(db)
    assert not res.ok
    assert res.code == "DB_ERROR"
    await db.aclose()
