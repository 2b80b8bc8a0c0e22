"""
Database schema for the metadata cache: DDL, version history and store_meta helpers.

Schema changes are applied by `features.migrations` as discrete steps; this module only
declares the shapes and the helpers that read/write store-level state.
"""
from typing import Any, Dict, Optional

import aiosqlite

from ...shared import ErrorCode, Result, get_logger
from ...shared import now as _now
from .sqlite import Sqlite

logger = get_logger(__name__)

# Schema version history:
#   0: unversioned shell-era store (`metadata_cache` with base64 payloads)
#   1: `metadata`, `file_info`, `store_meta` tables
#   2: access tracking (`accessed_at`, `access_count`)
#   3: fingerprint snapshots (`file_snapshot`, `file_snapshot_staging`) and `change_log`
#   4: stored blob accounting (`blob_size`, `compressed`)
CURRENT_SCHEMA_VERSION = 4

LEGACY_TABLE = "metadata_cache"

METADATA_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS metadata (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    hash TEXT,
    metadata_blob BLOB,
    schema_version INTEGER NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
)
"""

FILE_INFO_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS file_info (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    size INTEGER NOT NULL,
    hash TEXT,
    modified_time INTEGER NOT NULL,
    file_type TEXT
)
"""

STORE_META_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS store_meta (
    key TEXT PRIMARY KEY,
    value TEXT
)
"""

FILE_SNAPSHOT_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS file_snapshot (
    scope TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    hash TEXT,
    PRIMARY KEY (scope, path)
)
"""

FILE_SNAPSHOT_STAGING_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS file_snapshot_staging (
    run_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    path TEXT NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL,
    hash TEXT,
    PRIMARY KEY (run_id, path)
)
"""

CHANGE_LOG_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS change_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    scope TEXT NOT NULL,
    path TEXT NOT NULL,
    change_type TEXT NOT NULL,
    timestamp REAL NOT NULL
)
"""

META_SCHEMA_VERSION = "schema_version"
META_CREATED_AT = "created_at"
META_SIZE_LIMIT = "size_limit"
META_COMPRESSION = "compression"


async def read_store_meta_conn(conn: aiosqlite.Connection) -> Dict[str, str]:
    """Read store_meta through a raw connection (used on migration working copies)."""
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='store_meta'"
    ) as cur:
        if not await cur.fetchone():
            return {}
    async with conn.execute("SELECT key, value FROM store_meta") as cur:
        rows = await cur.fetchall()
    return {str(r[0]): str(r[1]) for r in rows}


async def write_store_meta_conn(conn: aiosqlite.Connection, key: str, value: Any) -> None:
    await conn.execute(
        "INSERT INTO store_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (str(key), str(value)),
    )


async def detect_version_conn(conn: aiosqlite.Connection) -> Optional[int]:
    """
    Persisted schema version of an open store.

    None means the file holds no tables at all (fresh store); 0 means an unversioned store.
    """
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    ) as cur:
        tables = {str(r[0]) for r in await cur.fetchall()}
    if not tables:
        return None
    if "store_meta" not in tables:
        return 0
    meta = await read_store_meta_conn(conn)
    raw = meta.get(META_SCHEMA_VERSION)
    try:
        return int(raw) if raw is not None else 0
    except (TypeError, ValueError):
        logger.warning("Invalid schema_version value in store_meta: %r", raw)
        return 0


async def aget_store_meta(db: Sqlite) -> Result[Dict[str, str]]:
    if not await db.ahas_table("store_meta"):
        return Result.Ok({})
    res = await db.aquery("SELECT key, value FROM store_meta")
    if not res.ok:
        return res
    return Result.Ok({str(r["key"]): str(r["value"]) for r in res.data or []})


async def aset_store_meta(db: Sqlite, key: str, value: Any) -> Result[Any]:
    return await db.aexecute(
        "INSERT INTO store_meta (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (str(key), str(value)),
    )


async def aget_schema_version(db: Sqlite) -> Result[Optional[int]]:
    """Persisted schema version through the pooled adapter (None = empty store)."""
    tables_res = await db.atable_names()
    if not tables_res.ok:
        return Result.Err(tables_res.code, tables_res.error or "Failed to list tables")
    tables = set(tables_res.data or [])
    if not tables:
        return Result.Ok(None)
    if "store_meta" not in tables:
        return Result.Ok(0)
    meta_res = await aget_store_meta(db)
    if not meta_res.ok:
        return Result.Err(meta_res.code, meta_res.error or "Failed to read store_meta")
    raw = (meta_res.data or {}).get(META_SCHEMA_VERSION)
    try:
        return Result.Ok(int(raw) if raw is not None else 0)
    except (TypeError, ValueError):
        return Result.Err(ErrorCode.DB_ERROR, f"Invalid schema_version value: {raw!r}")


async def ainit_store_meta(db: Sqlite, *, size_limit: Optional[int], compression: bool) -> Result[bool]:
    """Record creation time once and keep size_limit/compression in sync with the config."""
    meta_res = await aget_store_meta(db)
    if not meta_res.ok:
        return Result.Err(meta_res.code, meta_res.error or "Failed to read store_meta")
    meta = meta_res.data or {}
    if META_CREATED_AT not in meta:
        res = await aset_store_meta(db, META_CREATED_AT, _now())
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to write store_meta")
    if size_limit is not None:
        res = await aset_store_meta(db, META_SIZE_LIMIT, int(size_limit))
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to write store_meta")
    res = await aset_store_meta(db, META_COMPRESSION, "1" if compression else "0")
    if not res.ok:
        return Result.Err(res.code, res.error or "Failed to write store_meta")
    return Result.Ok(True)
