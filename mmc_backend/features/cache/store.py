"""
Path-keyed metadata cache store.

Writes for one path serialize on a per-path lock and commit the `metadata` and `file_info`
rows in a single transaction, so a failed write leaves the previous entry intact.
Writes to different paths never wait on each other's path lock, but every commit goes
through the SQLite adapter's single write lock, so their transactions still run one at
a time.
Whole-store operations run under the exclusive side of the store barrier.
"""
from __future__ import annotations

import zlib
from typing import TYPE_CHECKING, Any, Dict, Optional

from ...adapters.db.barrier import StoreBarrier
from ...adapters.db.schema import META_SIZE_LIMIT, aget_schema_version, aget_store_meta
from ...adapters.db.sqlite import Sqlite
from ...config import CacheConfig
from ...shared import ErrorCode, Result, get_logger, log_success, now
from ...utils import format_size
from .invalidation import SchemaGate
from .models import CacheEntry, Fingerprint, PrunePolicy
from .prune import VICTIM_COLUMNS, order_clause, plan_size_eviction

if TYPE_CHECKING:
    from .backup import BackupManager

logger = get_logger(__name__)

_ENTRY_SELECT = """
SELECT m.path, m.hash, m.metadata_blob, m.schema_version, m.created_at, m.updated_at,
       m.accessed_at, m.access_count, m.blob_size, m.compressed,
       f.size AS file_size, f.modified_time AS modified_time, f.file_type AS file_type
FROM metadata m
LEFT JOIN file_info f ON f.path = m.path
WHERE m.path = ?
"""

_UPSERT_METADATA = """
INSERT INTO metadata
    (path, hash, metadata_blob, schema_version, created_at, updated_at,
     accessed_at, access_count, blob_size, compressed)
VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    hash = excluded.hash,
    metadata_blob = excluded.metadata_blob,
    schema_version = excluded.schema_version,
    updated_at = excluded.updated_at,
    accessed_at = excluded.accessed_at,
    blob_size = excluded.blob_size,
    compressed = excluded.compressed
"""

_UPSERT_FILE_INFO = """
INSERT INTO file_info (path, size, hash, modified_time, file_type)
VALUES (?, ?, ?, ?, ?)
ON CONFLICT(path) DO UPDATE SET
    size = excluded.size,
    hash = excluded.hash,
    modified_time = excluded.modified_time,
    file_type = excluded.file_type
"""


class CacheStore:
    def __init__(
        self,
        db: Sqlite,
        barrier: StoreBarrier,
        gate: SchemaGate,
        config: CacheConfig,
        backups: Optional["BackupManager"] = None,
    ):
        self._db = db
        self._barrier = barrier
        self._gate = gate
        self._config = config
        self._backups = backups

    @property
    def db(self) -> Sqlite:
        return self._db

    @property
    def gate(self) -> SchemaGate:
        return self._gate

    def _encode(self, metadata: bytes) -> tuple[bytes, int]:
        if self._config.compression:
            return zlib.compress(metadata), 1
        return metadata, 0

    @staticmethod
    def _decode(blob: Any, compressed: Any) -> bytes:
        raw = bytes(blob or b"")
        if int(compressed or 0):
            return zlib.decompress(raw)
        return raw

    @staticmethod
    def _row_to_entry(row: Dict[str, Any], metadata: bytes) -> CacheEntry:
        return CacheEntry(
            path=str(row["path"]),
            content_hash=row.get("hash"),
            file_size=int(row.get("file_size") or 0),
            modified_time=int(row.get("modified_time") or 0),
            file_type=row.get("file_type"),
            metadata=metadata,
            schema_version=int(row.get("schema_version") or 0),
            created_at=float(row.get("created_at") or 0.0),
            updated_at=float(row.get("updated_at") or 0.0),
            accessed_at=float(row["accessed_at"]) if row.get("accessed_at") is not None else None,
            access_count=int(row.get("access_count") or 0),
            blob_size=int(row.get("blob_size") or 0),
        )

    async def aput(
        self,
        fingerprint: Fingerprint,
        metadata: bytes,
        file_type: Optional[str] = None,
    ) -> Result[bool]:
        """Insert or replace the entry for `fingerprint.path` (last writer wins)."""
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        if not isinstance(metadata, (bytes, bytearray)):
            return Result.Err(ErrorCode.INVALID_INPUT, "metadata must be bytes")

        blob, compressed = self._encode(bytes(metadata))
        ts = now()
        path = fingerprint.path
        error: Optional[Result[bool]] = None
        async with self._barrier.shared():
            async with self._db.lock_for_path(path):
                async with self._db.atransaction() as tx:
                    if not tx.ok:
                        return Result.Err(tx.code, tx.error or "Failed to begin transaction", path=path)
                    res = await self._db.aexecute(
                        _UPSERT_METADATA,
                        (path, fingerprint.hash, blob, self._gate.required_version, ts, ts, ts, len(blob), compressed),
                    )
                    if res.ok:
                        res = await self._db.aexecute(
                            _UPSERT_FILE_INFO,
                            (path, int(fingerprint.size), fingerprint.hash, int(fingerprint.mtime_ns), file_type),
                        )
                    if not res.ok:
                        tx.ok = False
                        error = Result.Err(res.code, res.error or "Cache write failed", path=path)
                if error is not None:
                    return error
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Cache write commit failed", path=path)
        return Result.Ok(True, blob_size=len(blob))

    async def aget(self, path: str, track_access: bool = True) -> Result[Optional[CacheEntry]]:
        """Return Ok(entry), or Ok(None) on a miss."""
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        async with self._barrier.shared():
            res = await self._db.aquery(_ENTRY_SELECT, (str(path),))
            if not res.ok:
                return Result.Err(res.code, res.error or "Cache read failed", path=path)
            if not res.data:
                return Result.Ok(None)
            row = res.data[0]
            try:
                metadata = self._decode(row.get("metadata_blob"), row.get("compressed"))
            except zlib.error as exc:
                logger.warning("Unreadable cache blob for %s (%s); dropping entry", path, exc)
                dropped = await self._adelete_locked(str(path))
                if not dropped.ok:
                    return Result.Err(dropped.code, dropped.error or "Failed to drop unreadable entry", path=path)
                return Result.Ok(None, reason="corrupt")
            if track_access:
                await self._amark_access(str(path))
            return Result.Ok(self._row_to_entry(row, metadata))

    async def arecord_access(self, path: str) -> Result[Any]:
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        async with self._barrier.shared():
            return await self._amark_access(str(path))

    async def _amark_access(self, path: str) -> Result[Any]:
        res = await self._db.aexecute(
            "UPDATE metadata SET accessed_at = ?, access_count = access_count + 1 WHERE path = ?",
            (now(), path),
        )
        if not res.ok:
            logger.debug("Access tracking update failed for %s: %s", path, res.error)
        return res

    async def _adelete_locked(self, path: str) -> Result[int]:
        async with self._db.lock_for_path(path):
            async with self._db.atransaction() as tx:
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Failed to begin transaction", path=path)
                res = await self._db.aexecute("DELETE FROM metadata WHERE path = ?", (path,))
                if res.ok:
                    info = await self._db.aexecute("DELETE FROM file_info WHERE path = ?", (path,))
                    if not info.ok:
                        res = info
                if not res.ok:
                    tx.ok = False
                    return Result.Err(res.code, res.error or "Cache delete failed", path=path)
            if not tx.ok:
                return Result.Err(tx.code, tx.error or "Cache delete commit failed", path=path)
        return Result.Ok(int(res.data or 0))

    async def ainvalidate(self, path: str) -> Result[bool]:
        """Remove the entry for `path`; Ok(False) when nothing was cached."""
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        async with self._barrier.shared():
            res = await self._adelete_locked(str(path))
        if not res.ok:
            return Result.Err(res.code, res.error or "Cache delete failed", path=path)
        return Result.Ok(bool(res.data))

    async def atouch(self, fingerprint: Fingerprint) -> Result[bool]:
        """Refresh the stored size/mtime of an entry whose content did not change."""
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        async with self._barrier.shared():
            async with self._db.lock_for_path(fingerprint.path):
                res = await self._db.aexecute(
                    "UPDATE file_info SET size = ?, modified_time = ? WHERE path = ?",
                    (int(fingerprint.size), int(fingerprint.mtime_ns), fingerprint.path),
                )
        if not res.ok:
            return Result.Err(res.code, res.error or "Fingerprint refresh failed", path=fingerprint.path)
        return Result.Ok(bool(res.data))

    async def astore_version(self) -> Result[Optional[int]]:
        return await aget_schema_version(self._db)

    async def asize(self) -> Result[Dict[str, int]]:
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        res = await self._db.aquery(
            "SELECT COUNT(*) AS entries, COALESCE(SUM(blob_size), 0) AS bytes FROM metadata"
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to measure cache")
        row = (res.data or [{}])[0]
        return Result.Ok({"entries": int(row.get("entries") or 0), "bytes": int(row.get("bytes") or 0)})

    async def astats(self) -> Result[Dict[str, Any]]:
        size_res = await self.asize()
        if not size_res.ok:
            return size_res
        res = await self._db.aquery("SELECT MIN(created_at) AS oldest, MAX(created_at) AS newest FROM metadata")
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to read cache stats")
        row = (res.data or [{}])[0]
        size = size_res.data or {}
        try:
            file_bytes = int(self._db.db_path.stat().st_size)
        except OSError:
            file_bytes = 0
        return Result.Ok(
            {
                "total_entries": size.get("entries", 0),
                "cache_bytes": size.get("bytes", 0),
                "cache_size_human": format_size(size.get("bytes", 0)),
                "oldest_entry": row.get("oldest"),
                "newest_entry": row.get("newest"),
                "db_path": str(self._db.db_path),
                "db_file_bytes": file_bytes,
                "db_file_size_human": format_size(file_bytes),
                "schema_version": self._gate.required_version,
                "compression": bool(self._config.compression),
            }
        )

    async def _aresolve_size_limit(self, policy: PrunePolicy) -> Optional[int]:
        if policy.max_size_bytes is not None:
            return int(policy.max_size_bytes)
        meta_res = await aget_store_meta(self._db)
        raw = (meta_res.data or {}).get(META_SIZE_LIMIT) if meta_res.ok else None
        if raw:
            try:
                return int(raw)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid store_meta size_limit: %r", raw)
        return self._config.size_limit_bytes

    async def aprune(self, policy: PrunePolicy) -> Result[Dict[str, Any]]:
        """Evict entries per `policy` until its constraint holds, and no further."""
        blocked = self._gate.check()
        if blocked is not None:
            return blocked

        async with self._barrier.exclusive("prune"):
            size_res = await self.asize()
            if not size_res.ok:
                return size_res
            total = int((size_res.data or {}).get("bytes", 0))
            limit: Optional[int] = None

            if policy.kind == "max_age":
                cutoff = now() - float(policy.max_age_s or 0.0)
                rows_res = await self._db.aquery(
                    "SELECT path, blob_size FROM metadata WHERE updated_at < ? ORDER BY updated_at ASC, path ASC",
                    (cutoff,),
                )
                if not rows_res.ok:
                    return Result.Err(rows_res.code, rows_res.error or "Failed to plan prune")
                victims = [str(r["path"]) for r in rows_res.data or []]
                freed = sum(int(r.get("blob_size") or 0) for r in rows_res.data or [])
            else:
                limit = await self._aresolve_size_limit(policy)
                if limit is None:
                    return Result.Err(ErrorCode.INVALID_INPUT, "No size limit given and none configured for the store")
                if total <= limit:
                    victims, freed = [], 0
                else:
                    rows_res = await self._db.aquery(
                        f"SELECT {VICTIM_COLUMNS} FROM metadata ORDER BY {order_clause(policy.kind)}"
                    )
                    if not rows_res.ok:
                        return Result.Err(rows_res.code, rows_res.error or "Failed to plan prune")
                    victims, freed = plan_size_eviction(rows_res.data or [], total, limit)

            if victims:
                params = [(p,) for p in victims]
                async with self._db.atransaction() as tx:
                    if not tx.ok:
                        return Result.Err(tx.code, tx.error or "Failed to begin prune")
                    res = await self._db.aexecutemany("DELETE FROM metadata WHERE path = ?", params)
                    if res.ok:
                        res = await self._db.aexecutemany("DELETE FROM file_info WHERE path = ?", params)
                    if not res.ok:
                        tx.ok = False
                        return Result.Err(res.code, res.error or "Prune delete failed")
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Prune commit failed")

            after = await self.asize()
            remaining = (after.data or {}) if after.ok else {}
        summary = {
            "policy": policy.kind,
            "limit_bytes": limit,
            "max_age_s": policy.max_age_s,
            "removed": len(victims),
            "freed_bytes": int(freed),
            "remaining_entries": int(remaining.get("entries", 0)),
            "remaining_bytes": int(remaining.get("bytes", max(0, total - freed))),
        }
        if victims:
            log_success(logger, f"Pruned {len(victims)} entries ({format_size(freed)}) with policy {policy.kind}")
        return Result.Ok(summary)

    async def aclear(self) -> Result[Dict[str, int]]:
        blocked = self._gate.check()
        if blocked is not None:
            return blocked
        async with self._barrier.exclusive("clear"):
            async with self._db.atransaction() as tx:
                if not tx.ok:
                    return Result.Err(tx.code, tx.error or "Failed to begin clear")
                res = await self._db.aexecute("DELETE FROM metadata")
                removed = int(res.data or 0) if res.ok else 0
                if res.ok:
                    res = await self._db.aexecute("DELETE FROM file_info")
                if not res.ok:
                    tx.ok = False
                    return Result.Err(res.code, res.error or "Cache clear failed")
            if not tx.ok:
                return Result.Err(tx.code, tx.error or "Cache clear commit failed")
        logger.info("Cache cleared: %s", self._db.db_path)
        return Result.Ok({"removed": removed})

    async def ahealth(self) -> Result[Dict[str, Any]]:
        """Integrity check plus gate and pool state. Allowed while the gate is blocked."""
        integrity = await self._db.aintegrity_check()
        if not integrity.ok:
            return Result.Err(integrity.code, integrity.error or "Integrity check failed")
        messages = integrity.data or []
        healthy = messages == ["ok"] and not self._gate.is_blocked
        return Result.Ok(
            {
                "healthy": healthy,
                "integrity": messages,
                "schema": self._gate.to_dict(),
                "runtime": self._db.get_runtime_status(),
            }
        )

    async def abackup(self, dest: Optional[str] = None) -> Result[Dict[str, Any]]:
        if self._backups is None:
            return Result.Err(ErrorCode.SERVICE_UNAVAILABLE, "Backup manager not configured")
        return await self._backups.acreate(dest)

    async def arestore(self, src: str) -> Result[Dict[str, Any]]:
        if self._backups is None:
            return Result.Err(ErrorCode.SERVICE_UNAVAILABLE, "Backup manager not configured")
        return await self._backups.arestore(src)
