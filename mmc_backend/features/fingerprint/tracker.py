"""
Change classification against the previous run's fingerprint snapshot.

The snapshot for a scope is read-only while a run is in progress: current fingerprints
are staged per batch and the snapshot is replaced in one transaction when the run
finishes. A cancelled run drops its staging rows and leaves the prior snapshot in place.
"""
from __future__ import annotations

import asyncio
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from ...adapters.db.sqlite import Sqlite
from ...config import CacheConfig
from ...shared import ChangeType, ErrorCode, Result, get_logger, now
from ..cache.models import ChangeRecord, Fingerprint
from .hashing import sha256_file

logger = get_logger(__name__)

Hasher = Callable[[str], str]


def classify(
    current: Fingerprint,
    prior: Optional[Fingerprint],
    *,
    hash_check: bool,
    hasher: Hasher = sha256_file,
) -> tuple[ChangeType, Fingerprint]:
    """
    Classify one present path. Returns the change type and the fingerprint to stage.

    May call `hasher` (blocking I/O); raises whatever the hasher raises.
    """
    if prior is None:
        return ChangeType.NEW, current.with_hash(hasher(current.path)) if hash_check else current
    if current.cheap_equal(prior):
        return ChangeType.UNCHANGED, current.with_hash(prior.hash)
    if not hash_check:
        return ChangeType.MODIFIED, current
    digest = hasher(current.path)
    staged = current.with_hash(digest)
    if prior.hash and prior.hash == digest:
        return ChangeType.UNCHANGED, staged
    return ChangeType.CONTENT_CHANGED, staged


@dataclass
class TrackerRun:
    run_id: str
    scope: str
    started_at: float
    staged: int = 0
    closed: bool = False


def _row_to_fingerprint(row: dict) -> Fingerprint:
    return Fingerprint(
        path=str(row["path"]),
        size=int(row["size"]),
        mtime_ns=int(row["mtime_ns"]),
        hash=row.get("hash"),
    )


class FingerprintTracker:
    def __init__(self, db: Sqlite, config: CacheConfig, hasher: Hasher = sha256_file):
        self._db = db
        self._hash_check = bool(config.hash_check)
        self._hasher = hasher

    @property
    def hash_check(self) -> bool:
        return self._hash_check

    async def abegin_run(self, scope: str) -> Result[TrackerRun]:
        scope = str(scope or "")
        if not scope:
            return Result.Err(ErrorCode.INVALID_INPUT, "A scope is required to track changes")
        # Staging rows left behind by an interrupted run for this scope are meaningless now.
        res = await self._db.aexecute("DELETE FROM file_snapshot_staging WHERE scope = ?", (scope,))
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to reset staging area")
        run = TrackerRun(run_id=uuid.uuid4().hex, scope=scope, started_at=now())
        logger.debug("Tracker run %s started for scope %s", run.run_id, scope)
        return Result.Ok(run)

    async def aprior_for(self, run: TrackerRun, paths: List[str]) -> Result[Dict[str, Fingerprint]]:
        """Prior snapshot rows for the given paths (missing paths are simply absent)."""
        if not paths:
            return Result.Ok({})
        res = await self._db.aquery_in(
            "SELECT path, size, mtime_ns, hash FROM file_snapshot WHERE {IN_CLAUSE} AND scope = ?",
            "path",
            list(paths),
            (run.scope,),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to read prior snapshot")
        return Result.Ok({str(r["path"]): _row_to_fingerprint(r) for r in res.data or []})

    async def aclassify(
        self,
        run: TrackerRun,
        current: Fingerprint,
        prior: Optional[Fingerprint],
        executor: Optional[Executor] = None,
    ) -> ChangeRecord:
        """Classify off the event loop; raises OSError when hashing cannot read the file."""
        loop = asyncio.get_running_loop()
        change, staged = await loop.run_in_executor(
            executor,
            lambda: classify(current, prior, hash_check=self._hash_check, hasher=self._hasher),
        )
        return ChangeRecord(
            path=current.path,
            change_type=change,
            prior=prior,
            current=staged,
            run_timestamp=run.started_at,
        )

    async def astage(
        self, run: TrackerRun, records: List[ChangeRecord], kept: Iterable[Fingerprint] = ()
    ) -> Result[int]:
        """
        Stage this run's fingerprints. `kept` carries prior fingerprints of files that are
        still present but could not be re-read; they stay in the snapshot unchanged.
        """
        fingerprints = [r.current for r in records if r.current is not None and r.change_type != ChangeType.DELETED]
        fingerprints.extend(kept)
        rows = [(run.run_id, run.scope, f.path, int(f.size), int(f.mtime_ns), f.hash) for f in fingerprints]
        if not rows:
            return Result.Ok(0)
        res = await self._db.aexecutemany(
            "INSERT OR REPLACE INTO file_snapshot_staging (run_id, scope, path, size, mtime_ns, hash) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            rows,
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to stage fingerprints")
        run.staged += len(rows)
        return Result.Ok(len(rows))

    async def afinish_run(self, run: TrackerRun) -> Result[List[ChangeRecord]]:
        """
        Derive Deleted records (prior minus staged) and swap the snapshot atomically.
        """
        if run.closed:
            return Result.Err(ErrorCode.INVALID_INPUT, "Tracker run already closed")
        deleted: List[ChangeRecord] = []
        async with self._db.atransaction() as tx:
            if not tx.ok:
                return Result.Err(tx.code, tx.error or "Failed to begin snapshot swap")
            gone = await self._db.aquery(
                "SELECT s.path, s.size, s.mtime_ns, s.hash FROM file_snapshot s "
                "WHERE s.scope = ? AND NOT EXISTS ("
                "  SELECT 1 FROM file_snapshot_staging g WHERE g.run_id = ? AND g.path = s.path"
                ") ORDER BY s.path",
                (run.scope, run.run_id),
            )
            steps = [gone]
            if gone.ok:
                steps.append(await self._db.aexecute("DELETE FROM file_snapshot WHERE scope = ?", (run.scope,)))
            if all(s.ok for s in steps):
                steps.append(
                    await self._db.aexecute(
                        "INSERT INTO file_snapshot (scope, path, size, mtime_ns, hash) "
                        "SELECT scope, path, size, mtime_ns, hash FROM file_snapshot_staging WHERE run_id = ?",
                        (run.run_id,),
                    )
                )
            if all(s.ok for s in steps):
                steps.append(
                    await self._db.aexecute("DELETE FROM file_snapshot_staging WHERE run_id = ?", (run.run_id,))
                )
            failed = next((s for s in steps if not s.ok), None)
            if failed is not None:
                tx.ok = False
                return Result.Err(failed.code, failed.error or "Snapshot swap failed")
            for row in gone.data or []:
                deleted.append(
                    ChangeRecord(
                        path=str(row["path"]),
                        change_type=ChangeType.DELETED,
                        prior=_row_to_fingerprint(row),
                        current=None,
                        run_timestamp=run.started_at,
                    )
                )
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Snapshot swap commit failed")
        run.closed = True
        logger.debug("Tracker run %s finished: %d staged, %d deleted", run.run_id, run.staged, len(deleted))
        return Result.Ok(deleted)

    async def acancel_run(self, run: TrackerRun) -> Result[int]:
        """Drop staged fingerprints; the prior snapshot stays authoritative."""
        if run.closed:
            return Result.Ok(0)
        res = await self._db.aexecute("DELETE FROM file_snapshot_staging WHERE run_id = ?", (run.run_id,))
        run.closed = True
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to discard staged fingerprints")
        return Result.Ok(int(res.data or 0))

    async def asnapshot(self, scope: str) -> Result[List[Fingerprint]]:
        res = await self._db.aquery(
            "SELECT path, size, mtime_ns, hash FROM file_snapshot WHERE scope = ? ORDER BY path",
            (str(scope),),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to read snapshot")
        return Result.Ok([_row_to_fingerprint(r) for r in res.data or []])
