"""
Per-run change log consumed by external reporting: one row per path per run.
"""
from typing import Any, Dict, List, Optional

from ...adapters.db.sqlite import Sqlite
from ...shared import ChangeType, ErrorCode, Result, get_logger
from ..cache.models import ChangeRecord
from .tracker import TrackerRun

logger = get_logger(__name__)


class ChangeLog:
    def __init__(self, db: Sqlite):
        self._db = db

    async def arecord(self, run: TrackerRun, records: List[ChangeRecord]) -> Result[int]:
        rows = [(run.run_id, run.scope, r.path, r.change_type.value, r.run_timestamp) for r in records]
        if not rows:
            return Result.Ok(0)
        res = await self._db.aexecutemany(
            "INSERT INTO change_log (run_id, scope, path, change_type, timestamp) VALUES (?, ?, ?, ?, ?)",
            rows,
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to write change log")
        return Result.Ok(len(rows))

    async def alist(self, run_id: str, change_type: Optional[ChangeType | str] = None) -> Result[List[Dict[str, Any]]]:
        params: tuple = (str(run_id),)
        sql = "SELECT path, change_type, timestamp FROM change_log WHERE run_id = ?"
        if change_type is not None:
            value = change_type.value if isinstance(change_type, ChangeType) else str(change_type)
            try:
                ChangeType(value)
            except ValueError:
                return Result.Err(ErrorCode.INVALID_INPUT, f"Unknown change type: {value}")
            sql += " AND change_type = ?"
            params = params + (value,)
        res = await self._db.aquery(sql + " ORDER BY path", params)
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to read change log")
        return Result.Ok(res.data or [])

    async def asummary(self, run_id: str) -> Result[Dict[str, int]]:
        res = await self._db.aquery(
            "SELECT change_type, COUNT(*) AS n FROM change_log WHERE run_id = ? GROUP BY change_type",
            (str(run_id),),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to summarize change log")
        summary = {ct.value: 0 for ct in ChangeType}
        for row in res.data or []:
            summary[str(row["change_type"])] = int(row["n"])
        return Result.Ok(summary)

    async def aruns(self, limit: int = 20) -> Result[List[Dict[str, Any]]]:
        res = await self._db.aquery(
            "SELECT run_id, scope, MIN(timestamp) AS started_at, COUNT(*) AS paths "
            "FROM change_log GROUP BY run_id, scope ORDER BY started_at DESC LIMIT ?",
            (max(1, int(limit)),),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to list runs")
        return Result.Ok(res.data or [])

    async def apurge(self, keep_runs: int) -> Result[int]:
        """Keep the newest `keep_runs` runs, drop older rows."""
        res = await self._db.aexecute(
            "DELETE FROM change_log WHERE run_id NOT IN ("
            "  SELECT run_id FROM change_log GROUP BY run_id ORDER BY MIN(timestamp) DESC LIMIT ?"
            ")",
            (max(0, int(keep_runs)),),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to purge change log")
        removed = int(res.data or 0)
        if removed:
            logger.info("Change log purged: %d rows", removed)
        return Result.Ok(removed)
