"""
Whole-store snapshot and replacement.
"""
from __future__ import annotations

import asyncio
import datetime
import gc
import os
import re
import sqlite3
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ...adapters.db.barrier import StoreBarrier
from ...adapters.db.diagnostics import probe_store_file
from ...adapters.db.sqlite import Sqlite
from ...config import CacheConfig
from ...shared import ErrorCode, Result, get_logger, log_success, sanitize_error_message
from ...utils import format_size

logger = get_logger(__name__)

_SAFE_LABEL_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_KNOWN_TABLES = {"metadata", "store_meta", "metadata_cache"}

RestoreListener = Callable[[], Awaitable[Any]]


def _backup_name(label: str, now: datetime.datetime | None = None) -> str:
    ts = now or datetime.datetime.now(datetime.timezone.utc)
    return f"{label}_{ts.strftime('%Y%m%d_%H%M%S_%f')}.sqlite"


def copy_store_file(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    src_conn = sqlite3.connect(str(src))
    try:
        dst_conn = sqlite3.connect(str(dst))
        try:
            src_conn.backup(dst_conn)
        finally:
            dst_conn.close()
    finally:
        src_conn.close()


async def remove_with_retry(path: Path, attempts: int = 6) -> None:
    if not path.exists():
        return
    last_exc: Optional[Exception] = None
    for attempt in range(max(1, int(attempts))):
        try:
            path.unlink()
            return
        except OSError as exc:
            last_exc = exc
            gc.collect()
            await asyncio.sleep(0.2 * (attempt + 1))
    if path.exists():
        raise last_exc or RuntimeError(f"Failed to delete file: {path}")


async def swap_store_file(staged: Path, live: Path) -> None:
    """Atomically move a fully written store file over the live one (sidecars removed first)."""
    for suffix in ("-wal", "-shm", "-journal"):
        await remove_with_retry(Path(str(live) + suffix))
    await asyncio.to_thread(os.replace, staged, live)


class BackupManager:
    def __init__(self, db: Sqlite, barrier: StoreBarrier, config: CacheConfig):
        self._db = db
        self._barrier = barrier
        self._keep = int(config.backup_keep)
        self.backup_dir = Path(config.backup_dir or (db.db_path.parent / "mmc_backups"))
        self._restore_listeners: List[RestoreListener] = []

    @property
    def barrier(self) -> StoreBarrier:
        return self._barrier

    def add_restore_listener(self, listener: RestoreListener) -> None:
        self._restore_listeners.append(listener)

    def list_backups(self, label: Optional[str] = None) -> List[Dict[str, Any]]:
        """Backups in the backup directory, newest first."""
        if not self.backup_dir.exists():
            return []
        pattern = f"{label}_*.sqlite" if label else "*.sqlite"
        rows: List[Dict[str, Any]] = []
        for p in self.backup_dir.glob(pattern):
            try:
                st = p.stat()
            except OSError:
                continue
            rows.append(
                {
                    "name": p.name,
                    "path": str(p),
                    "size_bytes": int(st.st_size),
                    "mtime": float(st.st_mtime),
                }
            )
        rows.sort(key=lambda x: (float(x["mtime"]), str(x["name"])), reverse=True)
        return rows

    async def alist(self, label: Optional[str] = None) -> Result[List[Dict[str, Any]]]:
        return Result.Ok(await asyncio.to_thread(self.list_backups, label))

    def latest(self, label: Optional[str] = None) -> Optional[Path]:
        rows = self.list_backups(label)
        return Path(str(rows[0]["path"])) if rows else None

    def resolve(self, name: str) -> Optional[Path]:
        """Map a backup file name (never a path) to a file inside the backup directory."""
        clean = Path(str(name or "")).name
        if not clean or clean != str(name):
            return None
        candidate = self.backup_dir / clean
        return candidate if candidate.is_file() else None

    async def acreate(self, dest: Optional[str | Path] = None, label: str = "cache") -> Result[Dict[str, Any]]:
        """Snapshot the live store into `dest` (or a timestamped file in the backup directory)."""
        if not _SAFE_LABEL_RE.match(str(label or "")):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid backup label: {label!r}")
        if dest is None:
            target = self.backup_dir / _backup_name(label)
        else:
            target = Path(dest).expanduser()
            if target.is_dir():
                target = target / _backup_name(label)
        if target.resolve() == self._db.db_path.resolve():
            return Result.Err(ErrorCode.INVALID_INPUT, "Backup target must differ from the live store")

        async with self._barrier.exclusive("backup"):
            checkpoint = await self._db.acheckpoint()
            if not checkpoint.ok:
                logger.debug("WAL checkpoint before backup failed: %s", checkpoint.error)
            try:
                await asyncio.to_thread(copy_store_file, self._db.db_path, target)
            except (OSError, sqlite3.Error) as exc:
                logger.error("Backup to %s failed: %s", target, exc)
                return Result.Err(ErrorCode.BACKUP_FAILED, sanitize_error_message(exc, "Failed to save cache backup"))

        size = int(target.stat().st_size) if target.exists() else 0
        log_success(logger, f"Cache backed up to {target} ({format_size(size)})")
        pruned: List[str] = []
        if dest is None and self._keep > 0:
            prune_res = await self.aprune_backups(self._keep, label=label)
            pruned = list((prune_res.data or {}).get("removed", [])) if prune_res.ok else []
        return Result.Ok({"name": target.name, "path": str(target), "size_bytes": size}, pruned=pruned)

    async def arestore(self, src: str | Path) -> Result[Dict[str, Any]]:
        """
        Replace the live store with `src`.

        The source is validated and staged next to the live file before anything is
        touched; a bad source leaves the live store as it was.
        """
        source = Path(src).expanduser()
        ok, message, tables = await asyncio.to_thread(probe_store_file, source)
        if not source.exists():
            return Result.Err(ErrorCode.NOT_FOUND, f"Backup file not found: {source.name}")
        if not ok:
            return Result.Err(ErrorCode.RESTORE_FAILED, f"Backup file is not a usable store: {message}")
        if not (tables & _KNOWN_TABLES):
            return Result.Err(ErrorCode.RESTORE_FAILED, "Backup file does not contain cache tables")

        live = self._db.db_path
        staged = Path(str(live) + ".restoring")
        try:
            await asyncio.to_thread(copy_store_file, source, staged)
        except (OSError, sqlite3.Error) as exc:
            await remove_with_retry(staged)
            return Result.Err(ErrorCode.RESTORE_FAILED, sanitize_error_message(exc, "Failed to stage backup"))

        async with self._barrier.exclusive("restore"):
            await self._db.adrain()
            try:
                await swap_store_file(staged, live)
            except OSError as exc:
                logger.error("Restore swap failed: %s", exc)
                return Result.Err(ErrorCode.RESTORE_FAILED, sanitize_error_message(exc, "Failed to replace store"))
            finally:
                await self._db.areopen()
                if staged.exists():
                    await remove_with_retry(staged)

        for listener in list(self._restore_listeners):
            try:
                await listener()
            except Exception as exc:
                logger.warning("Restore listener failed: %s", exc)
        log_success(logger, f"Cache restored from {source.name}")
        return Result.Ok({"restored_from": str(source), "name": source.name})

    async def aprune_backups(self, keep: int, label: Optional[str] = None) -> Result[Dict[str, Any]]:
        """Delete all but the newest `keep` backups (optionally only those with `label`)."""
        rows = self.list_backups(label)
        removed: List[str] = []
        for row in rows[max(0, int(keep)):]:
            try:
                await remove_with_retry(Path(str(row["path"])))
                removed.append(str(row["name"]))
            except OSError as exc:
                logger.warning("Failed to remove old backup %s: %s", row["name"], exc)
        return Result.Ok({"removed": removed, "kept": min(len(rows), max(0, int(keep)))})
