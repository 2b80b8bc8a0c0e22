"""
Schema version detection, migration, rollback and dry runs.

Steps never run against the live file. The live store is copied to a working file next
to it, the steps run there (one transaction per step, version stamped inside it) and the
result replaces the live file under the exclusive store barrier. A failure discards the
working file and leaves the live store as it was.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiosqlite

from ...adapters.db.diagnostics import quoted_identifier
from ...adapters.db.schema import (
    CURRENT_SCHEMA_VERSION,
    META_SCHEMA_VERSION,
    aget_schema_version,
    ainit_store_meta,
    detect_version_conn,
    write_store_meta_conn,
)
from ...adapters.db.sqlite import Sqlite
from ...config import CacheConfig
from ...shared import ErrorCode, Result, get_logger, log_success, sanitize_error_message
from ..cache.backup import BackupManager, copy_store_file, remove_with_retry, swap_store_file
from ..cache.invalidation import SchemaGate
from .steps import MigrationStep, build_migrations, steps_between, table_columns

logger = get_logger(__name__)

_SIDECARS = ("-wal", "-shm", "-journal")


class MigrationState(str, Enum):
    UNVERSIONED = "unversioned"
    VERSIONED = "versioned"
    MIGRATING = "migrating"
    FAILED = "failed"
    VALID = "valid"


class _StepFailed(Exception):
    def __init__(self, step: MigrationStep, cause: BaseException):
        super().__init__(str(cause))
        self.step = step
        self.cause = cause


@asynccontextmanager
async def _work_connection(path: Path, timeout: float):
    conn = await aiosqlite.connect(str(path), timeout=timeout, isolation_level=None)
    try:
        # Fold any WAL content into the main file so the copy can be swapped in alone.
        await conn.execute("PRAGMA journal_mode=DELETE")
        yield conn
    finally:
        await conn.close()


async def _stamp_version(conn: aiosqlite.Connection, version: int) -> None:
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name IN ('store_meta', 'metadata')"
    ) as cur:
        present = {str(r[0]) for r in await cur.fetchall()}
    if "store_meta" in present:
        await write_store_meta_conn(conn, META_SCHEMA_VERSION, int(version))
    if "metadata" in present:
        await conn.execute("UPDATE metadata SET schema_version = ?", (int(version),))


async def _run_steps(conn: aiosqlite.Connection, steps: List[MigrationStep], *, reverse: bool = False) -> None:
    for step in steps:
        await conn.execute("BEGIN IMMEDIATE")
        try:
            if reverse:
                for op in reversed(list(step.operations)):
                    await op.reverse(conn)
                await _stamp_version(conn, step.from_version)
            else:
                for op in step.operations:
                    await op.forward(conn)
                await _stamp_version(conn, step.to_version)
            await conn.execute("COMMIT")
        except Exception as exc:
            try:
                await conn.execute("ROLLBACK")
            except Exception as rb_exc:
                logger.debug("Rollback of failed step raised: %s", rb_exc)
            raise _StepFailed(step, exc) from exc
        logger.info(
            "Migration step v%s -> v%s applied (%s)",
            step.to_version if reverse else step.from_version,
            step.from_version if reverse else step.to_version,
            step.description,
        )


async def _describe(conn: aiosqlite.Connection) -> Dict[str, Dict[str, Any]]:
    async with conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ) as cur:
        names = [str(r[0]) for r in await cur.fetchall()]
    out: Dict[str, Dict[str, Any]] = {}
    for name in names:
        columns = await table_columns(conn, name)
        async with conn.execute(f"SELECT COUNT(*) FROM {quoted_identifier(name)}") as cur:
            row = await cur.fetchone()
        out[name] = {"columns": columns, "rows": int(row[0]) if row else 0}
    return out


class MigrationManager:
    def __init__(
        self,
        db: Sqlite,
        gate: SchemaGate,
        backups: BackupManager,
        config: CacheConfig,
        *,
        target_version: int = CURRENT_SCHEMA_VERSION,
        registry: Callable[[], List[MigrationStep]] = build_migrations,
    ):
        self._db = db
        self._gate = gate
        self._backups = backups
        self._barrier = backups.barrier
        self._config = config
        self._target = int(target_version)
        self._registry = registry
        self._lock = asyncio.Lock()
        self._state = MigrationState.UNVERSIONED
        self._persisted: Optional[int] = None
        self._last_error: Optional[Dict[str, Any]] = None
        self._last_backup: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> MigrationState:
        return self._state

    @property
    def persisted_version(self) -> Optional[int]:
        return self._persisted

    @property
    def target_version(self) -> int:
        return self._target

    def _working_path(self, suffix: str) -> Path:
        return Path(str(self._db.db_path) + suffix)

    async def _discard(self, path: Path) -> None:
        for p in [path] + [Path(str(path) + s) for s in _SIDECARS]:
            try:
                await remove_with_retry(p)
            except OSError as exc:
                logger.warning("Could not remove working file %s: %s", p.name, exc)

    def status(self) -> Dict[str, Any]:
        pending: List[Dict[str, Any]] = []
        if self._persisted is not None and self._persisted < self._target:
            try:
                pending = [s.to_dict() for s in steps_between(self._persisted, self._target, self._registry())]
            except ValueError:
                pending = []
        return {
            "state": self._state.value,
            "persisted_version": self._persisted,
            "target_version": self._target,
            "pending_steps": pending,
            "last_error": self._last_error,
            "last_backup": self._last_backup,
            "gate": self._gate.to_dict(),
        }

    async def adetect(self) -> Result[Optional[int]]:
        """Read the persisted version and set the state and the gate accordingly."""
        res = await aget_schema_version(self._db)
        if not res.ok:
            return res
        version = res.data
        self._persisted = version
        if version is None:
            self._state = MigrationState.UNVERSIONED
            self._gate.block(ErrorCode.SCHEMA_MISMATCH, "Cache store is not initialized", persisted_version=None)
        elif version > self._target:
            self._state = MigrationState.VERSIONED
            self._gate.block(
                ErrorCode.SCHEMA_TOO_NEW,
                f"Cache store schema v{version} is newer than this engine (v{self._target})",
                persisted_version=version,
            )
        elif version < self._target:
            self._state = MigrationState.UNVERSIONED if version == 0 else MigrationState.VERSIONED
            self._gate.block(
                ErrorCode.SCHEMA_MISMATCH,
                f"Cache store schema v{version} requires migration to v{self._target}",
                persisted_version=version,
            )
        else:
            self._state = MigrationState.VALID
            self._gate.clear()
        return Result.Ok(version, state=self._state.value)

    async def astartup(self) -> Result[Optional[int]]:
        """Initialize empty stores, migrate older ones when allowed, refuse newer ones."""
        detected = await self.adetect()
        if not detected.ok:
            return detected
        version = detected.data
        if version is None:
            init = await self.amigrate(backup=False)
            return Result.Ok(self._persisted, initialized=True) if init.ok else init
        if version == self._target:
            meta = await ainit_store_meta(
                self._db, size_limit=self._config.size_limit_bytes, compression=self._config.compression
            )
            if not meta.ok:
                return Result.Err(meta.code, meta.error or "Failed to sync store_meta")
            return Result.Ok(version)
        if version > self._target or not self._config.auto_migrate:
            blocked = self._gate.check()
            return blocked if blocked is not None else Result.Ok(version)
        migrated = await self.amigrate(backup=self._config.migration_backup)
        return Result.Ok(self._persisted, migrated=migrated.data) if migrated.ok else migrated

    async def amigrate(
        self, target: Optional[int] = None, backup: bool = True, force: bool = False
    ) -> Result[Dict[str, Any]]:
        if self._lock.locked():
            return Result.Err(ErrorCode.MIGRATION_IN_PROGRESS, "A schema operation is already running")
        async with self._lock:
            detected = await self.adetect()
            if not detected.ok:
                return Result.Err(detected.code, detected.error or "Failed to read schema version")
            current = detected.data
            to_version = self._target if target is None else int(target)
            if current is not None and current > self._target:
                return Result.Err(
                    ErrorCode.SCHEMA_TOO_NEW,
                    f"Store schema v{current} is newer than this engine (v{self._target})",
                    persisted_version=current,
                )
            if to_version > self._target:
                return Result.Err(ErrorCode.INVALID_INPUT, f"Unknown schema version v{to_version}")
            from_version = 0 if current is None else current
            if to_version < from_version:
                return Result.Err(ErrorCode.INVALID_INPUT, "Target is older than the store; use rollback")
            if to_version == from_version and current is not None:
                return Result.Ok({"from_version": from_version, "to_version": to_version, "steps": []})
            try:
                steps = steps_between(from_version, to_version, self._registry())
            except ValueError as exc:
                return Result.Err(ErrorCode.MIGRATION_FAILED, str(exc), from_version=from_version, to_version=to_version)

            backup_info: Optional[Dict[str, Any]] = None
            if backup and current is not None:
                made = await self._backups.acreate(label=f"pre_migration_v{from_version}")
                if made.ok:
                    backup_info = {**(made.data or {}), "version": from_version}
                    self._last_backup = backup_info
                elif not force:
                    logger.error("Pre-migration backup failed, migration aborted: %s", made.error)
                    return Result.Err(
                        ErrorCode.BACKUP_FAILED,
                        f"Pre-migration backup failed: {made.error}",
                        from_version=from_version,
                        to_version=to_version,
                    )
                else:
                    logger.warning("Pre-migration backup failed, continuing (forced): %s", made.error)

            applied = await self._apply_on_copy(steps, from_version, to_version, reverse=False)
            if not applied.ok:
                return applied
            log_success(logger, f"Cache schema migrated v{from_version} -> v{to_version}")
            return Result.Ok(
                {
                    "from_version": from_version,
                    "to_version": to_version,
                    "steps": [s.to_dict() for s in steps],
                    "backup": backup_info,
                }
            )

    async def arollback(self, target: Optional[int] = None, use_backup: bool = True) -> Result[Dict[str, Any]]:
        """
        Bring the store back to an older version.

        Prefers the pre-migration backup for the target version; otherwise applies reverse
        operations, which is refused when any step in range cannot be reversed.
        """
        if self._lock.locked():
            return Result.Err(ErrorCode.MIGRATION_IN_PROGRESS, "A schema operation is already running")
        async with self._lock:
            detected = await self.adetect()
            if not detected.ok:
                return Result.Err(detected.code, detected.error or "Failed to read schema version")
            current = detected.data
            if current is None:
                return Result.Err(ErrorCode.INVALID_INPUT, "Cache store is not initialized")
            if target is None:
                if self._last_backup and int(self._last_backup.get("version", -1)) < current:
                    to_version = int(self._last_backup["version"])
                else:
                    to_version = current - 1
            else:
                to_version = int(target)
            if to_version < 0 or to_version >= current:
                return Result.Err(ErrorCode.INVALID_INPUT, f"Cannot roll back from v{current} to v{to_version}")

            if use_backup:
                source = self._backups.latest(label=f"pre_migration_v{to_version}")
                if source is not None:
                    restored = await self._backups.arestore(source)
                    if not restored.ok:
                        return Result.Err(restored.code, restored.error or "Rollback restore failed")
                    await self.adetect()
                    log_success(logger, f"Cache schema rolled back v{current} -> v{to_version} from backup")
                    return Result.Ok(
                        {"from_version": current, "to_version": to_version, "method": "backup", "backup": source.name}
                    )
                logger.info("No pre-migration backup for v%s; trying reverse operations", to_version)

            try:
                steps = steps_between(to_version, current, self._registry())
            except ValueError as exc:
                return Result.Err(ErrorCode.ROLLBACK_REFUSED, str(exc))
            blocked = [f"v{s.from_version}->v{s.to_version}" for s in steps if not s.reversible]
            if blocked:
                return Result.Err(
                    ErrorCode.ROLLBACK_REFUSED,
                    "Rollback requires a backup: some steps cannot be reversed",
                    irreversible_steps=blocked,
                )
            steps.reverse()
            applied = await self._apply_on_copy(steps, current, to_version, reverse=True)
            if not applied.ok:
                return applied
            log_success(logger, f"Cache schema rolled back v{current} -> v{to_version}")
            return Result.Ok({"from_version": current, "to_version": to_version, "method": "reverse"})

    async def adry_run(self, target: Optional[int] = None) -> Result[Dict[str, Any]]:
        """Run the pending steps on a throwaway copy and report what would change."""
        if self._lock.locked():
            return Result.Err(ErrorCode.MIGRATION_IN_PROGRESS, "A schema operation is already running")
        async with self._lock:
            version_res = await aget_schema_version(self._db)
            if not version_res.ok:
                return Result.Err(version_res.code, version_res.error or "Failed to read schema version")
            from_version = version_res.data or 0
            to_version = self._target if target is None else int(target)
            if from_version > self._target:
                return Result.Err(ErrorCode.SCHEMA_TOO_NEW, f"Store schema v{from_version} is newer than v{self._target}")
            if to_version > self._target or to_version < from_version:
                return Result.Err(ErrorCode.INVALID_INPUT, f"Cannot dry-run from v{from_version} to v{to_version}")
            try:
                steps = steps_between(from_version, to_version, self._registry())
            except ValueError as exc:
                return Result.Err(ErrorCode.MIGRATION_FAILED, str(exc))

            scratch = self._working_path(".dryrun")
            await self._discard(scratch)
            try:
                await self._db.acheckpoint()
                await asyncio.to_thread(copy_store_file, self._db.db_path, scratch)
                async with _work_connection(scratch, self._config.db_timeout_s) as conn:
                    before = await _describe(conn)
                    try:
                        await _run_steps(conn, steps)
                        failure = None
                    except _StepFailed as exc:
                        failure = {
                            "step": f"v{exc.step.from_version}->v{exc.step.to_version}",
                            "reason": sanitize_error_message(exc.cause, "Migration step failed"),
                        }
                    after = await _describe(conn)
            except (OSError, aiosqlite.Error) as exc:
                return Result.Err(ErrorCode.MIGRATION_FAILED, sanitize_error_message(exc, "Dry run failed"))
            finally:
                await self._discard(scratch)

        added_columns = {
            name: [c for c in info["columns"] if c not in before.get(name, {}).get("columns", [])]
            for name, info in after.items()
            if name in before
        }
        report = {
            "from_version": from_version,
            "to_version": to_version,
            "steps": [s.to_dict() for s in steps],
            "tables_before": sorted(before),
            "tables_after": sorted(after),
            "added_tables": sorted(set(after) - set(before)),
            "added_columns": {k: v for k, v in added_columns.items() if v},
            "row_counts": {name: {"before": before.get(name, {}).get("rows", 0), "after": info["rows"]} for name, info in after.items()},
            "failure": failure,
        }
        if failure is not None:
            return Result.Err(ErrorCode.MIGRATION_FAILED, f"Dry run failed at {failure['step']}", report=report)
        return Result.Ok(report)

    async def _apply_on_copy(
        self, steps: List[MigrationStep], from_version: int, to_version: int, *, reverse: bool
    ) -> Result[Dict[str, Any]]:
        work = self._working_path(".migrating")
        self._state = MigrationState.MIGRATING
        async with self._barrier.exclusive("migration"):
            await self._discard(work)
            try:
                await self._db.acheckpoint()
                await asyncio.to_thread(copy_store_file, self._db.db_path, work)
                async with _work_connection(work, self._config.db_timeout_s) as conn:
                    await _run_steps(conn, steps, reverse=reverse)
                    reached = await detect_version_conn(conn)
                if reached != to_version:
                    raise RuntimeError(f"working copy reports v{reached}, expected v{to_version}")
            except _StepFailed as exc:
                await self._discard(work)
                return self._fail(
                    from_version,
                    to_version,
                    step=f"v{exc.step.from_version}->v{exc.step.to_version}",
                    reason=sanitize_error_message(exc.cause, "Migration step failed"),
                )
            except (OSError, RuntimeError, aiosqlite.Error) as exc:
                await self._discard(work)
                return self._fail(from_version, to_version, step=None, reason=sanitize_error_message(exc, "Migration failed"))

            await self._db.adrain()
            try:
                await swap_store_file(work, self._db.db_path)
            except OSError as exc:
                await self._discard(work)
                return self._fail(from_version, to_version, step="swap", reason=sanitize_error_message(exc, "Swap failed"))
            finally:
                await self._db.areopen()

        self._last_error = None
        meta = await ainit_store_meta(self._db, size_limit=self._config.size_limit_bytes, compression=self._config.compression)
        if not meta.ok:
            logger.warning("store_meta sync after migration failed: %s", meta.error)
        await self.adetect()
        return Result.Ok({"from_version": from_version, "to_version": to_version})

    def _fail(self, from_version: int, to_version: int, *, step: Optional[str], reason: str) -> Result[Dict[str, Any]]:
        self._state = MigrationState.FAILED
        self._last_error = {"step": step, "from_version": from_version, "to_version": to_version, "reason": reason}
        logger.error("Migration v%s -> v%s failed at %s: %s", from_version, to_version, step, reason)
        return Result.Err(
            ErrorCode.MIGRATION_FAILED,
            f"Migration failed at {step or 'setup'}: {reason}",
            step=step,
            from_version=from_version,
            to_version=to_version,
            reason=reason,
        )
