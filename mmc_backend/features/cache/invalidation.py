"""
Cache reuse gatekeeper.

An entry is reusable only when its stored fingerprint matches the file's current one and
its schema version equals the engine's. Stale rows are deleted on sight so size accounting
stays accurate. A store whose schema version disagrees with the engine blocks every other
cache operation until the migration manager clears the gate.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from ...shared import ErrorCode, Result, get_logger
from .models import CacheEntry, Fingerprint

if TYPE_CHECKING:
    from .store import CacheStore

logger = get_logger(__name__)


class SchemaGate:
    """Store-wide switch that refuses cache operations while the schema is unresolved."""

    def __init__(self, required_version: int):
        self.required_version = int(required_version)
        self._code: Optional[str] = None
        self._reason: Optional[str] = None
        self._meta: dict[str, Any] = {}

    @property
    def is_blocked(self) -> bool:
        return self._code is not None

    @property
    def code(self) -> Optional[str]:
        return self._code

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def block(self, code: ErrorCode | str, reason: str, **meta: Any) -> None:
        code_value = code.value if isinstance(code, ErrorCode) else str(code)
        if self._code != code_value or self._reason != reason:
            logger.error("Cache operations blocked (%s): %s", code_value, reason)
        self._code = code_value
        self._reason = reason
        self._meta = dict(meta)

    def clear(self) -> None:
        if self._code is not None:
            logger.info("Cache operations unblocked")
        self._code = None
        self._reason = None
        self._meta = {}

    def check(self) -> Optional[Result[Any]]:
        """Return the blocking error, or None when operations may proceed."""
        if self._code is None:
            return None
        return Result.Err(
            self._code,
            self._reason or "Cache store schema is not usable",
            required_version=self.required_version,
            **self._meta,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "blocked": self.is_blocked,
            "code": self._code,
            "reason": self._reason,
            "required_version": self.required_version,
            **self._meta,
        }


class InvalidationManager:
    def __init__(self, store: "CacheStore", gate: SchemaGate):
        self._store = store
        self._gate = gate

    async def acheck(self, current: Fingerprint) -> Result[Optional[CacheEntry]]:
        """
        Look up `current.path` and decide whether the cached entry can be reused.

        Returns Ok(entry) on a hit, Ok(None) on a miss (meta ``reason`` is one of
        ``absent``, ``schema``, ``stale``), or an error when the store is unusable.
        """
        blocked = self._gate.check()
        if blocked is not None:
            return blocked

        got = await self._store.aget(current.path, track_access=False)
        if not got.ok:
            return got
        entry = got.data
        if entry is None:
            return Result.Ok(None, reason="absent")

        if int(entry.schema_version) != self._gate.required_version:
            return await self._on_row_schema_mismatch(entry)

        if not entry.fingerprint.matches(current):
            inv = await self._store.ainvalidate(current.path)
            if not inv.ok:
                return Result.Err(inv.code, inv.error or "Failed to drop stale entry", path=current.path)
            logger.debug("Stale cache entry dropped: %s", current.path)
            return Result.Ok(None, reason="stale")

        if not entry.fingerprint.cheap_equal(current):
            # Same content, new size/mtime: refresh the stored fingerprint instead of re-extracting.
            touch = await self._store.atouch(current)
            if not touch.ok:
                return Result.Err(touch.code, touch.error or "Failed to refresh fingerprint", path=current.path)
            entry.file_size = int(current.size)
            entry.modified_time = int(current.mtime_ns)

        await self._store.arecord_access(current.path)
        return Result.Ok(entry, reason="hit")

    async def _on_row_schema_mismatch(self, entry: CacheEntry) -> Result[Optional[CacheEntry]]:
        version_res = await self._store.astore_version()
        if not version_res.ok:
            return Result.Err(version_res.code, version_res.error or "Failed to read store version")
        store_version = version_res.data
        if store_version != self._gate.required_version:
            self._gate.block(
                ErrorCode.SCHEMA_MISMATCH,
                f"Store schema v{store_version} does not match engine v{self._gate.required_version}",
                persisted_version=store_version,
            )
            blocked = self._gate.check()
            return blocked if blocked is not None else Result.Err(ErrorCode.SCHEMA_MISMATCH, "Schema mismatch")

        inv = await self._store.ainvalidate(entry.path)
        if not inv.ok:
            return Result.Err(inv.code, inv.error or "Failed to drop outdated entry", path=entry.path)
        logger.debug(
            "Entry written by schema v%s dropped (engine v%s): %s",
            entry.schema_version,
            self._gate.required_version,
            entry.path,
        )
        return Result.Ok(None, reason="schema")
