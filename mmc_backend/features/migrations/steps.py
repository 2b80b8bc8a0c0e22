"""
Schema migration steps.

Each step moves a store from one version to the next through a list of typed
operations. Operations run on a raw aiosqlite connection inside the transaction the
migration manager opens for the step; they never commit.
"""
from __future__ import annotations

import base64
import binascii
import datetime
from dataclasses import dataclass, field
from typing import ClassVar, List, Optional, Sequence, Tuple

import aiosqlite

from ...adapters.db.diagnostics import quoted_identifier
from ...adapters.db.schema import (
    CHANGE_LOG_TABLE_DDL,
    FILE_INFO_TABLE_DDL,
    FILE_SNAPSHOT_STAGING_TABLE_DDL,
    FILE_SNAPSHOT_TABLE_DDL,
    LEGACY_TABLE,
    METADATA_TABLE_DDL,
    STORE_META_TABLE_DDL,
)
from ...shared import get_logger
from ...shared import now as _now

logger = get_logger(__name__)


async def _table_exists(conn: aiosqlite.Connection, name: str) -> bool:
    async with conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)
    ) as cur:
        return (await cur.fetchone()) is not None


async def table_columns(conn: aiosqlite.Connection, table: str) -> List[str]:
    async with conn.execute(f"PRAGMA table_info({quoted_identifier(table)})") as cur:
        return [str(r[1]) for r in await cur.fetchall()]


class MigrationOp:
    kind: ClassVar[str] = "op"
    reversible: ClassVar[bool] = True

    async def forward(self, conn: aiosqlite.Connection) -> None:
        raise NotImplementedError

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        raise NotImplementedError(f"{self.kind} cannot be reversed")

    def describe(self) -> str:
        return self.kind


@dataclass
class CreateTable(MigrationOp):
    name: str
    ddl: str
    kind: ClassVar[str] = "create_table"

    async def forward(self, conn: aiosqlite.Connection) -> None:
        await conn.execute(self.ddl)

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        await conn.execute(f"DROP TABLE IF EXISTS {quoted_identifier(self.name)}")

    def describe(self) -> str:
        return f"create table {self.name}"


@dataclass
class AddColumn(MigrationOp):
    table: str
    column: str
    decl: str
    kind: ClassVar[str] = "add_column"

    async def forward(self, conn: aiosqlite.Connection) -> None:
        if self.column in await table_columns(conn, self.table):
            return
        await conn.execute(
            f"ALTER TABLE {quoted_identifier(self.table)} ADD COLUMN {quoted_identifier(self.column)} {self.decl}"
        )

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        if self.column not in await table_columns(conn, self.table):
            return
        await conn.execute(
            f"ALTER TABLE {quoted_identifier(self.table)} DROP COLUMN {quoted_identifier(self.column)}"
        )

    def describe(self) -> str:
        return f"add column {self.table}.{self.column}"


@dataclass
class CreateIndex(MigrationOp):
    name: str
    table: str
    columns: Tuple[str, ...]
    kind: ClassVar[str] = "create_index"

    async def forward(self, conn: aiosqlite.Connection) -> None:
        cols = ", ".join(quoted_identifier(c) for c in self.columns)
        await conn.execute(
            f"CREATE INDEX IF NOT EXISTS {quoted_identifier(self.name)} ON {quoted_identifier(self.table)} ({cols})"
        )

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        await conn.execute(f"DROP INDEX IF EXISTS {quoted_identifier(self.name)}")

    def describe(self) -> str:
        return f"create index {self.name} on {self.table}({', '.join(self.columns)})"


@dataclass
class Reindex(MigrationOp):
    target: Optional[str] = None
    kind: ClassVar[str] = "reindex"

    async def forward(self, conn: aiosqlite.Connection) -> None:
        if self.target:
            await conn.execute(f"REINDEX {quoted_identifier(self.target)}")
        else:
            await conn.execute("REINDEX")

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        return None

    def describe(self) -> str:
        return f"reindex {self.target or 'all'}"


@dataclass
class Backfill(MigrationOp):
    """
    Data fill through a parameterized UPDATE.

    Only fills of columns added by the same step are reversible: dropping the column on
    the way back discards the filled values.
    """

    sql: str
    params: Tuple = ()
    fills_new_columns: bool = False
    label: str = "backfill"
    kind: ClassVar[str] = "backfill"

    @property
    def reversible(self) -> bool:  # type: ignore[override]
        return self.fills_new_columns

    async def forward(self, conn: aiosqlite.Connection) -> None:
        await conn.execute(self.sql, self.params)

    async def reverse(self, conn: aiosqlite.Connection) -> None:
        if not self.fills_new_columns:
            raise NotImplementedError(f"{self.label} cannot be reversed")

    def describe(self) -> str:
        return self.label


def _legacy_timestamp(value) -> float:
    if value is None:
        return _now()
    if isinstance(value, (int, float)):
        return float(value)
    try:
        parsed = datetime.datetime.strptime(str(value), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return _now()
    return parsed.replace(tzinfo=datetime.timezone.utc).timestamp()


def _decode_legacy_payload(raw) -> Optional[bytes]:
    if raw is None:
        return None
    text = raw.decode("ascii", errors="ignore") if isinstance(raw, bytes) else str(raw)
    try:
        return base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError):
        return None


@dataclass
class ImportLegacy(MigrationOp):
    """
    Copy rows of the shell-era `metadata_cache` table into `metadata`/`file_info`.

    Payloads there are base64 text and mtimes are whole seconds. The legacy table is
    left in place; rows that fail to decode are skipped and counted.
    """

    schema_version: int = 1
    kind: ClassVar[str] = "import_legacy"
    reversible: ClassVar[bool] = False
    imported: int = field(default=0, init=False)
    skipped: int = field(default=0, init=False)

    async def forward(self, conn: aiosqlite.Connection) -> None:
        self.imported = 0
        self.skipped = 0
        if not await _table_exists(conn, LEGACY_TABLE):
            return
        columns = set(await table_columns(conn, LEGACY_TABLE))
        wanted = ["file_path", "metadata", "file_size", "file_hash", "modified_time", "file_type", "created_at", "accessed_at"]
        select = ", ".join(c if c in columns else f"NULL AS {c}" for c in wanted)
        async with conn.execute(f"SELECT {select} FROM {LEGACY_TABLE}") as cur:
            rows = await cur.fetchall()

        for file_path, payload, file_size, file_hash, modified_time, file_type, created_at, _accessed in rows:
            blob = _decode_legacy_payload(payload)
            if not file_path or blob is None:
                self.skipped += 1
                continue
            created = _legacy_timestamp(created_at)
            mtime_ns = int(modified_time or 0) * 1_000_000_000
            await conn.execute(
                "INSERT OR REPLACE INTO metadata (path, hash, metadata_blob, schema_version, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (str(file_path), file_hash or None, blob, int(self.schema_version), created, created),
            )
            await conn.execute(
                "INSERT OR REPLACE INTO file_info (path, size, hash, modified_time, file_type) VALUES (?, ?, ?, ?, ?)",
                (str(file_path), int(file_size or 0), file_hash or None, mtime_ns, file_type or None),
            )
            self.imported += 1
        if rows:
            logger.info("Imported %d legacy cache rows (%d skipped)", self.imported, self.skipped)

    def describe(self) -> str:
        return f"import legacy table {LEGACY_TABLE}"


@dataclass
class MigrationStep:
    from_version: int
    to_version: int
    description: str
    operations: Sequence[MigrationOp]

    @property
    def reversible(self) -> bool:
        return all(op.reversible for op in self.operations)

    def to_dict(self) -> dict:
        return {
            "from_version": self.from_version,
            "to_version": self.to_version,
            "description": self.description,
            "reversible": self.reversible,
            "operations": [op.describe() for op in self.operations],
        }


def build_migrations() -> List[MigrationStep]:
    """Fresh step instances (ImportLegacy keeps per-run counters)."""
    return [
        MigrationStep(
            0,
            1,
            "Base tables; import shell-era cache rows",
            [
                CreateTable("metadata", METADATA_TABLE_DDL),
                CreateTable("file_info", FILE_INFO_TABLE_DDL),
                CreateTable("store_meta", STORE_META_TABLE_DDL),
                CreateIndex("idx_file_info_file_type", "file_info", ("file_type",)),
                ImportLegacy(schema_version=1),
            ],
        ),
        MigrationStep(
            1,
            2,
            "Access tracking",
            [
                AddColumn("metadata", "accessed_at", "REAL"),
                AddColumn("metadata", "access_count", "INTEGER NOT NULL DEFAULT 0"),
                Backfill(
                    "UPDATE metadata SET accessed_at = updated_at WHERE accessed_at IS NULL",
                    fills_new_columns=True,
                    label="backfill metadata.accessed_at from updated_at",
                ),
            ],
        ),
        MigrationStep(
            2,
            3,
            "Fingerprint snapshots and change log",
            [
                CreateTable("file_snapshot", FILE_SNAPSHOT_TABLE_DDL),
                CreateTable("file_snapshot_staging", FILE_SNAPSHOT_STAGING_TABLE_DDL),
                CreateTable("change_log", CHANGE_LOG_TABLE_DDL),
                CreateIndex("idx_change_log_run", "change_log", ("run_id",)),
                CreateIndex("idx_snapshot_staging_scope", "file_snapshot_staging", ("scope",)),
                Reindex("metadata"),
            ],
        ),
        MigrationStep(
            3,
            4,
            "Stored blob accounting",
            [
                AddColumn("metadata", "blob_size", "INTEGER NOT NULL DEFAULT 0"),
                AddColumn("metadata", "compressed", "INTEGER NOT NULL DEFAULT 0"),
                Backfill(
                    "UPDATE metadata SET blob_size = COALESCE(length(metadata_blob), 0)",
                    fills_new_columns=True,
                    label="backfill metadata.blob_size from blob length",
                ),
                CreateIndex("idx_metadata_accessed_at", "metadata", ("accessed_at",)),
            ],
        ),
    ]


MIGRATIONS: List[MigrationStep] = build_migrations()


def steps_between(
    from_version: int, to_version: int, registry: Optional[Sequence[MigrationStep]] = None
) -> List[MigrationStep]:
    """Forward steps taking `from_version` to `to_version` (empty when equal)."""
    steps = list(registry or build_migrations())
    if to_version < from_version:
        raise ValueError(f"Cannot migrate forward from v{from_version} to v{to_version}")
    chain = [s for s in steps if from_version <= s.from_version and s.to_version <= to_version]
    chain.sort(key=lambda s: s.from_version)
    expected = from_version
    for step in chain:
        if step.from_version != expected:
            raise ValueError(f"No migration step from v{expected}")
        expected = step.to_version
    if expected != to_version:
        raise ValueError(f"No migration path from v{from_version} to v{to_version}")
    return chain
