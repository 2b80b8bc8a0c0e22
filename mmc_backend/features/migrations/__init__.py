"""Schema migrations for the cache store."""
from .manager import MigrationManager, MigrationState
from .steps import (
    MIGRATIONS,
    AddColumn,
    Backfill,
    CreateIndex,
    CreateTable,
    ImportLegacy,
    MigrationOp,
    MigrationStep,
    Reindex,
    build_migrations,
    steps_between,
)

__all__ = [
    "MIGRATIONS",
    "AddColumn",
    "Backfill",
    "CreateIndex",
    "CreateTable",
    "ImportLegacy",
    "MigrationManager",
    "MigrationOp",
    "MigrationState",
    "MigrationStep",
    "Reindex",
    "build_migrations",
    "steps_between",
]
