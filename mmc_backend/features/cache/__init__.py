"""Cache store, invalidation, pruning and backups."""
from .backup import BackupManager
from .invalidation import InvalidationManager, SchemaGate
from .models import CacheEntry, ChangeRecord, FileStat, Fingerprint, PrunePolicy
from .store import CacheStore

__all__ = [
    "BackupManager",
    "CacheEntry",
    "CacheStore",
    "ChangeRecord",
    "FileStat",
    "Fingerprint",
    "InvalidationManager",
    "PrunePolicy",
    "SchemaGate",
]
