"""
Cache data model: fingerprints, entries and prune policies.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Literal, Optional

from ...shared import ChangeType, FileKind, classify_file


@dataclass(frozen=True)
class FileStat:
    """What an external walker reports for a candidate path."""

    path: str
    size: int
    mtime_ns: int

    @classmethod
    def from_path(cls, path: str) -> "FileStat":
        st = os.stat(path)
        return cls(path=str(path), size=int(st.st_size), mtime_ns=int(st.st_mtime_ns))


@dataclass(frozen=True)
class Fingerprint:
    """
    Lightweight file signature.

    Two fingerprints match when their sizes agree and either both carry a content hash
    and the hashes agree, or (lacking a hash on either side) the mtimes agree.
    """

    path: str
    size: int
    mtime_ns: int
    hash: Optional[str] = None

    @classmethod
    def from_stat(cls, stat: FileStat, hash: Optional[str] = None) -> "Fingerprint":
        return cls(path=stat.path, size=int(stat.size), mtime_ns=int(stat.mtime_ns), hash=hash)

    def cheap_equal(self, other: "Fingerprint") -> bool:
        return self.size == other.size and self.mtime_ns == other.mtime_ns

    def matches(self, other: Optional["Fingerprint"]) -> bool:
        if other is None or self.size != other.size:
            return False
        if self.hash and other.hash:
            return self.hash == other.hash
        return self.mtime_ns == other.mtime_ns

    def with_hash(self, hash: Optional[str]) -> "Fingerprint":
        return Fingerprint(self.path, self.size, self.mtime_ns, hash)

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "size": self.size, "mtime_ns": self.mtime_ns, "hash": self.hash}


@dataclass
class CacheEntry:
    path: str
    content_hash: Optional[str]
    file_size: int
    modified_time: int
    file_type: Optional[str]
    metadata: bytes
    schema_version: int
    created_at: float
    updated_at: float
    accessed_at: Optional[float] = None
    access_count: int = 0
    blob_size: int = 0

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(self.path, int(self.file_size), int(self.modified_time), self.content_hash)

    def to_dict(self, include_metadata: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "path": self.path,
            "content_hash": self.content_hash,
            "file_size": self.file_size,
            "modified_time": self.modified_time,
            "file_type": self.file_type,
            "schema_version": self.schema_version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "accessed_at": self.accessed_at,
            "access_count": self.access_count,
            "blob_size": self.blob_size,
        }
        if include_metadata:
            out["metadata"] = self.metadata.decode("utf-8", errors="replace")
        return out


@dataclass(frozen=True)
class ChangeRecord:
    path: str
    change_type: ChangeType
    prior: Optional[Fingerprint]
    current: Optional[Fingerprint]
    run_timestamp: float

    @property
    def file_type(self) -> FileKind:
        return classify_file(self.path)


PruneKind = Literal["max_size", "max_age", "smart"]


@dataclass(frozen=True)
class PrunePolicy:
    kind: PruneKind
    max_size_bytes: Optional[int] = None
    max_age_s: Optional[float] = None

    @classmethod
    def max_size(cls, max_size_bytes: int) -> "PrunePolicy":
        if max_size_bytes is None or int(max_size_bytes) < 0:
            raise ValueError("max_size_bytes must be >= 0")
        return cls("max_size", max_size_bytes=int(max_size_bytes))

    @classmethod
    def max_age(cls, max_age_s: float) -> "PrunePolicy":
        if max_age_s is None or float(max_age_s) < 0:
            raise ValueError("max_age_s must be >= 0")
        return cls("max_age", max_age_s=float(max_age_s))

    @classmethod
    def smart(cls, max_size_bytes: Optional[int] = None) -> "PrunePolicy":
        return cls("smart", max_size_bytes=int(max_size_bytes) if max_size_bytes is not None else None)
