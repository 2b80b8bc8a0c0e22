"""
Fingerprint helpers: stat snapshots, content hashing and batching.
Pure functions, safe to call from worker threads.
"""
import hashlib
import os
from collections.abc import Iterable, Iterator
from typing import TypeVar, Union

from ..cache.models import FileStat, Fingerprint

HASH_CHUNK_BYTES = 1024 * 1024

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Content hashing
# ---------------------------------------------------------------------------

def sha256_file(path: str, chunk_size: int = HASH_CHUNK_BYTES) -> str:
    """Stream the file through SHA-256; raises OSError if it cannot be read."""
    h = hashlib.sha256()
    with open(path, "rb") as fh:
        while True:
            chunk = fh.read(chunk_size)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def stat_fingerprint(path: str, with_hash: bool = False) -> Fingerprint:
    stat = FileStat.from_path(path)
    return Fingerprint.from_stat(stat, sha256_file(path) if with_hash else None)


def to_file_stat(item: Union[str, os.PathLike, FileStat]) -> FileStat:
    """Accept a walker-provided FileStat as-is; stat plain paths."""
    if isinstance(item, FileStat):
        return item
    return FileStat.from_path(os.fspath(item))


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

def chunked(items: Iterable[T], size: int) -> Iterator[list[T]]:
    """Yield lists of at most `size` items without materializing the whole input."""
    batch: list[T] = []
    step = max(1, int(size))
    for item in items:
        batch.append(item)
        if len(batch) >= step:
            yield batch
            batch = []
    if batch:
        yield batch
