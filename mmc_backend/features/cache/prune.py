"""
Eviction ordering and victim planning for cache pruning.

Policies:
  max_size  least recently accessed first, ties broken by path.
  max_age   every entry whose last write is older than the age.
  smart     fewest accesses first, then least recently accessed, then largest stored
            blob, then path. The limit defaults to store_meta.size_limit.
"""
from typing import Any, Dict, List, Tuple

MAX_SIZE_ORDER = "COALESCE(accessed_at, updated_at) ASC, path ASC"
SMART_ORDER = "access_count ASC, COALESCE(accessed_at, updated_at) ASC, blob_size DESC, path ASC"

VICTIM_COLUMNS = "path, blob_size, access_count, accessed_at, updated_at"


def order_clause(kind: str) -> str:
    if kind == "smart":
        return SMART_ORDER
    if kind == "max_size":
        return MAX_SIZE_ORDER
    raise ValueError(f"No size ordering for prune policy: {kind}")


def plan_size_eviction(
    ordered_rows: List[Dict[str, Any]],
    total_bytes: int,
    limit_bytes: int,
) -> Tuple[List[str], int]:
    """
    Walk rows in eviction order and pick victims until the total fits the limit.

    A total equal to the limit fits. Stops at the first point where that holds, so no more
    entries are removed than the ordering requires. Returns (paths, freed_bytes).
    """
    victims: List[str] = []
    freed = 0
    remaining = int(total_bytes)
    limit = max(0, int(limit_bytes))
    for row in ordered_rows:
        if remaining <= limit:
            break
        size = int(row.get("blob_size") or 0)
        victims.append(str(row["path"]))
        freed += size
        remaining -= size
    return victims, freed
