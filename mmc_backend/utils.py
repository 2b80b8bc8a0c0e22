"""
Utility helpers shared across backend modules.
"""
from __future__ import annotations

import os
import re
from typing import Any

BOOL_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "enabled"})
BOOL_FALSE_VALUES = frozenset({"0", "false", "no", "off", "disabled"})

MIN_WORKERS = 1
MAX_WORKERS = 16

_SIZE_LIMIT_RE = re.compile(r"^\s*(\d+)\s*(B|KB|MB|GB)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"B": 1, "KB": 1024, "MB": 1024 ** 2, "GB": 1024 ** 3}


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in BOOL_TRUE_VALUES:
            return True
        if normalized in BOOL_FALSE_VALUES:
            return False
        try:
            return bool(float(normalized))
        except ValueError:
            pass
    return default


def env_bool(name: str, default: bool) -> bool:
    if not name:
        return default
    raw = os.environ.get(name)
    if raw is None:
        return default
    return parse_bool(raw, default)


def parse_size_limit(value: Any) -> int | None:
    """
    Parse a byte limit such as ``"512MB"``, ``"2GB"`` or a plain integer.

    Returns None for empty or malformed input so callers can fall back to a default.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    match = _SIZE_LIMIT_RE.match(str(value))
    if not match:
        return None
    amount = int(match.group(1))
    unit = (match.group(2) or "B").upper()
    total = amount * _SIZE_UNITS[unit]
    return total if total > 0 else None


def format_size(size_bytes: int | None) -> str:
    """Human readable size: ``812B``, ``3.4KB``, ``12.0MB``, ``1.5GB``."""
    size = int(size_bytes or 0)
    if size > _SIZE_UNITS["GB"]:
        return f"{size / _SIZE_UNITS['GB']:.1f}GB"
    if size > _SIZE_UNITS["MB"]:
        return f"{size / _SIZE_UNITS['MB']:.1f}MB"
    if size > _SIZE_UNITS["KB"]:
        return f"{size / _SIZE_UNITS['KB']:.1f}KB"
    return f"{size}B"


def resolve_worker_count(value: Any) -> int:
    """
    Resolve a worker setting into a concrete count.

    ``"auto"`` (or None) means the detected core count, clamped to the valid range.
    Explicit values outside 1..16 raise ValueError.
    """
    if value is None or (isinstance(value, str) and value.strip().lower() in ("", "auto")):
        detected = os.cpu_count() or 4
        return max(MIN_WORKERS, min(MAX_WORKERS, int(detected)))
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid worker count: {value!r}") from None
    if count < MIN_WORKERS or count > MAX_WORKERS:
        raise ValueError(f"Worker count must be between {MIN_WORKERS} and {MAX_WORKERS}")
    return count


def format_eta(elapsed_s: float, completed: int, total: int | None) -> str:
    """Estimate remaining time from the observed rate."""
    if not completed or not total or elapsed_s <= 0:
        return "Unknown"
    remaining = max(0, int(total) - int(completed))
    rate = completed / elapsed_s
    if rate <= 0:
        return "Unknown"
    eta_seconds = int(remaining / rate)
    if eta_seconds < 60:
        return f"{eta_seconds}s"
    if eta_seconds < 3600:
        return f"{eta_seconds // 60}m"
    hours = eta_seconds // 3600
    minutes = (eta_seconds % 3600) // 60
    return f"{hours}h{minutes}m"
