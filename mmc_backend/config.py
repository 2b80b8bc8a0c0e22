"""
Configuration for the media metadata cache.

Values are resolved once into a frozen `CacheConfig` and passed to each component;
nothing here is read implicitly at call time.
"""
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .utils import MAX_WORKERS, MIN_WORKERS, env_bool, parse_size_limit, resolve_worker_count

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "~/.search_metadata_cache.db"
DEFAULT_BATCH_SIZE = 50
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 1000
DEFAULT_MAX_INFLIGHT = "256MB"


def _env_raw(*names: str, default: str | None = None) -> str | None:
    for name in names:
        if not name:
            continue
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            return str(val).strip()
    return default


def _env_int(default: int, *names: str, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_float(default: float, *names: str, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid float for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_bool(default: bool, *names: str) -> bool:
    for name in names:
        if name and name in os.environ:
            return env_bool(name, default)
    return default


def _env_size(default: str | None, *names: str) -> int | None:
    raw = _env_raw(*names, default=default)
    if raw is None:
        return None
    parsed = parse_size_limit(raw)
    if parsed is None:
        logger.warning("Invalid size for %s=%r (expected e.g. 512MB or 2GB), using default=%s", names[0], raw, default)
        return parse_size_limit(default) if default else None
    return parsed


def _env_workers(default: str, *names: str) -> str | int:
    raw = _env_raw(*names, default=default) or default
    if raw.lower() == "auto":
        return "auto"
    try:
        return resolve_worker_count(raw)
    except ValueError as exc:
        logger.warning("%s for %s=%r, using %s", exc, names[0], raw, default)
        return default


@dataclass(frozen=True)
class CacheConfig:
    """Explicit configuration handed to every cache component."""

    db_path: Path = field(default_factory=lambda: Path(DEFAULT_DB_PATH).expanduser())
    backup_dir: Path | None = None
    workers: str | int = "auto"
    batch_size: int = DEFAULT_BATCH_SIZE
    max_inflight_bytes: int = 256 * 1024 * 1024
    size_limit_bytes: int | None = None
    hash_check: bool = True
    hash_on_write: bool = True
    compression: bool = False
    extract_timeout_s: float = 30.0
    exiftool_bin: str = "exiftool"
    ffprobe_bin: str = "ffprobe"
    tool_timeout_s: float = 15.0
    tool_trusted_dirs: tuple[str, ...] = ()
    auto_migrate: bool = True
    migration_backup: bool = True
    backup_keep: int = 5
    db_max_connections: int = 8
    db_timeout_s: float = 30.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        if self.backup_dir is None:
            object.__setattr__(self, "backup_dir", self.db_path.parent / "mmc_backups")
        else:
            object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())
        if not (MIN_BATCH_SIZE <= int(self.batch_size) <= MAX_BATCH_SIZE):
            raise ValueError(f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}")
        if self.workers != "auto":
            object.__setattr__(self, "workers", resolve_worker_count(self.workers))

    @property
    def worker_count(self) -> int:
        return resolve_worker_count(self.workers)

    def with_overrides(self, **overrides: Any) -> "CacheConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls, **overrides: Any) -> "CacheConfig":
        """Build a config from ``MMC_*`` environment variables, then apply keyword overrides."""
        db_path = Path(_env_raw("MMC_CACHE_DB", "CACHE_DB", default=DEFAULT_DB_PATH) or DEFAULT_DB_PATH).expanduser()
        backup_dir_raw = _env_raw("MMC_BACKUP_DIR")
        values: dict[str, Any] = {
            "db_path": db_path,
            "backup_dir": Path(backup_dir_raw).expanduser() if backup_dir_raw else None,
            "workers": _env_workers("auto", "MMC_WORKERS"),
            "batch_size": _env_int(DEFAULT_BATCH_SIZE, "MMC_BATCH_SIZE", min_value=MIN_BATCH_SIZE, max_value=MAX_BATCH_SIZE),
            "max_inflight_bytes": _env_size(DEFAULT_MAX_INFLIGHT, "MMC_MEMORY_LIMIT") or parse_size_limit(DEFAULT_MAX_INFLIGHT),
            "size_limit_bytes": _env_size(None, "MMC_CACHE_SIZE_LIMIT"),
            "hash_check": _env_bool(True, "MMC_HASH_CHECK"),
            "hash_on_write": _env_bool(True, "MMC_HASH_ON_WRITE"),
            "compression": _env_bool(False, "MMC_COMPRESSION"),
            "extract_timeout_s": _env_float(30.0, "MMC_EXTRACT_TIMEOUT", min_value=0.1, max_value=3600.0),
            "exiftool_bin": _env_raw("MMC_EXIFTOOL_PATH", "MMC_EXIFTOOL_BIN", default="exiftool") or "exiftool",
            "ffprobe_bin": _env_raw("MMC_FFPROBE_PATH", "MMC_FFPROBE_BIN", default="ffprobe") or "ffprobe",
            "tool_timeout_s": _env_float(15.0, "MMC_TOOL_TIMEOUT", min_value=0.1, max_value=3600.0),
            "tool_trusted_dirs": tuple(p for p in (_env_raw("MMC_TOOL_TRUSTED_DIRS") or "").split(os.pathsep) if p.strip()),
            "auto_migrate": _env_bool(True, "MMC_AUTO_MIGRATE"),
            "migration_backup": _env_bool(True, "MMC_MIGRATION_BACKUP"),
            "backup_keep": _env_int(5, "MMC_BACKUP_KEEP", min_value=0, max_value=1000),
            "db_max_connections": _env_int(8, "MMC_DB_MAX_CONNECTIONS", min_value=1, max_value=64),
            "db_timeout_s": _env_float(30.0, "MMC_DB_TIMEOUT", min_value=1.0, max_value=600.0),
        }
        values.update(overrides)
        return cls(**values)


__all__ = [
    "CacheConfig",
    "DEFAULT_DB_PATH",
    "DEFAULT_BATCH_SIZE",
    "MIN_BATCH_SIZE",
    "MAX_BATCH_SIZE",
    "MIN_WORKERS",
    "MAX_WORKERS",
]
