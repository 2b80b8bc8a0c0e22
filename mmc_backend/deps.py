"""
Dependency injection - builds services.
Simple, debug-friendly DI without framework magic.
"""
from typing import Any, Optional

from .adapters.db.barrier import StoreBarrier
from .adapters.db.schema import CURRENT_SCHEMA_VERSION
from .adapters.db.sqlite import Sqlite
from .adapters.tools import ExifTool, FFProbe
from .config import CacheConfig
from .features.cache import BackupManager, CacheStore, InvalidationManager, SchemaGate
from .features.dispatch import Dispatcher
from .features.fingerprint import ChangeLog, FingerprintTracker
from .features.metadata import MediaExtractor
from .features.migrations import MigrationManager
from .shared import ErrorCode, Result, get_logger, log_success

logger = get_logger(__name__)


def _init_db_or_error(config: CacheConfig) -> Result[Sqlite]:
    logger.info("Initializing cache database: %s", config.db_path)
    try:
        return Result.Ok(
            Sqlite(config.db_path, max_connections=config.db_max_connections, timeout=config.db_timeout_s)
        )
    except OSError as exc:
        logger.error("Failed to initialize database: %s", exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")


def _init_tools(config: CacheConfig) -> tuple[ExifTool, FFProbe]:
    exiftool = ExifTool(config.exiftool_bin, timeout=config.tool_timeout_s, trusted_dirs=config.tool_trusted_dirs)
    ffprobe = FFProbe(config.ffprobe_bin, timeout=config.tool_timeout_s, trusted_dirs=config.tool_trusted_dirs)
    return exiftool, ffprobe


def _log_tool_availability(exiftool: ExifTool, ffprobe: FFProbe) -> None:
    if exiftool.is_available():
        log_success(logger, "ExifTool is available")
    else:
        logger.warning("ExifTool not found - image metadata extraction will fail")
    if ffprobe.is_available():
        log_success(logger, "ffprobe is available")
    else:
        logger.warning("ffprobe not found - videos fall back to ExifTool")


async def build_services(config: Optional[CacheConfig] = None, extractor: Any = None) -> Result[dict]:
    """
    Build all services (DI container).

    Args:
        config: Cache configuration (default: from MMC_* environment variables)
        extractor: Optional extractor replacing the tool-backed one

    Returns:
        Result[dict] of service instances. A store whose schema cannot be used still
        loads (meta ``schema_blocked``) so backup, restore and rollback stay reachable.
    """
    config = config or CacheConfig.from_env()
    logger.info("Building services...")

    db_res = _init_db_or_error(config)
    if not db_res.ok or db_res.data is None:
        return Result.Err(db_res.code or ErrorCode.DB_ERROR, db_res.error or "Failed to initialize database")
    db = db_res.data

    gate = SchemaGate(CURRENT_SCHEMA_VERSION)
    barrier = StoreBarrier()
    backups = BackupManager(db, barrier, config)
    migrations = MigrationManager(db, gate, backups, config)
    backups.add_restore_listener(migrations.adetect)

    startup = await migrations.astartup()
    if not startup.ok and not gate.is_blocked:
        logger.error("Cache store startup failed: %s", startup.error)
        await db.aclose()
        return Result.Err(startup.code or ErrorCode.DB_ERROR, startup.error or "Cache store startup failed")

    store = CacheStore(db, barrier, gate, config, backups=backups)
    invalidation = InvalidationManager(store, gate)
    tracker = FingerprintTracker(db, config)
    change_log = ChangeLog(db)

    exiftool, ffprobe = _init_tools(config)
    _log_tool_availability(exiftool, ffprobe)
    media_extractor = MediaExtractor(exiftool, ffprobe)

    dispatcher = Dispatcher(store, invalidation, tracker, change_log, extractor or media_extractor, config)

    services = {
        "config": config,
        "db": db,
        "gate": gate,
        "barrier": barrier,
        "backups": backups,
        "migrations": migrations,
        "store": store,
        "invalidation": invalidation,
        "tracker": tracker,
        "change_log": change_log,
        "exiftool": exiftool,
        "ffprobe": ffprobe,
        "extractor": media_extractor,
        "dispatcher": dispatcher,
    }

    if gate.is_blocked:
        logger.error("Cache store loaded but blocked (%s): %s", gate.code, gate.reason)
        return Result.Ok(services, schema_blocked=gate.to_dict())

    log_success(logger, f"All services initialized (schema v{CURRENT_SCHEMA_VERSION})")
    return Result.Ok(services)


async def shutdown_services(services: dict) -> None:
    db = services.get("db")
    if db is not None:
        await db.aclose()
