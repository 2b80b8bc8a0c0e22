"""
Cache and schema maintenance endpoints.
"""
from __future__ import annotations

from typing import Any, Optional

from aiohttp import web

from ...features.cache.models import PrunePolicy
from ...shared import ErrorCode, Result, get_logger, sanitize_error_message
from ...utils import parse_bool, parse_size_limit
from ..core import _json_response, _read_json

logger = get_logger(__name__)


def _service(services: dict, name: str) -> tuple[Any, Optional[Result[Any]]]:
    svc = services.get(name) if isinstance(services, dict) else None
    if svc is None:
        return None, Result.Err(ErrorCode.SERVICE_UNAVAILABLE, f"{name} service unavailable")
    return svc, None


def _optional_int(payload: dict, key: str) -> tuple[Optional[int], Optional[Result[Any]]]:
    raw = payload.get(key)
    if raw is None or raw == "":
        return None, None
    try:
        return int(raw), None
    except (TypeError, ValueError):
        return None, Result.Err(ErrorCode.INVALID_INPUT, f"{key} must be an integer")


def _policy_from_payload(payload: dict) -> Result[PrunePolicy]:
    kind = str(payload.get("policy") or "smart").strip().lower()
    try:
        if kind == "max_size":
            limit = parse_size_limit(payload.get("max_size"))
            if limit is None:
                return Result.Err(ErrorCode.INVALID_INPUT, "max_size is required (e.g. 500MB, 2GB)")
            return Result.Ok(PrunePolicy.max_size(limit))
        if kind == "max_age":
            if payload.get("max_age_days") is not None:
                return Result.Ok(PrunePolicy.max_age(float(payload["max_age_days"]) * 86400.0))
            if payload.get("max_age_s") is None:
                return Result.Err(ErrorCode.INVALID_INPUT, "max_age_s or max_age_days is required")
            return Result.Ok(PrunePolicy.max_age(float(payload["max_age_s"])))
        if kind == "smart":
            raw = payload.get("max_size")
            limit = parse_size_limit(raw) if raw not in (None, "") else None
            if raw not in (None, "") and limit is None:
                return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid size limit: {raw}")
            return Result.Ok(PrunePolicy.smart(limit))
    except (TypeError, ValueError) as exc:
        return Result.Err(ErrorCode.INVALID_INPUT, sanitize_error_message(exc, "Invalid prune policy"))
    return Result.Err(ErrorCode.INVALID_INPUT, f"Unknown prune policy: {kind}")


def register_cache_maintenance_routes(routes: web.RouteTableDef, services: dict) -> None:
    @routes.get("/mmc/cache/stats")
    async def cache_stats(_request: web.Request):
        store, err = _service(services, "store")
        if err:
            return _json_response(err)
        return _json_response(await store.astats())

    @routes.get("/mmc/cache/health")
    async def cache_health(_request: web.Request):
        store, err = _service(services, "store")
        if err:
            return _json_response(err)
        return _json_response(await store.ahealth())

    @routes.post("/mmc/cache/prune")
    async def cache_prune(request: web.Request):
        """Body: { policy: max_size|max_age|smart, max_size?, max_age_s?, max_age_days? }"""
        store, err = _service(services, "store")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        policy = _policy_from_payload(body.data or {})
        if not policy.ok:
            return _json_response(policy)
        return _json_response(await store.aprune(policy.data))

    @routes.post("/mmc/cache/clear")
    async def cache_clear(_request: web.Request):
        store, err = _service(services, "store")
        if err:
            return _json_response(err)
        return _json_response(await store.aclear())

    @routes.get("/mmc/cache/backups")
    async def cache_backups(_request: web.Request):
        """List backups (newest first)."""
        backups, err = _service(services, "backups")
        if err:
            return _json_response(err)
        listed = await backups.alist()
        if not listed.ok:
            return _json_response(listed)
        rows = listed.data or []
        return _json_response(
            Result.Ok(
                {
                    "backup_dir": str(backups.backup_dir),
                    "items": rows,
                    "latest": rows[0]["name"] if rows else None,
                }
            )
        )

    @routes.post("/mmc/cache/backup")
    async def cache_backup(request: web.Request):
        """Body: { label?: str }"""
        backups, err = _service(services, "backups")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        label = str((body.data or {}).get("label") or "cache")
        return _json_response(await backups.acreate(label=label))

    @routes.post("/mmc/cache/restore")
    async def cache_restore(request: web.Request):
        """
        Restore the store from a backup in the backup directory.
        Body: { name?: str, use_latest?: bool }
        """
        backups, err = _service(services, "backups")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        payload = body.data or {}
        name = str(payload.get("name") or "").strip()
        use_latest = parse_bool(payload.get("use_latest"), default=not name)
        if use_latest:
            source = backups.latest()
            if source is None:
                return _json_response(Result.Err(ErrorCode.NOT_FOUND, "No backup found"))
        else:
            source = backups.resolve(name)
            if source is None:
                return _json_response(Result.Err(ErrorCode.NOT_FOUND, f"Backup not found: {name}"))
        return _json_response(await backups.arestore(source))

    @routes.get("/mmc/schema/status")
    async def schema_status(_request: web.Request):
        migrations, err = _service(services, "migrations")
        if err:
            return _json_response(err)
        return _json_response(Result.Ok(migrations.status()))

    @routes.post("/mmc/schema/dry-run")
    async def schema_dry_run(request: web.Request):
        """Body: { target?: int }"""
        migrations, err = _service(services, "migrations")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        target, bad = _optional_int(body.data or {}, "target")
        if bad:
            return _json_response(bad)
        return _json_response(await migrations.adry_run(target))

    @routes.post("/mmc/schema/migrate")
    async def schema_migrate(request: web.Request):
        """Body: { target?: int, backup?: bool, force?: bool }"""
        migrations, err = _service(services, "migrations")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        payload = body.data or {}
        target, bad = _optional_int(payload, "target")
        if bad:
            return _json_response(bad)
        return _json_response(
            await migrations.amigrate(
                target,
                backup=parse_bool(payload.get("backup"), default=True),
                force=parse_bool(payload.get("force"), default=False),
            )
        )

    @routes.post("/mmc/schema/rollback")
    async def schema_rollback(request: web.Request):
        """Body: { target?: int, use_backup?: bool }"""
        migrations, err = _service(services, "migrations")
        if err:
            return _json_response(err)
        body = await _read_json(request)
        if not body.ok:
            return _json_response(body)
        payload = body.data or {}
        target, bad = _optional_int(payload, "target")
        if bad:
            return _json_response(bad)
        return _json_response(
            await migrations.arollback(target, use_backup=parse_bool(payload.get("use_backup"), default=True))
        )
