"""
Route registration system.
Coordinates the route handlers and registers them on an aiohttp app.
"""
from __future__ import annotations

from aiohttp import web

from ..shared import get_logger
from .handlers import register_cache_maintenance_routes

logger = get_logger(__name__)

API_PREFIX = "/mmc/"
APP_KEY_SERVICES: web.AppKey[dict] = web.AppKey("mmc_services", dict)


def register_all_routes(services: dict) -> web.RouteTableDef:
    """Build the RouteTableDef for every handler module, bound to `services`."""
    routes = web.RouteTableDef()
    register_cache_maintenance_routes(routes, services)
    logger.debug("Registered %d routes under %s", len(routes), API_PREFIX)
    return routes


def register_routes(app: web.Application, services: dict) -> None:
    app[APP_KEY_SERVICES] = services
    app.add_routes(register_all_routes(services))


def create_app(services: dict) -> web.Application:
    app = web.Application()
    register_routes(app, services)
    return app
