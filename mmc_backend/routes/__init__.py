"""
HTTP maintenance routes for the metadata cache.
Importing this package is side-effect free; route registration is explicit.
"""
from .registry import APP_KEY_SERVICES, create_app, register_all_routes, register_routes

__all__ = ["APP_KEY_SERVICES", "create_app", "register_all_routes", "register_routes"]
