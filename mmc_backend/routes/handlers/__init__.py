"""Route handler modules."""
from .cache_maintenance import register_cache_maintenance_routes

__all__ = ["register_cache_maintenance_routes"]
