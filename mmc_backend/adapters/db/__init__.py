"""Database adapters."""
from .barrier import StoreBarrier
from .schema import CURRENT_SCHEMA_VERSION
from .sqlite import Sqlite

__all__ = ["Sqlite", "StoreBarrier", "CURRENT_SCHEMA_VERSION"]
