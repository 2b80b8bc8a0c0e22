"""
Core utilities for route handlers.
"""
from .request_json import _read_json
from .response import _json_response, _sanitize_json_payload

__all__ = [
    "_json_response",
    "_read_json",
    "_sanitize_json_payload",
]
