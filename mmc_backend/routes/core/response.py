"""
JSON responses for the maintenance routes.

Every handler answers HTTP 200 with the Result wire shape `{ok, data, error, code, meta}`;
clients branch on `ok` and `code` (a blocked schema is `SCHEMA_MISMATCH`, not a 5xx).
"""
import base64
import json
import math
from enum import Enum
from pathlib import PurePath

from aiohttp import web

from ...shared import Result


def _json_response(result: Result, status: int = 200) -> web.Response:
    payload = _sanitize_json_payload(result.to_dict())
    return web.json_response(payload, status=status, dumps=json.dumps)


def _sanitize_json_payload(value):
    """
    Make `value` strict-JSON serializable.

    Non-finite floats become None, paths become strings, enums their value, bytes are
    base64 encoded, and objects exposing `to_dict()` (run results, change records,
    fingerprints) are expanded.
    """
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, PurePath):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {str(k): _sanitize_json_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize_json_payload(v) for v in value]
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return _sanitize_json_payload(to_dict())
    return value
