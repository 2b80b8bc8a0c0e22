"""
Safe JSON request parsing with a size limit.

Never raises to handlers (returns Result).
"""
from __future__ import annotations

import json
from typing import Any

from aiohttp import web

from ...shared import ErrorCode, Result

MAX_JSON_BYTES = 1024 * 1024
REQUEST_STREAM_CHUNK_BYTES = 64 * 1024


async def _read_json(request: web.Request, *, max_bytes: int = MAX_JSON_BYTES) -> Result[dict]:
    """Read an optional JSON object body; an empty body is ``{}``."""
    declared = request.content_length
    if declared is not None and declared > max_bytes:
        return Result.Err(ErrorCode.INVALID_INPUT, f"JSON body too large ({declared} > {max_bytes})")
    buf = bytearray()
    async for chunk in request.content.iter_chunked(REQUEST_STREAM_CHUNK_BYTES):
        buf.extend(chunk)
        if len(buf) > max_bytes:
            return Result.Err(ErrorCode.INVALID_INPUT, f"JSON body too large (> {max_bytes})")
    if not buf.strip():
        return Result.Ok({})
    try:
        parsed: Any = json.loads(bytes(buf).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid JSON body: {exc}")
    if not isinstance(parsed, dict):
        return Result.Err(ErrorCode.INVALID_INPUT, "JSON body must be an object")
    return Result.Ok(parsed)
