"""
Client-safe error text.

Messages that leave the process (route payloads, change summaries) must not expose the
media tree or the cache location, so absolute paths are collapsed to their file name.
Set `MMC_DEBUG=1` to get the raw exception text instead.
"""
from __future__ import annotations

import os
import re
from typing import Any

MAX_MESSAGE_CHARS = 200

_PATH_PATTERNS = (
    re.compile(r"[A-Za-z]:\\[^\s'\"]+"),
    re.compile(r"\\\\[^\s\\'\"]+\\[^\s'\"]+"),
    re.compile(r"(?<![A-Za-z0-9:/?&=#%])/(?!/)[^\s#?'\"]+"),
)


def is_debug_enabled() -> bool:
    return os.getenv("MMC_DEBUG", "").strip().lower() in ("1", "true", "yes", "on")


def _basename_of(match: re.Match) -> str:
    name = re.split(r"[\\/]", match.group(0).rstrip("\\/"))[-1]
    return f"[{name}]" if name else "[path]"


def redact_paths(text: str) -> str:
    """Replace every absolute path in `text` with `[<file name>]`."""
    for pattern in _PATH_PATTERNS:
        text = pattern.sub(_basename_of, text)
    return text


def sanitize_error_message(exc: Any, fallback: str) -> str:
    """
    `"<fallback>: <detail>"` with paths redacted, single-lined and truncated.

    Falls back to the exception class name when the exception has no text.
    """
    fallback = fallback or "An error occurred"
    if exc is None:
        return fallback
    raw = str(exc) or (type(exc).__name__ if isinstance(exc, BaseException) else "")
    if not raw:
        return fallback
    if is_debug_enabled():
        return f"{fallback}: {raw}"
    detail = " ".join(redact_paths(raw).split())
    return f"{fallback}: {detail[:MAX_MESSAGE_CHARS]}" if detail else fallback
