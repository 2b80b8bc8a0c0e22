"""
SQLite error classification and identifier safety helpers.
"""
import re
import sqlite3
from contextlib import closing
from pathlib import Path

from ...shared import get_logger

logger = get_logger(__name__)
_SAFE_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_safe_identifier(value: str) -> bool:
    return bool(_SAFE_IDENTIFIER_RE.match(str(value or "")))


def quoted_identifier(value: str) -> str:
    if not is_safe_identifier(value):
        raise ValueError(f"Invalid identifier: {value!r}")
    safe = str(value).replace('"', '""')
    return f'"{safe}"'


def is_locked_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return (
        "database is locked" in msg
        or "database table is locked" in msg
        or "database schema is locked" in msg
        or "sqlite_busy" in msg
    )


def is_malformed_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return (
        "database disk image is malformed" in msg
        or "malformed database schema" in msg
        or "file is not a database" in msg
    )


def probe_store_file(path: Path) -> tuple[bool, str, set[str]]:
    """
    Open a candidate store file read-only and run a quick check.

    Returns (ok, message, table_names). Used before a file replaces the live store.
    """
    if not path.exists() or not path.is_file():
        return False, "file not found", set()
    try:
        uri = f"{path.resolve().as_uri()}?mode=ro"
        with closing(sqlite3.connect(uri, uri=True)) as conn:
            row = conn.execute("PRAGMA quick_check").fetchone()
            verdict = str(row[0]) if row else ""
            tables = {
                str(r[0])
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            }
    except sqlite3.DatabaseError as exc:
        logger.warning("Store probe failed for %s: %s", path, exc)
        return False, str(exc), set()
    if verdict.lower() != "ok":
        return False, verdict or "quick_check failed", tables
    return True, "ok", tables
