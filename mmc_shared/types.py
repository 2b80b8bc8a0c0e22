"""
Shared types, enums, and constants.
"""
import os
from enum import Enum
from typing import Final, Literal

# File type classifications
FileKind = Literal["image", "video", "unknown"]


# Error codes
class ErrorCode(str, Enum):
    """Standardized error codes (string enum)."""

    # Client / validation
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    # Feature / service availability
    UNSUPPORTED = "UNSUPPORTED"
    TOOL_MISSING = "TOOL_MISSING"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Server / infrastructure
    DB_ERROR = "DB_ERROR"
    IO_ERROR = "IO_ERROR"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"

    # Schema lifecycle
    SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
    SCHEMA_TOO_NEW = "SCHEMA_TOO_NEW"
    MIGRATION_FAILED = "MIGRATION_FAILED"
    MIGRATION_IN_PROGRESS = "MIGRATION_IN_PROGRESS"
    ROLLBACK_REFUSED = "ROLLBACK_REFUSED"

    # Snapshot operations
    BACKUP_FAILED = "BACKUP_FAILED"
    RESTORE_FAILED = "RESTORE_FAILED"

    # Extraction
    METADATA_FAILED = "METADATA_FAILED"

    # Tool / parsing
    EXIFTOOL_ERROR = "EXIFTOOL_ERROR"
    FFPROBE_ERROR = "FFPROBE_ERROR"
    PARSE_ERROR = "PARSE_ERROR"


class ChangeType(str, Enum):
    """Per-run classification of a path against the previous snapshot."""

    NEW = "new"
    MODIFIED = "modified"
    DELETED = "deleted"
    CONTENT_CHANGED = "content_changed"
    UNCHANGED = "unchanged"


# File extensions by type
EXTENSIONS: Final[dict[FileKind, set[str]]] = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp", ".heic", ".heif"},
    "video": {".mp4", ".avi", ".mov", ".mkv", ".wmv", ".flv", ".webm", ".m4v", ".3gp", ".mpg", ".mpeg"},
    "unknown": set(),
}


def classify_file(filename: str) -> FileKind:
    """
    Classify file by extension.

    Args:
        filename: File name or path

    Returns:
        File kind (image, video, unknown)
    """
    ext = os.path.splitext(filename)[1].lower()

    for kind, exts in EXTENSIONS.items():
        if ext in exts:
            return kind

    return "unknown"
