"""Backend-facing alias for shared utilities."""

from __future__ import annotations

from mmc_shared import (
    EXTENSIONS,
    ChangeType,
    ErrorCode,
    FileKind,
    Result,
    bind_run_id,
    classify_file,
    get_logger,
    log_structured,
    log_success,
    now,
    run_id_var,
    sanitize_error_message,
)

__all__ = [
    "Result",
    "ErrorCode",
    "ChangeType",
    "get_logger",
    "log_success",
    "log_structured",
    "run_id_var",
    "bind_run_id",
    "classify_file",
    "FileKind",
    "EXTENSIONS",
    "sanitize_error_message",
    "now",
]
