"""Shared utilities for the media metadata cache."""
from .errors import sanitize_error_message
from .log import bind_run_id, get_logger, log_structured, log_success, run_id_var
from .result import Result
from .time import now
from .types import EXTENSIONS, ChangeType, ErrorCode, FileKind, classify_file

__all__ = [
    "Result",
    "get_logger",
    "log_success",
    "log_structured",
    "run_id_var",
    "bind_run_id",
    "now",
    "FileKind",
    "ErrorCode",
    "ChangeType",
    "EXTENSIONS",
    "classify_file",
    "sanitize_error_message",
]
