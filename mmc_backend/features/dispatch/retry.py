"""Per-file failure classification, single transient retry and issue logging."""
import asyncio
import os
from typing import Any, Awaitable, Callable, Optional

from ...shared import ErrorCode, Result, log_structured, sanitize_error_message

TRANSIENT_CODES = frozenset(
    {
        ErrorCode.IO_ERROR.value,
        ErrorCode.EXIFTOOL_ERROR.value,
        ErrorCode.FFPROBE_ERROR.value,
    }
)
TRANSIENT_RETRY_ATTEMPTS = 2
TRANSIENT_RETRY_BASE_DELAY_S = 0.05


def is_transient(result: Result[Any], file_path: str) -> bool:
    try:
        if not os.path.exists(file_path):
            return False
    except OSError:
        return False
    return str(result.code or "").strip().upper() in TRANSIENT_CODES


def result_from_exception(exc: BaseException, fallback: str = "Metadata extraction failed") -> Result[Any]:
    if isinstance(exc, PermissionError):
        code = ErrorCode.PERMISSION_DENIED
    elif isinstance(exc, FileNotFoundError):
        code = ErrorCode.NOT_FOUND
    elif isinstance(exc, OSError):
        code = ErrorCode.IO_ERROR
    else:
        code = ErrorCode.METADATA_FAILED
    return Result.Err(code, sanitize_error_message(exc, fallback))


def coerce_payload(value: Any) -> Result[bytes]:
    """Extractors may hand back a Result or raw bytes/str."""
    if isinstance(value, Result):
        if not value.ok:
            return value
        value = value.data
    if isinstance(value, (bytes, bytearray, memoryview)):
        return Result.Ok(bytes(value))
    if isinstance(value, str):
        return Result.Ok(value.encode("utf-8"))
    return Result.Err(ErrorCode.PARSE_ERROR, f"Extractor returned {type(value).__name__}, expected bytes")


async def acall_with_retry(
    file_path: str,
    call_once: Callable[[], Awaitable[Result[Any]]],
    *,
    attempts: int = TRANSIENT_RETRY_ATTEMPTS,
    on_failure: Optional[Callable[[Result[Any], bool], None]] = None,
) -> tuple[Result[Any], int]:
    """
    Run `call_once` and retry once on a transient failure.

    Returns the last result and the number of retries performed. `on_failure` sees every
    failed attempt together with whether it will be retried.
    """
    last: Optional[Result[Any]] = None
    retries = 0
    total = max(1, int(attempts))
    for attempt in range(total):
        last = await call_once()
        if last.ok:
            break
        will_retry = attempt < total - 1 and is_transient(last, file_path)
        if on_failure is not None:
            on_failure(last, will_retry)
        if not will_retry:
            break
        retries += 1
        await asyncio.sleep(TRANSIENT_RETRY_BASE_DELAY_S * (2 ** attempt))
    return (last if last is not None else Result.Err(ErrorCode.METADATA_FAILED, "No attempt made")), retries


def log_item_issue(
    logger,
    level: int,
    message: str,
    file_path: str,
    run_id: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    duration_seconds: Optional[float] = None,
) -> None:
    context: dict[str, Any] = {"file_path": file_path}
    if run_id:
        context["run_id"] = run_id
    if code:
        context["code"] = code
    if error:
        context["error"] = error
    if duration_seconds is not None:
        context["duration_seconds"] = round(float(duration_seconds), 3)
    log_structured(logger, level, message, **context)
