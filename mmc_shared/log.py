"""
Logging for the cache: one prefixed, emoji-tagged line per record, with the id of the
extraction run that produced it when one is bound.
"""
import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Final, Iterator

LEVEL_EMOJI: Final[dict[str, str]] = {
    "DEBUG": "🔍",
    "INFO": "ℹ️",
    "WARNING": "⚠️",
    "ERROR": "❌",
    "CRITICAL": "🔥",
    "SUCCESS": "✅",
}

PREFIX: Final[str] = "📂 MMC"
LOGGER_ROOT: Final[str] = "mmc"
RUN_ID_DISPLAY_CHARS: Final[int] = 8

SUCCESS_LEVEL: Final[int] = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")

run_id_var: ContextVar[str] = ContextVar("mmc_run_id", default="")


@contextmanager
def bind_run_id(run_id: str) -> Iterator[None]:
    """Tag every record logged in this context (and tasks spawned from it) with `run_id`."""
    token = run_id_var.set(str(run_id or ""))
    try:
        yield
    finally:
        run_id_var.reset(token)


class RunContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = run_id_var.get()
        return True


class RunLineFormatter(logging.Formatter):
    """`📂 MMC [✅] cache.store [run 1a2b3c4d]: message`"""

    def format(self, record: logging.LogRecord) -> str:
        emoji = LEVEL_EMOJI.get(record.levelname, "📂")
        run_id = str(getattr(record, "run_id", "") or "")
        run_part = f" [run {run_id[:RUN_ID_DISPLAY_CHARS]}]" if run_id else ""
        line = f"{PREFIX} [{emoji}] {record.name}{run_part}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _short_name(name: str) -> str:
    if name.startswith("__main__"):
        return "main"
    head, _, rest = name.partition(".")
    if head in ("mmc_backend", "mmc_shared") and rest:
        return rest
    return name


def _default_level() -> int:
    raw = str(os.environ.get("MMC_LOG_LEVEL") or "").strip().upper()
    level = logging.getLevelName(raw) if raw else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Logger under the `mmc.` namespace with the run-aware line format.

    The level defaults to `MMC_LOG_LEVEL` (INFO when unset). Handlers are attached once
    per logger and propagation is off, so records are not printed twice.
    """
    logger = logging.getLogger(f"{LOGGER_ROOT}.{_short_name(name)}")
    if not any(isinstance(f, RunContextFilter) for f in logger.filters):
        logger.addFilter(RunContextFilter())

    if level is not None:
        logger.setLevel(level)
    elif not logger.handlers:
        logger.setLevel(_default_level())

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(RunLineFormatter())
        logger.addHandler(handler)
        logger.propagate = False
    return logger


def log_success(logger: logging.Logger, message: str) -> None:
    logger.log(SUCCESS_LEVEL, message)


def log_structured(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """
    Emit one JSON line: `{message, timestamp, context}`.

    The bound run id is added to the context unless the caller passes its own.
    """
    run_id = run_id_var.get()
    if run_id and "run_id" not in context:
        context["run_id"] = run_id
    payload = {
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "context": context,
    }
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
