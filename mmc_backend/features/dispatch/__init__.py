"""Parallel extraction runs over the cache."""
from .dispatcher import Dispatcher
from .models import RunOutcome, RunResult, RunStats
from .progress import ByteBudget, ProgressEvent, ProgressReporter

__all__ = [
    "ByteBudget",
    "Dispatcher",
    "ProgressEvent",
    "ProgressReporter",
    "RunOutcome",
    "RunResult",
    "RunStats",
]
