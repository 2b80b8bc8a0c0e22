"""
Progress counters and the in-flight byte ceiling.
"""
from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional

from ...shared import get_logger
from ...utils import format_eta

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    processed: int
    total: int
    cache_hit: int
    skipped: int
    eta: str
    elapsed_s: float = 0.0

    @property
    def percent(self) -> float:
        return 100.0 if self.total <= 0 else round(100.0 * self.processed / self.total, 1)


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressReporter:
    """Counts finished items and emits one event per item; `processed` only ever grows."""

    def __init__(self, total: int, callback: Optional[ProgressCallback] = None):
        self.total = max(0, int(total))
        self._callback = callback
        self._started = time.monotonic()
        self.processed = 0
        self.cache_hit = 0
        self.skipped = 0

    @property
    def elapsed_s(self) -> float:
        return time.monotonic() - self._started

    def advance(self, *, cache_hit: bool = False, skipped: bool = False) -> ProgressEvent:
        self.processed += 1
        if cache_hit:
            self.cache_hit += 1
        if skipped:
            self.skipped += 1
        elapsed = self.elapsed_s
        event = ProgressEvent(
            processed=self.processed,
            total=self.total,
            cache_hit=self.cache_hit,
            skipped=self.skipped,
            eta=format_eta(elapsed, self.processed, self.total),
            elapsed_s=elapsed,
        )
        if self._callback is not None:
            try:
                self._callback(event)
            except Exception as exc:
                logger.debug("Progress callback failed: %s", exc)
        return event


class ByteBudget:
    """
    Async ceiling on extracted bytes held between extraction and the cache write.

    The size is only known once the extractor returns, so a reservation is taken for a
    payload that is already in memory: the budget bounds how many finished payloads wait
    on the store at once, not the extractor's own working memory. Peak usage is at most
    the limit plus one in-progress payload per worker.

    A reservation larger than the whole budget is admitted once nothing else is held.
    """

    def __init__(self, limit_bytes: Optional[int]):
        self.limit = int(limit_bytes) if limit_bytes else 0
        self._in_flight = 0
        self._cond: Optional[asyncio.Condition] = None

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def _condition(self) -> asyncio.Condition:
        if self._cond is None:
            self._cond = asyncio.Condition()
        return self._cond

    def _fits(self, size: int) -> bool:
        if self.limit <= 0:
            return True
        return self._in_flight == 0 or self._in_flight + size <= self.limit

    async def acquire(self, size: int) -> None:
        size = max(0, int(size))
        cond = self._condition()
        async with cond:
            await cond.wait_for(lambda: self._fits(size))
            self._in_flight += size

    async def release(self, size: int) -> None:
        cond = self._condition()
        async with cond:
            self._in_flight = max(0, self._in_flight - max(0, int(size)))
            cond.notify_all()

    @asynccontextmanager
    async def reserve(self, size: int):
        await self.acquire(size)
        try:
            yield
        finally:
            await self.release(size)
