"""
Bounded parallel extraction driven through the cache.

For every candidate file: stat, classify against the previous run, ask the invalidation
manager whether the cached entry is reusable, and extract + store on a miss. Per-file
failures are logged and skipped; store-level failures stop the run.

Stat and hashing run on an I/O pool, extraction on its own pool. An extraction that
outlives `extract_timeout_s` is abandoned together with its pool: later files go to a
fresh pool, so a hung extractor costs one thread, not the run.

A file that is still present but cannot be fingerprinted keeps its previous snapshot row
(and so its cache entry); only files the walker no longer supplies, or that are gone,
become Deleted.

`max_inflight_bytes` caps finished payloads waiting on the store write, see `ByteBudget`.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Protocol, Union

from ...config import CacheConfig
from ...shared import ErrorCode, Result, bind_run_id, classify_file, get_logger, log_structured, log_success
from ..cache.invalidation import InvalidationManager
from ..cache.models import ChangeRecord, FileStat, Fingerprint
from ..cache.store import CacheStore
from ..fingerprint.change_log import ChangeLog
from ..fingerprint.hashing import chunked, sha256_file, to_file_stat
from ..fingerprint.tracker import FingerprintTracker, TrackerRun
from .models import RunOutcome, RunResult, RunStats
from .progress import ByteBudget, ProgressCallback, ProgressReporter
from .retry import acall_with_retry, coerce_payload, log_item_issue, result_from_exception

logger = get_logger(__name__)

Item = Union[str, os.PathLike, FileStat]


class Extractor(Protocol):
    def extract(self, path: str) -> Union[Result[bytes], bytes]:
        ...


@dataclass
class _RunContext:
    run: TrackerRun
    stats: RunStats
    reporter: ProgressReporter
    budget: ByteBudget
    cancel: asyncio.Event
    io_executor: ThreadPoolExecutor
    extract_executor: ThreadPoolExecutor
    slots: asyncio.Semaphore
    workers: int
    fatal: Optional[Result[Any]] = None
    records: List[ChangeRecord] = field(default_factory=list)
    kept: List[Fingerprint] = field(default_factory=list)
    abandoned: int = 0

    def abort(self, result: Result[Any]) -> None:
        if self.fatal is None:
            self.fatal = result
        self.cancel.set()

    def retire_extract_executor(self, executor: ThreadPoolExecutor) -> None:
        """Replace the extraction pool after a timeout; the stuck thread finishes on its own."""
        if self.extract_executor is not executor:
            return
        self.abandoned += 1
        self.extract_executor = _extract_pool(self.workers)
        executor.shutdown(wait=False)

    def shutdown(self) -> None:
        self.io_executor.shutdown(wait=False, cancel_futures=True)
        self.extract_executor.shutdown(wait=False, cancel_futures=True)


def _extract_pool(workers: int) -> ThreadPoolExecutor:
    return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mmc-extract")


def _item_path(item: Item) -> str:
    return item.path if isinstance(item, FileStat) else os.fspath(item)


class Dispatcher:
    def __init__(
        self,
        store: CacheStore,
        invalidation: InvalidationManager,
        tracker: FingerprintTracker,
        change_log: ChangeLog,
        extractor: Extractor,
        config: CacheConfig,
    ):
        self._store = store
        self._invalidation = invalidation
        self._tracker = tracker
        self._change_log = change_log
        self._extractor = extractor
        self._config = config

    async def arun(
        self,
        items: Iterable[Item],
        scope: str,
        progress: Optional[ProgressCallback] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RunResult:
        cancel = cancel or asyncio.Event()
        unique: dict[str, Item] = {}
        for item in items:
            unique.setdefault(_item_path(item), item)
        work = list(unique.values())
        stats = RunStats(total=len(work))
        started = time.monotonic()

        blocked = self._store.gate.check()
        if blocked is not None:
            return self._fatal(stats, blocked, started, run_id=None)

        begun = await self._tracker.abegin_run(scope)
        if not begun.ok:
            return self._fatal(stats, begun, started, run_id=None)
        run = begun.data

        workers = self._config.worker_count
        ctx = _RunContext(
            run=run,
            stats=stats,
            reporter=ProgressReporter(len(work), progress),
            budget=ByteBudget(self._config.max_inflight_bytes),
            cancel=cancel,
            io_executor=ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mmc-io"),
            extract_executor=_extract_pool(workers),
            slots=asyncio.Semaphore(workers),
            workers=workers,
        )
        logger.info(
            "Run %s started: %d files, scope=%s, workers=%d, batch=%d",
            run.run_id,
            len(work),
            scope,
            workers,
            self._config.batch_size,
        )
        with bind_run_id(run.run_id):
            try:
                for batch in chunked(work, self._config.batch_size):
                    if cancel.is_set():
                        break
                    await self._arun_batch(ctx, batch)
            finally:
                ctx.shutdown()
            return await self._afinish(ctx, started)

    async def _arun_batch(self, ctx: _RunContext, batch: List[Item]) -> None:
        paths = [_item_path(i) for i in batch]
        prior_res = await self._tracker.aprior_for(ctx.run, paths)
        if not prior_res.ok:
            ctx.abort(prior_res)
            return
        prior = prior_res.data or {}
        outcomes = await asyncio.gather(
            *(self._aprocess(ctx, item, prior.get(_item_path(item))) for item in batch)
        )
        staged = [r for r in outcomes if r is not None]
        kept, ctx.kept = ctx.kept, []
        if ctx.fatal is not None:
            return
        stage_res = await self._tracker.astage(ctx.run, staged, kept=kept)
        if not stage_res.ok:
            ctx.abort(stage_res)
            return
        ctx.records.extend(staged)

    async def _aprocess(self, ctx: _RunContext, item: Item, prior: Optional[Fingerprint]) -> Optional[ChangeRecord]:
        async with ctx.slots:
            if ctx.cancel.is_set():
                return None
            return await self._aprocess_one(ctx, item, prior)

    async def _aprocess_one(self, ctx: _RunContext, item: Item, prior: Optional[Fingerprint]) -> Optional[ChangeRecord]:
        path = _item_path(item)
        loop = asyncio.get_running_loop()
        stats = ctx.stats

        def _note_failure(result: Result[Any], will_retry: bool) -> None:
            stats.errors += 1
            log_item_issue(
                logger,
                logging.DEBUG if will_retry else logging.WARNING,
                "Retrying after transient failure" if will_retry else "File skipped",
                path,
                run_id=ctx.run.run_id,
                code=result.code,
                error=result.error,
            )

        async def _classify_once() -> Result[ChangeRecord]:
            try:
                stat = await loop.run_in_executor(ctx.io_executor, to_file_stat, item)
                record = await self._tracker.aclassify(ctx.run, Fingerprint.from_stat(stat), prior, ctx.io_executor)
            except Exception as exc:
                return result_from_exception(exc, "Failed to fingerprint file")
            return Result.Ok(record)

        classified, retries = await acall_with_retry(path, _classify_once, on_failure=_note_failure)
        stats.retried += retries
        if not classified.ok:
            if prior is not None and not classified.is_code(ErrorCode.NOT_FOUND):
                ctx.kept.append(prior)
            self._skip(ctx)
            return None
        record: ChangeRecord = classified.data
        stats.count_change(record.change_type)

        check = await self._invalidation.acheck(record.current)
        if not check.ok:
            log_structured(logger, logging.ERROR, "Cache store unusable, stopping run", code=check.code, error=check.error)
            ctx.abort(check)
            return None
        if check.data is not None:
            stats.processed += 1
            ctx.reporter.advance(cache_hit=True)
            stats.cache_hit += 1
            return record

        async def _extract_once() -> Result[bytes]:
            t0 = time.perf_counter()
            executor = ctx.extract_executor
            try:
                raw = await asyncio.wait_for(
                    loop.run_in_executor(executor, self._extractor.extract, path),
                    timeout=float(self._config.extract_timeout_s),
                )
            except asyncio.TimeoutError:
                ctx.retire_extract_executor(executor)
                return Result.Err(
                    ErrorCode.TIMEOUT,
                    f"Extraction exceeded {self._config.extract_timeout_s:g}s",
                    duration_seconds=time.perf_counter() - t0,
                )
            except Exception as exc:
                return result_from_exception(exc)
            return coerce_payload(raw)

        extracted, retries = await acall_with_retry(path, _extract_once, on_failure=_note_failure)
        stats.retried += retries
        if not extracted.ok:
            self._skip(ctx)
            return record

        fingerprint = record.current
        if fingerprint.hash is None and self._config.hash_on_write:
            try:
                fingerprint = fingerprint.with_hash(await loop.run_in_executor(ctx.io_executor, sha256_file, path))
            except OSError as exc:
                _note_failure(result_from_exception(exc, "Failed to hash file"), False)
                self._skip(ctx)
                return record

        payload: bytes = extracted.data or b""
        async with ctx.budget.reserve(len(payload)):
            put = await self._store.aput(fingerprint, payload, file_type=classify_file(path))
        if not put.ok:
            if put.is_code(ErrorCode.INVALID_INPUT):
                _note_failure(put, False)
                self._skip(ctx)
                return record
            log_structured(logger, logging.ERROR, "Cache write failed, stopping run", code=put.code, error=put.error)
            ctx.abort(put)
            return None
        stats.extracted += 1
        stats.processed += 1
        ctx.reporter.advance()
        return record

    @staticmethod
    def _skip(ctx: _RunContext) -> None:
        ctx.stats.skipped += 1
        ctx.stats.processed += 1
        ctx.reporter.advance(skipped=True)

    async def _afinish(self, ctx: _RunContext, started: float) -> RunResult:
        stats = ctx.stats
        run = ctx.run
        if ctx.fatal is not None:
            await self._tracker.acancel_run(run)
            return self._fatal(stats, ctx.fatal, started, run_id=run.run_id)

        if ctx.cancel.is_set():
            await self._tracker.acancel_run(run)
            stats.cancelled = True
            stats.elapsed_s = time.monotonic() - started
            logger.warning(
                "Run %s cancelled after %d/%d files (written entries kept)", run.run_id, stats.processed, stats.total
            )
            return RunResult(
                RunOutcome.PARTIAL_FAILURE,
                stats,
                reason="cancelled",
                code=ErrorCode.CANCELLED.value,
                run_id=run.run_id,
                changes=list(ctx.records),
            )

        finished = await self._tracker.afinish_run(run)
        if not finished.ok:
            return self._fatal(stats, finished, started, run_id=run.run_id)
        deleted = finished.data or []
        for record in deleted:
            stats.count_change(record.change_type)
            inv = await self._store.ainvalidate(record.path)
            if not inv.ok:
                return self._fatal(stats, inv, started, run_id=run.run_id)

        changes = list(ctx.records) + list(deleted)
        logged = await self._change_log.arecord(run, changes)
        if not logged.ok:
            return self._fatal(stats, logged, started, run_id=run.run_id)

        stats.elapsed_s = time.monotonic() - started
        outcome = RunOutcome.SUCCESS if stats.skipped == 0 else RunOutcome.PARTIAL_FAILURE
        log_structured(logger, logging.INFO, "Run finished", run_id=run.run_id, outcome=outcome.value, **stats.to_dict())
        if outcome == RunOutcome.SUCCESS:
            log_success(
                logger,
                f"Run complete: {stats.processed} processed, {stats.cache_hit} cached, {stats.extracted} extracted",
            )
        else:
            logger.warning("Run complete with %d skipped files (%d errors)", stats.skipped, stats.errors)
        if ctx.abandoned:
            logger.warning("%d timed-out extractions left running in the background", ctx.abandoned)
        return RunResult(
            outcome,
            stats,
            reason=None if outcome == RunOutcome.SUCCESS else f"{stats.skipped} files skipped",
            run_id=run.run_id,
            changes=changes,
        )

    @staticmethod
    def _fatal(stats: RunStats, result: Result[Any], started: float, run_id: Optional[str]) -> RunResult:
        stats.elapsed_s = time.monotonic() - started
        reason = str(result.error or "Run aborted")
        logger.error("Run aborted [%s]: %s", result.code, reason)
        return RunResult(RunOutcome.FATAL, stats, reason=reason, code=str(result.code), run_id=run_id)
