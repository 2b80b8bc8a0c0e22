import asyncio
import logging

import pytest

from mmc_backend.features.dispatch import ByteBudget, ProgressReporter, RunOutcome
from mmc_backend.features.dispatch.retry import (
    acall_with_retry,
    coerce_payload,
    is_transient,
    result_from_exception,
)
from mmc_backend.shared import ErrorCode, Result


def test_exit_codes():
    assert RunOutcome.SUCCESS.exit_code == 0
    assert RunOutcome.FATAL.exit_code == 1
    assert RunOutcome.PARTIAL_FAILURE.exit_code == 2


@pytest.mark.asyncio
async def test_byte_budget_blocks_until_release():
    budget = ByteBudget(100)
    await budget.acquire(60)
    waiter = asyncio.create_task(budget.acquire(60))
    await asyncio.sleep(0.01)
    assert not waiter.done()
    await budget.release(60)
    await asyncio.wait_for(waiter, timeout=1.0)
    assert budget.in_flight == 60


@pytest.mark.asyncio
async def test_byte_budget_admits_oversized_when_idle():
    budget = ByteBudget(10)
    async with budget.reserve(500):
        assert budget.in_flight == 500
    assert budget.in_flight == 0


def test_progress_reporter_swallows_callback_errors(caplog):
    def _bad(_event):
        raise RuntimeError("ui gone")

    reporter = ProgressReporter(2, _bad)
    with caplog.at_level(logging.DEBUG):
        first = reporter.advance(cache_hit=True)
        second = reporter.advance(skipped=True)
    assert (first.processed, second.processed) == (1, 2)
    assert (second.cache_hit, second.skipped) == (1, 1)
    assert second.percent == 100.0


def test_result_from_exception_mapping():
    assert result_from_exception(PermissionError("x")).code == ErrorCode.PERMISSION_DENIED.value
    assert result_from_exception(FileNotFoundError("x")).code == ErrorCode.NOT_FOUND.value
    assert result_from_exception(OSError("x")).code == ErrorCode.IO_ERROR.value
    assert result_from_exception(ValueError("x")).code == ErrorCode.METADATA_FAILED.value


def test_coerce_payload_variants():
    assert coerce_payload(b"x").data == b"x"
    assert coerce_payload("é").data == "é".encode("utf-8")
    assert coerce_payload(Result.Ok(b"y")).data == b"y"
    assert coerce_payload(Result.Err(ErrorCode.TIMEOUT, "slow")).code == ErrorCode.TIMEOUT.value
    assert coerce_payload({"a": 1}).code == ErrorCode.PARSE_ERROR.value


def test_missing_file_is_never_transient(tmp_path):
    err = Result.Err(ErrorCode.IO_ERROR, "x")
    assert not is_transient(err, str(tmp_path / "missing.jpg"))
    existing = tmp_path / "here.jpg"
    existing.write_bytes(b"x")
    assert is_transient(err, str(existing))
    assert not is_transient(Result.Err(ErrorCode.TIMEOUT, "x"), str(existing))


@pytest.mark.asyncio
async def test_call_with_retry_retries_transient_once(tmp_path):
    p = tmp_path / "a.jpg"
    p.write_bytes(b"x")
    seen = []

    async def _always_io():
        return Result.Err(ErrorCode.IO_ERROR, "busy")

    res, retries = await acall_with_retry(str(p), _always_io, on_failure=lambda r, again: seen.append(again))
    assert not res.ok
    assert retries == 1
    assert seen == [True, False]
