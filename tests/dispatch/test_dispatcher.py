import asyncio
import os
import time

import pytest

from mmc_backend.deps import build_services, shutdown_services
from mmc_backend.features.cache.models import FileStat
from mmc_backend.features.dispatch import RunOutcome
from mmc_backend.shared import ErrorCode, Result
from tests.fakes import FakeExtractor, set_mtime, write_media


async def _run(svc, items, scope="media", **kwargs):
    return await svc["dispatcher"].arun(items, scope, **kwargs)


async def _open(config, extractor):
    res = await build_services(config, extractor=extractor)
    assert res.ok, res.error
    return res.data


@pytest.mark.asyncio
async def test_touch_and_delete_scenario(services, fake_extractor, media_dir):
    a = write_media(media_dir, "A.jpg", b"jpeg bytes", mtime_s=1_600_000_000)
    b = write_media(media_dir, "B.mov", b"movie bytes", mtime_s=1_600_000_000)

    run1 = await _run(services, [a, b])
    assert run1.outcome == RunOutcome.SUCCESS and run1.exit_code == 0
    assert (run1.stats.new, run1.stats.extracted, run1.stats.cache_hit) == (2, 2, 0)
    summary1 = (await services["change_log"].asummary(run1.run_id)).data
    assert summary1["new"] == 2

    set_mtime(a, 1_600_000_500)
    run2 = await _run(services, [a, b])
    assert run2.outcome == RunOutcome.SUCCESS
    assert (run2.stats.unchanged, run2.stats.cache_hit, run2.stats.extracted) == (2, 2, 0)
    assert fake_extractor.calls_for(a) == 1
    assert fake_extractor.calls_for(b) == 1

    os.remove(b)
    run3 = await _run(services, [a])
    assert run3.outcome == RunOutcome.SUCCESS
    assert run3.stats.deleted == 1
    assert [(r.path, r.change_type.value) for r in run3.changes if r.change_type.value == "deleted"] == [(b, "deleted")]
    assert (await services["store"].aget(b)).data is None
    assert (await services["store"].asize()).data["entries"] == 1
    summary3 = (await services["change_log"].asummary(run3.run_id)).data
    assert (summary3["deleted"], summary3["unchanged"]) == (1, 1)


@pytest.mark.asyncio
async def test_second_run_without_changes_is_all_hits(services, fake_extractor, media_dir):
    paths = [write_media(media_dir, f"{i}.png", f"img-{i}".encode()) for i in range(6)]
    first = await _run(services, paths)
    before = {p: (await services["store"].aget(p, track_access=False)).data.metadata for p in paths}

    second = await _run(services, paths)
    assert second.stats.cache_hit == 6
    assert second.stats.extracted == 0
    assert len(fake_extractor.calls) == 6
    after = {p: (await services["store"].aget(p, track_access=False)).data.metadata for p in paths}
    assert after == before
    assert first.stats.extracted == 6


@pytest.mark.asyncio
async def test_same_size_content_change_is_reextracted(services, fake_extractor, media_dir):
    p = write_media(media_dir, "a.jpg", b"AAAA", mtime_s=1_600_000_000)
    await _run(services, [p])
    old = (await services["store"].aget(p)).data.metadata

    write_media(media_dir, "a.jpg", b"BBBB", mtime_s=1_600_000_001)
    run = await _run(services, [p])
    assert run.stats.content_changed == 1
    assert run.stats.extracted == 1
    assert fake_extractor.calls_for(p) == 2
    assert (await services["store"].aget(p)).data.metadata != old


@pytest.mark.asyncio
async def test_hash_check_off_reports_modified(cache_config, fake_extractor, media_dir):
    svc = await _open(cache_config.with_overrides(hash_check=False), fake_extractor)
    try:
        p = write_media(media_dir, "a.jpg", b"same", mtime_s=1_600_000_000)
        await _run(svc, [p])
        set_mtime(p, 1_600_000_100)
        run = await _run(svc, [p])
        assert run.stats.modified == 1
        assert fake_extractor.calls_for(p) == 2
    finally:
        await shutdown_services(svc)


@pytest.mark.asyncio
async def test_results_do_not_depend_on_worker_count(cache_config, tmp_path, media_dir):
    paths = [write_media(media_dir, f"f{i:02d}.jpg", os.urandom(64) + bytes([i])) for i in range(12)]
    snapshots = []
    for workers in (1, 4, "auto"):
        cfg = cache_config.with_overrides(db_path=tmp_path / f"w_{workers}.db", workers=workers, batch_size=5)
        svc = await _open(cfg, FakeExtractor())
        try:
            run = await _run(svc, list(reversed(paths)))
            assert run.outcome == RunOutcome.SUCCESS
            rows = await svc["db"].aquery(
                "SELECT m.path, m.hash, m.metadata_blob, f.size, f.modified_time "
                "FROM metadata m JOIN file_info f ON f.path = m.path ORDER BY m.path"
            )
            snapshots.append([(r["path"], r["hash"], bytes(r["metadata_blob"]), r["size"], r["modified_time"]) for r in rows.data])
            summary = (await svc["change_log"].asummary(run.run_id)).data
            assert summary["new"] == 12
        finally:
            await shutdown_services(svc)
    assert snapshots[0] == snapshots[1] == snapshots[2]
    assert len(snapshots[0]) == 12


@pytest.mark.asyncio
async def test_failed_file_is_skipped_and_run_continues(services, fake_extractor, media_dir):
    good = write_media(media_dir, "good.jpg", b"ok")
    bad = write_media(media_dir, "bad.jpg", b"broken")
    fake_extractor.failures[bad] = [ErrorCode.PARSE_ERROR.value]

    run = await _run(services, [good, bad])
    assert run.outcome == RunOutcome.PARTIAL_FAILURE
    assert run.exit_code == 2
    assert (run.stats.skipped, run.stats.errors, run.stats.retried) == (1, 1, 0)
    assert fake_extractor.calls_for(bad) == 1
    assert (await services["store"].aget(bad)).data is None
    assert (await services["store"].aget(good)).data is not None


@pytest.mark.asyncio
async def test_transient_failure_is_retried_once(services, fake_extractor, media_dir):
    p = write_media(media_dir, "flaky.jpg", b"flaky")
    fake_extractor.failures[p] = [ErrorCode.IO_ERROR.value]
    run = await _run(services, [p])
    assert run.outcome == RunOutcome.SUCCESS
    assert run.stats.retried == 1
    assert run.stats.errors == 1
    assert fake_extractor.calls_for(p) == 2
    assert (await services["store"].aget(p)).data is not None


@pytest.mark.asyncio
async def test_transient_failure_twice_is_skipped(services, fake_extractor, media_dir):
    p = write_media(media_dir, "dead.jpg", b"dead")
    fake_extractor.failures[p] = [ErrorCode.EXIFTOOL_ERROR.value] * 3
    run = await _run(services, [p])
    assert run.outcome == RunOutcome.PARTIAL_FAILURE
    assert fake_extractor.calls_for(p) == 2
    assert run.stats.skipped == 1


@pytest.mark.asyncio
async def test_extractor_exception_becomes_skip(services, fake_extractor, media_dir):
    p = write_media(media_dir, "boom.jpg", b"boom")
    fake_extractor.raise_for[p] = RuntimeError("decoder crashed")
    run = await _run(services, [p])
    assert run.outcome == RunOutcome.PARTIAL_FAILURE
    assert run.stats.skipped == 1


@pytest.mark.asyncio
async def test_slow_extraction_times_out(cache_config, fake_extractor, media_dir):
    svc = await _open(cache_config.with_overrides(extract_timeout_s=0.2), fake_extractor)
    try:
        slow = write_media(media_dir, "slow.mov", b"slow")
        fast = write_media(media_dir, "fast.mov", b"fast")
        fake_extractor.delays[slow] = 1.0
        run = await _run(svc, [slow, fast])
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.stats.skipped == 1
        assert fake_extractor.calls_for(slow) == 1
        assert (await svc["store"].aget(fast)).data is not None
    finally:
        await shutdown_services(svc)


@pytest.mark.asyncio
async def test_hung_extractions_do_not_hold_up_other_files(cache_config, fake_extractor, media_dir):
    svc = await _open(cache_config.with_overrides(workers=1, extract_timeout_s=0.2), fake_extractor)
    try:
        hung = [write_media(media_dir, f"hung{i}.mov", f"h{i}".encode()) for i in range(2)]
        fast = write_media(media_dir, "fast.jpg", b"fast")
        for p in hung:
            fake_extractor.delays[p] = 3.0
        started = time.monotonic()
        run = await _run(svc, [*hung, fast])
        elapsed = time.monotonic() - started
        assert elapsed < 1.5
        assert run.stats.skipped == 2
        assert (await svc["store"].aget(fast)).data is not None
        assert [fake_extractor.calls_for(p) for p in hung] == [1, 1]
    finally:
        await shutdown_services(svc)


@pytest.mark.asyncio
async def test_missing_and_duplicate_items(services, fake_extractor, media_dir):
    p = write_media(media_dir, "a.jpg", b"a")
    missing = str(media_dir / "missing.jpg")
    run = await _run(services, [p, p, FileStat.from_path(p), missing])
    assert run.stats.total == 2
    assert run.stats.skipped == 1
    assert fake_extractor.calls_for(p) == 1
    assert [fp.path for fp in (await services["tracker"].asnapshot("media")).data] == [p]


@pytest.mark.asyncio
async def test_cancel_keeps_written_entries_and_prior_snapshot(cache_config, fake_extractor, media_dir):
    svc = await _open(cache_config.with_overrides(workers=1, batch_size=1), fake_extractor)
    try:
        paths = [write_media(media_dir, f"{i}.jpg", f"x{i}".encode()) for i in range(5)]
        cancel = asyncio.Event()

        def _on_progress(event):
            if event.processed >= 1:
                cancel.set()

        run = await _run(svc, paths, progress=_on_progress, cancel=cancel)
        assert run.outcome == RunOutcome.PARTIAL_FAILURE
        assert run.code == ErrorCode.CANCELLED.value
        assert run.exit_code == 2
        assert run.stats.cancelled is True
        assert 1 <= run.stats.processed < 5
        assert (await svc["store"].asize()).data["entries"] == run.stats.extracted
        assert (await svc["tracker"].asnapshot("media")).data == []
    finally:
        await shutdown_services(svc)


@pytest.mark.asyncio
async def test_unreadable_existing_file_keeps_its_entry(services, fake_extractor, media_dir, monkeypatch):
    p = write_media(media_dir, "a.jpg", b"AAAA", mtime_s=1_600_000_000)
    other = write_media(media_dir, "b.jpg", b"BBBB", mtime_s=1_600_000_000)
    await _run(services, [p, other])

    def _denied(path):
        raise PermissionError(13, "Permission denied", path)

    set_mtime(p, 1_600_000_100)
    tracker = services["tracker"]
    original_hasher = tracker._hasher
    monkeypatch.setattr(tracker, "_hasher", _denied)
    run = await _run(services, [p, other])
    assert run.outcome == RunOutcome.PARTIAL_FAILURE
    assert (run.stats.skipped, run.stats.deleted) == (1, 0)
    assert not [r for r in run.changes if r.change_type.value == "deleted"]
    assert (await services["store"].aget(p)).data is not None
    assert sorted(fp.path for fp in (await tracker.asnapshot("media")).data) == sorted([p, other])

    monkeypatch.setattr(tracker, "_hasher", original_hasher)
    set_mtime(p, 1_600_000_000)
    again = await _run(services, [p, other])
    assert again.outcome == RunOutcome.SUCCESS
    assert (again.stats.unchanged, again.stats.cache_hit) == (2, 2)
    assert fake_extractor.calls_for(p) == 1


@pytest.mark.asyncio
async def test_blocked_store_is_fatal(services, fake_extractor, media_dir):
    p = write_media(media_dir, "a.jpg", b"a")
    services["gate"].block(ErrorCode.SCHEMA_MISMATCH, "testing")
    run = await _run(services, [p])
    assert run.outcome == RunOutcome.FATAL
    assert run.exit_code == 1
    assert run.code == ErrorCode.SCHEMA_MISMATCH.value
    assert fake_extractor.calls == []
    services["gate"].clear()


@pytest.mark.asyncio
async def test_store_write_failure_stops_run(services, fake_extractor, media_dir, monkeypatch):
    paths = [write_media(media_dir, f"{i}.jpg", b"x") for i in range(3)]

    async def _broken_put(*_args, **_kwargs):
        return Result.Err(ErrorCode.DB_ERROR, "disk I/O error")

    monkeypatch.setattr(services["store"], "aput", _broken_put)
    run = await _run(services, paths)
    assert run.outcome == RunOutcome.FATAL
    assert run.code == ErrorCode.DB_ERROR.value
    assert (await services["tracker"].asnapshot("media")).data == []


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_complete(services, media_dir):
    paths = [write_media(media_dir, f"{i}.jpg", f"p{i}".encode()) for i in range(8)]
    events = []
    run = await _run(services, paths, progress=events.append)
    assert run.outcome == RunOutcome.SUCCESS
    processed = [e.processed for e in events]
    assert processed == sorted(processed)
    assert processed[-1] == 8
    assert events[-1].percent == 100.0
    assert run.to_dict()["exit_code"] == 0
