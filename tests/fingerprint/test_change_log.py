import pytest

from mmc_backend.features.cache.models import ChangeRecord, Fingerprint
from mmc_backend.shared import ChangeType, ErrorCode


async def _log_run(services, scope, changes):
    tracker = services["tracker"]
    run = (await tracker.abegin_run(scope)).data
    records = [
        ChangeRecord(path, change, None, Fingerprint(path, 1, 1), run.started_at) for path, change in changes
    ]
    res = await services["change_log"].arecord(run, records)
    assert res.ok and res.data == len(records)
    return run


@pytest.mark.asyncio
async def test_list_and_filter(services):
    run = await _log_run(
        services,
        "s",
        [("/m/a.jpg", ChangeType.NEW), ("/m/b.jpg", ChangeType.UNCHANGED), ("/m/c.jpg", ChangeType.NEW)],
    )
    log = services["change_log"]
    rows = (await log.alist(run.run_id)).data
    assert [r["path"] for r in rows] == ["/m/a.jpg", "/m/b.jpg", "/m/c.jpg"]
    new_rows = (await log.alist(run.run_id, ChangeType.NEW)).data
    assert [r["path"] for r in new_rows] == ["/m/a.jpg", "/m/c.jpg"]
    bad = await log.alist(run.run_id, "renamed")
    assert not bad.ok and bad.code == ErrorCode.INVALID_INPUT.value


@pytest.mark.asyncio
async def test_summary_counts_every_type(services):
    run = await _log_run(services, "s", [("/m/a.jpg", ChangeType.DELETED), ("/m/b.jpg", ChangeType.DELETED)])
    summary = (await services["change_log"].asummary(run.run_id)).data
    assert summary["deleted"] == 2
    assert summary["new"] == 0
    assert set(summary) == {c.value for c in ChangeType}


@pytest.mark.asyncio
async def test_runs_and_purge(services):
    first = await _log_run(services, "s", [("/m/a.jpg", ChangeType.NEW)])
    second = await _log_run(services, "s", [("/m/a.jpg", ChangeType.UNCHANGED)])
    await services["db"].aexecute("UPDATE change_log SET timestamp = 1 WHERE run_id = ?", (first.run_id,))
    await services["db"].aexecute("UPDATE change_log SET timestamp = 2 WHERE run_id = ?", (second.run_id,))
    runs = (await services["change_log"].aruns()).data
    assert [r["run_id"] for r in runs] == [second.run_id, first.run_id]

    removed = await services["change_log"].apurge(keep_runs=1)
    assert removed.ok and removed.data == 1
    assert (await services["change_log"].alist(first.run_id)).data == []
