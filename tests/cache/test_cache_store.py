import asyncio

import pytest

from mmc_backend.deps import build_services, shutdown_services
from mmc_backend.features.cache.models import Fingerprint
from mmc_backend.shared import ErrorCode


def _fp(path="/media/a.jpg", size=10, mtime_ns=111, hash="h1"):
    return Fingerprint(path=path, size=size, mtime_ns=mtime_ns, hash=hash)


@pytest.mark.asyncio
async def test_put_then_get_returns_entry(services):
    store = services["store"]
    put = await store.aput(_fp(), b'{"k":"v"}', file_type="image")
    assert put.ok, put.error
    got = await store.aget("/media/a.jpg")
    assert got.ok
    entry = got.data
    assert entry.metadata == b'{"k":"v"}'
    assert entry.content_hash == "h1"
    assert (entry.file_size, entry.modified_time) == (10, 111)
    assert entry.file_type == "image"
    assert entry.schema_version == 4
    assert entry.blob_size == len(b'{"k":"v"}')


@pytest.mark.asyncio
async def test_get_miss_is_ok_none(services):
    got = await services["store"].aget("/media/missing.jpg")
    assert got.ok and got.data is None


@pytest.mark.asyncio
async def test_get_tracks_access(services):
    store = services["store"]
    await store.aput(_fp(), b"x")
    await store.aget("/media/a.jpg")
    await store.aget("/media/a.jpg")
    entry = (await store.aget("/media/a.jpg", track_access=False)).data
    assert entry.access_count == 2
    assert entry.accessed_at is not None


@pytest.mark.asyncio
async def test_put_replaces_previous_entry(services):
    store = services["store"]
    await store.aput(_fp(hash="old"), b"old")
    await store.aput(_fp(size=20, mtime_ns=222, hash="new"), b"newer")
    entry = (await store.aget("/media/a.jpg")).data
    assert entry.metadata == b"newer"
    assert entry.content_hash == "new"
    assert entry.file_size == 20
    size = (await store.asize()).data
    assert size == {"entries": 1, "bytes": len(b"newer")}


@pytest.mark.asyncio
async def test_put_rejects_non_bytes(services):
    res = await services["store"].aput(_fp(), {"not": "bytes"})
    assert not res.ok
    assert res.code == ErrorCode.INVALID_INPUT.value


@pytest.mark.asyncio
async def test_concurrent_puts_same_path_leave_one_complete_entry(services):
    store = services["store"]
    payloads = [f"payload-{i}".encode() for i in range(10)]
    results = await asyncio.gather(
        *(store.aput(_fp(hash=f"h{i}", size=i + 1), p) for i, p in enumerate(payloads))
    )
    assert all(r.ok for r in results)
    entry = (await store.aget("/media/a.jpg")).data
    idx = payloads.index(entry.metadata)
    assert entry.content_hash == f"h{idx}"
    assert entry.file_size == idx + 1
    rows = await services["db"].aquery("SELECT COUNT(*) AS n FROM file_info")
    assert rows.data[0]["n"] == 1


@pytest.mark.asyncio
async def test_invalidate_removes_entry(services):
    store = services["store"]
    await store.aput(_fp(), b"x")
    first = await store.ainvalidate("/media/a.jpg")
    assert first.ok and first.data is True
    second = await store.ainvalidate("/media/a.jpg")
    assert second.ok and second.data is False
    assert (await store.aget("/media/a.jpg")).data is None
    assert (await store.asize()).data["entries"] == 0


@pytest.mark.asyncio
async def test_clear_empties_store(services):
    store = services["store"]
    for i in range(3):
        await store.aput(_fp(path=f"/media/{i}.jpg"), b"x")
    res = await store.aclear()
    assert res.ok and res.data["removed"] == 3
    assert (await store.asize()).data == {"entries": 0, "bytes": 0}


@pytest.mark.asyncio
async def test_blocked_gate_refuses_operations(services):
    store = services["store"]
    gate = services["gate"]
    gate.block(ErrorCode.SCHEMA_MISMATCH, "testing")
    try:
        for res in (
            await store.aput(_fp(), b"x"),
            await store.aget("/media/a.jpg"),
            await store.ainvalidate("/media/a.jpg"),
            await store.asize(),
        ):
            assert not res.ok
            assert res.code == ErrorCode.SCHEMA_MISMATCH.value
        health = await store.ahealth()
        assert health.ok and health.data["healthy"] is False
    finally:
        gate.clear()
    assert (await store.aput(_fp(), b"x")).ok


@pytest.mark.asyncio
async def test_stats_and_health(services):
    store = services["store"]
    await store.aput(_fp(), b"12345")
    stats = (await store.astats()).data
    assert stats["total_entries"] == 1
    assert stats["cache_bytes"] == 5
    assert stats["schema_version"] == 4
    health = (await store.ahealth()).data
    assert health["healthy"] is True
    assert health["integrity"] == ["ok"]


@pytest.mark.asyncio
async def test_compressed_store_roundtrip(cache_config):
    res = await build_services(cache_config.with_overrides(compression=True))
    assert res.ok, res.error
    svc = res.data
    try:
        store = svc["store"]
        payload = b'{"tag":"' + b"a" * 4000 + b'"}'
        put = await store.aput(_fp(), payload)
        assert put.ok
        assert put.meta["blob_size"] < len(payload)
        entry = (await store.aget("/media/a.jpg")).data
        assert entry.metadata == payload
    finally:
        await shutdown_services(svc)
