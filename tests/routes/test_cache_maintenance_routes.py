import pytest
from aiohttp.test_utils import TestClient, TestServer

from mmc_backend.adapters.db.schema import CURRENT_SCHEMA_VERSION
from mmc_backend.routes import APP_KEY_SERVICES, create_app
from mmc_backend.shared import ErrorCode
from tests.fakes import write_media


async def _client(services):
    client = TestClient(TestServer(create_app(services)))
    await client.start_server()
    return client


async def _fill(services, media_dir, count=3):
    paths = [write_media(media_dir, f"{i}.jpg", f"payload-{i}".encode() * 20) for i in range(count)]
    run = await services["dispatcher"].arun(paths, "media")
    assert run.ok
    return paths


@pytest.mark.asyncio
async def test_stats_and_health(services, media_dir):
    await _fill(services, media_dir)
    client = await _client(services)
    try:
        assert client.server.app[APP_KEY_SERVICES] is services
        payload = await (await client.get("/mmc/cache/stats")).json()
        assert payload["ok"] is True
        assert payload["data"]["total_entries"] == 3
        assert payload["data"]["schema_version"] == CURRENT_SCHEMA_VERSION

        health = await (await client.get("/mmc/cache/health")).json()
        assert health["ok"] is True
        assert health["data"]["healthy"] is True
        assert health["data"]["integrity"] == ["ok"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_prune_policies(services, media_dir):
    await _fill(services, media_dir, count=4)
    client = await _client(services)
    try:
        bad = await (await client.post("/mmc/cache/prune", json={"policy": "max_size"})).json()
        assert bad["ok"] is False and bad["code"] == ErrorCode.INVALID_INPUT.value

        unknown = await (await client.post("/mmc/cache/prune", json={"policy": "lottery"})).json()
        assert unknown["code"] == ErrorCode.INVALID_INPUT.value

        aged = await (await client.post("/mmc/cache/prune", json={"policy": "max_age", "max_age_days": 30})).json()
        assert aged["ok"] is True and aged["data"]["removed"] == 0

        pruned = await (await client.post("/mmc/cache/prune", json={"policy": "smart", "max_size": "1"})).json()
        assert pruned["ok"] is True
        assert pruned["data"]["remaining_bytes"] <= 1
        assert pruned["data"]["removed"] == 4
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_invalid_json_body(services):
    client = await _client(services)
    try:
        resp = await client.post("/mmc/cache/prune", data=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status == 200
        payload = await resp.json()
        assert payload["ok"] is False
        assert payload["code"] == ErrorCode.INVALID_INPUT.value

        listed = await (await client.post("/mmc/cache/backup", json=[1, 2])).json()
        assert listed["code"] == ErrorCode.INVALID_INPUT.value
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_clear(services, media_dir):
    await _fill(services, media_dir)
    client = await _client(services)
    try:
        cleared = await (await client.post("/mmc/cache/clear")).json()
        assert cleared["ok"] is True and cleared["data"]["removed"] == 3
        stats = await (await client.get("/mmc/cache/stats")).json()
        assert stats["data"]["total_entries"] == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_backup_list_and_restore(services, media_dir):
    await _fill(services, media_dir)
    client = await _client(services)
    try:
        empty = await (await client.get("/mmc/cache/backups")).json()
        assert empty["data"]["items"] == [] and empty["data"]["latest"] is None

        none_yet = await (await client.post("/mmc/cache/restore", json={})).json()
        assert none_yet["code"] == ErrorCode.NOT_FOUND.value

        made = await (await client.post("/mmc/cache/backup", json={"label": "manual"})).json()
        assert made["ok"] is True
        name = made["data"]["name"]
        assert name.startswith("manual_")

        listed = await (await client.get("/mmc/cache/backups")).json()
        assert listed["data"]["latest"] == name

        await client.post("/mmc/cache/clear")
        restored = await (await client.post("/mmc/cache/restore", json={"name": name})).json()
        assert restored["ok"] is True
        stats = await (await client.get("/mmc/cache/stats")).json()
        assert stats["data"]["total_entries"] == 3

        missing = await (await client.post("/mmc/cache/restore", json={"name": "nope.sqlite"})).json()
        assert missing["code"] == ErrorCode.NOT_FOUND.value
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_schema_endpoints(services):
    client = await _client(services)
    try:
        status = await (await client.get("/mmc/schema/status")).json()
        assert status["data"]["persisted_version"] == CURRENT_SCHEMA_VERSION
        assert status["data"]["pending_steps"] == []

        dry = await (await client.post("/mmc/schema/dry-run", json={})).json()
        assert dry["ok"] is True and dry["data"]["steps"] == []

        migrated = await (await client.post("/mmc/schema/migrate", json={})).json()
        assert migrated["ok"] is True and migrated["data"]["steps"] == []

        bad_target = await (await client.post("/mmc/schema/migrate", json={"target": "four"})).json()
        assert bad_target["code"] == ErrorCode.INVALID_INPUT.value

        too_far = await (await client.post("/mmc/schema/rollback", json={"target": CURRENT_SCHEMA_VERSION})).json()
        assert too_far["code"] == ErrorCode.INVALID_INPUT.value
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_missing_service_is_reported():
    client = await _client({})
    try:
        payload = await (await client.get("/mmc/cache/stats")).json()
        assert payload["ok"] is False
        assert payload["code"] == ErrorCode.SERVICE_UNAVAILABLE.value
    finally:
        await client.close()
