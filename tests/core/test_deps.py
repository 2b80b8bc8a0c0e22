import sqlite3

import pytest

from mmc_backend.adapters.db.schema import CURRENT_SCHEMA_VERSION
from mmc_backend.deps import build_services, shutdown_services
from mmc_backend.shared import ErrorCode


@pytest.mark.asyncio
async def test_build_services_wires_everything(cache_config, fake_extractor):
    res = await build_services(cache_config, extractor=fake_extractor)
    assert res.ok
    services = res.data
    try:
        for name in ("db", "gate", "barrier", "backups", "migrations", "store", "tracker", "change_log", "dispatcher"):
            assert services[name] is not None
        assert services["store"].gate is services["gate"]
        assert not services["gate"].is_blocked
        assert services["migrations"].status()["persisted_version"] == CURRENT_SCHEMA_VERSION
        assert services["extractor"].tools_status() == {"exiftool": False, "ffprobe": False}
    finally:
        await shutdown_services(services)


@pytest.mark.asyncio
async def test_too_new_store_loads_blocked(cache_config, fake_extractor):
    cache_config.db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(cache_config.db_path))
    conn.execute("CREATE TABLE store_meta (key TEXT PRIMARY KEY, value TEXT)")
    conn.execute("INSERT INTO store_meta (key, value) VALUES ('schema_version', '99')")
    conn.commit()
    conn.close()

    res = await build_services(cache_config, extractor=fake_extractor)
    assert res.ok
    try:
        assert res.meta["schema_blocked"]["code"] == ErrorCode.SCHEMA_TOO_NEW.value
        run = await res.data["dispatcher"].arun([], "media")
        assert run.exit_code == 1
    finally:
        await shutdown_services(res.data)
