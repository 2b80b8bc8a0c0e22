import sys
from pathlib import Path

import pytest
import pytest_asyncio

REPO_ROOT = Path(__file__).resolve().parents[1]

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def fake_extractor():
    from .fakes import FakeExtractor

    return FakeExtractor()


@pytest.fixture
def cache_config(tmp_path):
    from mmc_backend.config import CacheConfig

    return CacheConfig(
        db_path=tmp_path / "cache.db",
        backup_dir=tmp_path / "backups",
        workers=2,
        batch_size=10,
        extract_timeout_s=5.0,
        exiftool_bin="mmc-missing-exiftool",
        ffprobe_bin="mmc-missing-ffprobe",
    )


@pytest.fixture
def media_dir(tmp_path):
    d = tmp_path / "media"
    d.mkdir()
    return d


@pytest_asyncio.fixture
async def services(cache_config, fake_extractor):
    from mmc_backend.deps import build_services, shutdown_services

    svc_res = await build_services(cache_config, extractor=fake_extractor)
    assert svc_res.ok, svc_res.error
    svc = svc_res.data
    try:
        yield svc
    finally:
        await shutdown_services(svc)
