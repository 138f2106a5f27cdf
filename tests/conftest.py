import sys

import pytest
import pytest_asyncio

from repo_root import REPO_ROOT

if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture
def model_root(tmp_path):
    """A root directory `models/` with one nested checkpoint and one top-level LoRA."""
    root = tmp_path / "models"
    (root / "sd15").mkdir(parents=True)
    (root / "sd15" / "dreamshaper.safetensors").write_bytes(b"dreamshaper-weights")
    (root / "detail_tweaker.safetensors").write_bytes(b"lora-weights")
    return root


@pytest.fixture
def app_config(tmp_path, model_root):
    from sdmm_backend.config import AppConfig

    cfg = AppConfig()
    cfg.model_paths = {"A": str(model_root)}
    cfg.db_path = str(tmp_path / "test_services.db")
    cfg.walkdir_parallel = 2
    return cfg


@pytest_asyncio.fixture
async def services(tmp_path, app_config):
    from sdmm_backend.deps import build_services, dispose_services

    svc_res = await build_services(app_config.db_path, config=app_config)
    assert svc_res.ok, svc_res.error
    svc = svc_res.data
    try:
        yield svc
    finally:
        await dispose_services(svc)
