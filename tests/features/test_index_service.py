import asyncio
from pathlib import Path

import pytest

from sdmm_backend.features.index import IndexService
from sdmm_backend.shared import Result


class _BlockingReconciler:
    def __init__(self):
        self.release = asyncio.Event()
        self.passes = 0

    async def run_pass(self, roots, *, counters=None):
        self.passes += 1
        if counters is not None:
            counters["entries"] = 1
        await self.release.wait()
        return Result.Ok({"roots": len(roots)})

    async def sweep(self):
        return Result.Ok({"swept_items": 0, "swept_roots": 0})


class _Enricher:
    def __init__(self):
        self.seen = []

    async def enrich_all(self, items, *, counters=None):
        self.seen.extend(items)
        return Result.Ok({"total": len(items)})


@pytest.mark.asyncio
async def test_exclusive_sync_refuses_while_running(services, app_config):
    rec = _BlockingReconciler()
    index = IndexService(services["db"], app_config, reconciler=rec)

    first = await index.start_background_sync()
    await asyncio.sleep(0)
    refused = await index.start_background_sync(exclusive=True)

    assert first.data["started"] is True
    assert refused.data["started"] is False
    assert refused.data["running"] is True

    rec.release.set()
    await index.wait_idle()
    status = await index.get_status()
    assert status.data["sync"]["running"] is False
    assert status.data["sync"]["passes"] == 1
    assert status.data["sync"]["last_result"] == {"roots": 1}


@pytest.mark.asyncio
async def test_non_exclusive_sync_runs_concurrently(services, app_config):
    rec = _BlockingReconciler()
    index = IndexService(services["db"], app_config, reconciler=rec)

    await index.start_background_sync()
    second = await index.start_background_sync()
    await asyncio.sleep(0)

    assert second.data["started"] is True
    assert rec.passes == 2
    rec.release.set()
    await index.wait_idle()
    assert (await index.get_status()).data["sync"]["passes"] == 2


@pytest.mark.asyncio
async def test_reload_from_disk_indexes_configured_roots(services, model_root: Path):
    index = services["index"]
    res = await index.reload_from_disk()

    assert res.ok, res.error
    assert res.data["roots"] == 1
    listed = await services["items"].list_root_level("A")
    assert {r["name"] for r in listed.data["items"]} == {"sd15", "detail_tweaker.safetensors"}


@pytest.mark.asyncio
async def test_reload_with_enrich_passes_hashed_files(services, app_config):
    enricher = _Enricher()
    index = IndexService(services["db"], app_config, enricher=enricher)

    res = await index.reload_from_disk(enrich=True)

    assert res.ok
    assert res.data["enrich"] == {"total": 2}
    assert sorted(i["path"] for i in enricher.seen) == ["detail_tweaker.safetensors", "sd15/dreamshaper.safetensors"]


@pytest.mark.asyncio
async def test_update_model_info_without_enricher(services, app_config):
    res = await IndexService(services["db"], app_config).update_model_info()
    assert res.code == "SERVICE_UNAVAILABLE"


@pytest.mark.asyncio
async def test_background_enrich_is_single_flight(services, app_config):
    gate = asyncio.Event()

    class _Slow(_Enricher):
        async def enrich_all(self, items, *, counters=None):
            await gate.wait()
            return Result.Ok({"total": 0})

    index = IndexService(services["db"], app_config, enricher=_Slow())
    first = await index.start_background_enrich()
    second = await index.start_background_enrich()

    assert first.data["started"] is True
    assert second.data["started"] is False
    gate.set()
    await index.wait_idle()
    status = (await index.get_status()).data
    assert status["enrich"]["runs"] == 1
    assert status["enrich"]["running"] is False


@pytest.mark.asyncio
async def test_stop_cancels_running_passes(services, app_config):
    rec = _BlockingReconciler()
    index = IndexService(services["db"], app_config, reconciler=rec)
    await index.start_background_sync()
    await asyncio.sleep(0)

    await index.stop()

    assert (await index.get_status()).data["sync"]["running"] is False
