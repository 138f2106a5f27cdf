from pathlib import Path

import pytest
import pytest_asyncio

from sdmm_backend.features.catalog import CatalogSearcher, ItemStore
from sdmm_backend.features.catalog.searcher import sanitize_fts_query
from sdmm_backend.features.index.reconciler import CatalogReconciler
from sdmm_backend.features.tags import TagGraph


def test_sanitize_fts_query():
    assert sanitize_fts_query('dream "shaper" OR(1)') == '"dream"* "shaper"* "OR"* "1"*'
    assert sanitize_fts_query("***") == ""
    assert sanitize_fts_query("") == ""


async def _ids(db) -> dict:
    rows = await db.aquery("SELECT id, path FROM item")
    return {r["path"]: int(r["id"]) for r in rows.data}


@pytest_asyncio.fixture
async def indexed(services, model_root: Path):
    db = services["db"]
    await CatalogReconciler(db).run_pass({"A": model_root})
    ids = await _ids(db)
    tags = TagGraph(db)
    await tags.add(ids["sd15/dreamshaper.safetensors"], ["checkpoint", "style"])
    await tags.add(ids["detail_tweaker.safetensors"], ["lora", "style"])
    await ItemStore(db).set_model_name(ids["detail_tweaker.safetensors"], "Add More Details")
    return ids


@pytest.mark.asyncio
async def test_search_by_name_prefix(services, indexed):
    res = await CatalogSearcher(services["db"]).search("dream")
    assert res.ok
    assert [r["path"] for r in res.data["items"]] == ["sd15/dreamshaper.safetensors"]


@pytest.mark.asyncio
async def test_search_matches_model_name(services, indexed):
    res = await CatalogSearcher(services["db"]).search("details")
    assert [r["id"] for r in res.data["items"]] == [indexed["detail_tweaker.safetensors"]]


@pytest.mark.asyncio
async def test_tag_search_any_and_all(services, indexed):
    searcher = CatalogSearcher(services["db"])

    any_res = await searcher.search("", ["style"])
    all_res = await searcher.search("", ["Style", "lora"], match_all=True)
    none_res = await searcher.search("", ["checkpoint", "lora"], match_all=True)

    assert any_res.data["total"] == 2
    assert [r["id"] for r in all_res.data["items"]] == [indexed["detail_tweaker.safetensors"]]
    assert none_res.data["total"] == 0


@pytest.mark.asyncio
async def test_union_is_deduplicated_newest_first(services, indexed):
    res = await CatalogSearcher(services["db"]).search("dream", ["style"])

    ids = [r["id"] for r in res.data["items"]]
    assert res.data["total"] == 2
    assert ids == sorted(ids, reverse=True)
    assert len(set(ids)) == 2


@pytest.mark.asyncio
async def test_search_paging(services, indexed):
    searcher = CatalogSearcher(services["db"])
    first = await searcher.search("", ["style"], limit=1, offset=0)
    second = await searcher.search("", ["style"], limit=1, offset=1)

    assert first.data["total"] == 2 and second.data["total"] == 2
    assert first.data["items"][0]["id"] != second.data["items"][0]["id"]


@pytest.mark.asyncio
async def test_search_rejects_oversized_query(services):
    res = await CatalogSearcher(services["db"]).search("x" * 5000)
    assert res.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_swept_items_leave_the_index(services, indexed, model_root: Path):
    db = services["db"]
    (model_root / "sd15" / "dreamshaper.safetensors").unlink()
    await CatalogReconciler(db).run_pass({"A": model_root})

    res = await CatalogSearcher(db).search("dream")
    assert res.data["items"] == []
