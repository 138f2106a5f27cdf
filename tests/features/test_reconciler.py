import asyncio
import json
import logging
from pathlib import Path

import pytest

from sdmm_backend.features.index import reconciler as reconciler_mod
from sdmm_backend.features.index.fs_walker import FileSystemWalker
from sdmm_backend.features.index.reconciler import CatalogReconciler


async def _paths(db, label: str = "A") -> dict:
    rows = await db.aquery(
        "SELECT i.path, i.is_dir, i.content_hash FROM item i JOIN base b ON b.id = i.base_id WHERE b.label = ?",
        (label,),
    )
    return {r["path"]: r for r in rows.data}


def _reconciler(db) -> CatalogReconciler:
    return CatalogReconciler(db, walker=FileSystemWalker(2), extensions=["safetensors", "ckpt"], batch_size=2)


@pytest.mark.asyncio
async def test_first_pass_builds_tree(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)

    res = await rec.run_pass({"A": model_root})
    assert res.ok, res.error
    assert res.data["roots"] == 1
    assert res.data["hashed"] == 2
    assert res.data["errors"] == 0

    rows = await _paths(db)
    assert set(rows) == {"", "sd15", "sd15/dreamshaper.safetensors", "detail_tweaker.safetensors"}
    assert rows["sd15"]["is_dir"] == 1
    assert rows["detail_tweaker.safetensors"]["content_hash"]

    parent = await db.aquery(
        "SELECT c.path AS child, p.path AS parent FROM item c JOIN item p ON p.id = c.parent"
    )
    links = {r["child"]: r["parent"] for r in parent.data}
    assert links["sd15/dreamshaper.safetensors"] == "sd15"
    assert links["sd15"] == ""
    assert links["detail_tweaker.safetensors"] == ""


@pytest.mark.asyncio
async def test_new_file_is_added_with_hash(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})

    (model_root / "new.ckpt").write_bytes(b"abc")
    res = await rec.run_pass({"A": model_root})

    assert res.ok
    rows = await _paths(db)
    assert rows["new.ckpt"]["content_hash"] == "ba7816bf8f"


@pytest.mark.asyncio
async def test_removed_file_is_swept(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})

    (model_root / "detail_tweaker.safetensors").unlink()
    res = await rec.run_pass({"A": model_root})

    assert res.ok
    assert res.data["swept_items"] == 1
    assert "detail_tweaker.safetensors" not in await _paths(db)


@pytest.mark.asyncio
async def test_second_pass_is_idempotent_and_reuses_hashes(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})
    before = await db.aquery("SELECT id, path, parent, content_hash FROM item ORDER BY id")

    res = await rec.run_pass({"A": model_root})

    assert res.ok
    assert res.data["hashed"] == 0
    assert res.data["reused"] == 2
    assert res.data["swept_items"] == 0
    after = await db.aquery("SELECT id, path, parent, content_hash FROM item ORDER BY id")
    assert after.data == before.data


@pytest.mark.asyncio
async def test_changed_file_is_rehashed(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})
    target = model_root / "detail_tweaker.safetensors"
    old_hash = (await _paths(db))["detail_tweaker.safetensors"]["content_hash"]

    target.write_bytes(b"different weights, different size")
    res = await rec.run_pass({"A": model_root})

    assert res.data["hashed"] == 1
    assert (await _paths(db))["detail_tweaker.safetensors"]["content_hash"] != old_hash


@pytest.mark.asyncio
async def test_unaccepted_files_are_listed_without_hash(services, model_root: Path):
    db = services["db"]
    (model_root / "notes.txt").write_text("hello", encoding="utf-8")

    await _reconciler(db).run_pass({"A": model_root})

    rows = await _paths(db)
    assert rows["notes.txt"]["is_dir"] == 0
    assert rows["notes.txt"]["content_hash"] is None


@pytest.mark.asyncio
async def test_dropped_root_is_swept(services, model_root: Path, tmp_path: Path):
    db = services["db"]
    other = tmp_path / "other"
    other.mkdir()
    (other / "x.ckpt").write_bytes(b"x")
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root, "B": other})

    res = await rec.run_pass({"A": model_root})

    assert res.data["swept_roots"] == 1
    labels = await db.aquery("SELECT label FROM base")
    assert [r["label"] for r in labels.data] == ["A"]
    assert await _paths(db, "B") == {}


@pytest.mark.asyncio
async def test_missing_root_dir_keeps_root_row_but_no_items(services, tmp_path: Path):
    db = services["db"]
    res = await _reconciler(db).run_pass({"A": tmp_path / "does-not-exist"})

    assert res.ok
    assert res.data["roots"] == 1
    assert set(await _paths(db)) == {""}


@pytest.mark.asyncio
async def test_unreadable_file_keeps_row_hash_and_tags(services, model_root: Path, monkeypatch):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})
    before = await _paths(db)
    item_id = (await db.aquery("SELECT id FROM item WHERE path = ?", ("detail_tweaker.safetensors",))).data[0]["id"]
    assert (await services["tags"].add(item_id, ["lora"])).ok

    target = model_root / "detail_tweaker.safetensors"
    target.write_bytes(b"lora-weights-v2")
    real = reconciler_mod.compute_content_id

    def _flaky(path):
        if Path(path).name == "detail_tweaker.safetensors":
            raise PermissionError("denied")
        return real(path)

    monkeypatch.setattr(reconciler_mod, "compute_content_id", _flaky)
    res = await rec.run_pass({"A": model_root})

    assert res.ok
    assert res.data["errors"] == 1
    assert res.data["swept_items"] == 0
    rows = await _paths(db)
    assert "sd15/dreamshaper.safetensors" in rows
    assert rows["detail_tweaker.safetensors"]["content_hash"] == before["detail_tweaker.safetensors"]["content_hash"]
    assert "lora" in (await services["tags"].tags_for_item(item_id)).data


@pytest.mark.asyncio
async def test_counters_are_updated_in_place(services, model_root: Path):
    progress: dict = {}
    res = await _reconciler(services["db"]).run_pass({"A": model_root}, counters=progress)
    assert progress == res.data
    assert progress["entries"] == 3


@pytest.mark.asyncio
async def test_clean_sweeps_without_walking(services, model_root: Path):
    db = services["db"]
    rec = _reconciler(db)
    await rec.run_pass({"A": model_root})
    await db.aexecute("UPDATE item SET is_checked = 0 WHERE path = 'detail_tweaker.safetensors'")

    swept = await rec.sweep()

    assert swept.ok
    assert swept.data == {"swept_items": 1, "swept_roots": 0}


class _ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


@pytest.mark.asyncio
async def test_concurrent_passes_log_their_own_pass_id(services, model_root: Path):
    handler = _ListHandler()
    reconciler_mod.logger.addHandler(handler)
    try:
        rec = _reconciler(services["db"])
        results = await asyncio.gather(rec.run_pass({"A": model_root}), rec.run_pass({"A": model_root}))
    finally:
        reconciler_mod.logger.removeHandler(handler)

    assert all(r.ok for r in results)
    finished = [
        json.loads(r.getMessage())
        for r in handler.records
        if r.getMessage().startswith("{") and "Reconcile pass finished" in r.getMessage()
    ]
    pass_ids = [entry["context"]["pass_id"] for entry in finished]
    assert len(pass_ids) == 2
    assert len(set(pass_ids)) == 2
