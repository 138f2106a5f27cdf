import asyncio

import pytest

from sdmm_backend.features.catalog.items import ItemStore, display_name, parent_path
from sdmm_backend.features.catalog.roots import RootStore


def test_parent_path_and_display_name() -> None:
    assert parent_path("a/b/c.safetensors") == "a/b"
    assert parent_path("c.safetensors") == ""
    assert parent_path("") == ""
    assert display_name("a/b/c.safetensors") == "c.safetensors"
    assert display_name("") == ""


@pytest.mark.asyncio
async def test_root_find_or_create_is_idempotent(services):
    roots = RootStore(services["db"])
    first = await roots.find_or_create("A")
    second = await roots.find_or_create("A")
    assert first.ok and second.ok
    assert first.data == second.data

    empty = await roots.find_or_create("  ")
    assert not empty.ok
    assert empty.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_root_find_or_create_concurrent_is_single_row(services):
    roots = RootStore(services["db"])
    results = await asyncio.gather(*(roots.find_or_create("A") for _ in range(8)))

    assert all(r.ok for r in results)
    assert len({r.data for r in results}) == 1
    count = await services["db"].aquery("SELECT COUNT(*) AS n FROM base WHERE label = ?", ("A",))
    assert count.data[0]["n"] == 1


@pytest.mark.asyncio
async def test_root_sweep_removes_unchecked(services):
    roots = RootStore(services["db"])
    await roots.find_or_create("A")
    await roots.find_or_create("B")
    assert (await roots.reset_checked()).ok
    await roots.find_or_create("A")

    swept = await roots.sweep_unchecked()
    assert swept.ok and swept.data == 1

    listed = await roots.list_roots()
    assert [r["label"] for r in listed.data] == ["A"]
    assert (await roots.get_by_label("B")).data is None
    assert (await roots.get_by_label("A")).data["is_checked"] == 1


@pytest.mark.asyncio
async def test_concurrent_find_or_create_node_creates_one_row(services):
    db = services["db"]
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = await items.find_or_create_node(base_id, "", None)
    assert root.ok

    results = await asyncio.gather(*(items.find_or_create_node(base_id, "sd15", root.data) for _ in range(8)))

    assert all(r.ok for r in results)
    assert len({r.data for r in results}) == 1
    rows = await db.aquery("SELECT COUNT(*) AS n FROM item WHERE base_id = ? AND path = 'sd15'", (base_id,))
    assert rows.data[0]["n"] == 1


@pytest.mark.asyncio
async def test_upsert_entry_updates_in_place(services):
    db = services["db"]
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = (await items.find_or_create_node(base_id, "", None)).data

    first = await items.upsert_entry(base_id, "m.safetensors", root, is_dir=False, content_hash="aaaaaaaaaa", hash_state="1:1")
    second = await items.upsert_entry(base_id, "m.safetensors", root, is_dir=False, content_hash="bbbbbbbbbb", hash_state="2:2")
    assert first.ok and second.ok
    assert first.data == second.data

    row = (await items.get(first.data)).data
    assert row["name"] == "m.safetensors"
    assert row["content_hash"] == "bbbbbbbbbb"
    assert row["parent"] == root
    assert row["base_label"] == "A"

    states = await items.load_hash_states(base_id)
    assert states.data == {"m.safetensors": ("2:2", "bbbbbbbbbb")}


@pytest.mark.asyncio
async def test_list_children_orders_dirs_first_and_pages(services):
    db = services["db"]
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = (await items.find_or_create_node(base_id, "", None)).data
    await items.upsert_entry(base_id, "b.safetensors", root, is_dir=False)
    await items.upsert_entry(base_id, "a.safetensors", root, is_dir=False)
    await items.find_or_create_node(base_id, "zdir", root)

    page = await items.list_children(root, limit=2, offset=0)
    assert page.ok
    assert [r["name"] for r in page.data["items"]] == ["zdir", "a.safetensors"]
    assert page.data["total"] == 3

    tail = await items.list_root_level("A", limit=2, offset=2)
    assert [r["name"] for r in tail.data["items"]] == ["b.safetensors"]
    assert tail.data["total"] == 3

    past_end = await items.list_children(root, limit=2, offset=10)
    assert past_end.data["items"] == []
    assert past_end.data["total"] == 3


@pytest.mark.asyncio
async def test_list_root_level_unknown_root(services):
    res = await ItemStore(services["db"]).list_root_level("nope")
    assert not res.ok
    assert res.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_mark_unchecked_and_delete(services):
    db = services["db"]
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = (await items.find_or_create_node(base_id, "", None)).data
    item_id = (await items.upsert_entry(base_id, "x.ckpt", root, is_dir=False)).data

    marked = await items.mark_unchecked(item_id)
    assert marked.ok
    assert marked.data["path"] == "x.ckpt"
    assert marked.data["base_label"] == "A"

    missing = await items.mark_unchecked(999999)
    assert missing.code == "NOT_FOUND"

    assert (await items.delete(item_id)).data == 1
    assert (await items.get(item_id)).data is None


@pytest.mark.asyncio
async def test_sweep_cascades_to_children(services):
    db = services["db"]
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = (await items.find_or_create_node(base_id, "", None)).data
    sub = (await items.find_or_create_node(base_id, "sub", root)).data
    child = (await items.upsert_entry(base_id, "sub/m.pt", sub, is_dir=False)).data

    await db.aexecute("UPDATE item SET is_checked = 0 WHERE id = ?", (sub,))
    assert (await items.sweep_unchecked()).ok

    assert (await items.get(child)).data is None
    assert (await items.get(root)).data is not None


@pytest.mark.asyncio
async def test_list_hashed_files_filters_by_label(services):
    db = services["db"]
    roots = RootStore(db)
    items = ItemStore(db)
    for label in ("A", "B"):
        base_id = (await roots.find_or_create(label)).data
        root = (await items.find_or_create_node(base_id, "", None)).data
        await items.upsert_entry(base_id, f"{label}.pt", root, is_dir=False, content_hash="0123456789", hash_state="1:1")
        await items.upsert_entry(base_id, f"{label}.txt", root, is_dir=False)

    everything = await items.list_hashed_files()
    only_b = await items.list_hashed_files(["B"])

    assert sorted(r["path"] for r in everything.data) == ["A.pt", "B.pt"]
    assert [r["path"] for r in only_b.data] == ["B.pt"]
