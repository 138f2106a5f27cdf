import pytest

from sdmm_backend.features.catalog import ItemStore, RootStore
from sdmm_backend.features.tags import TagGraph, normalize_tag, normalize_tags


async def _item(db, path: str = "m.safetensors") -> int:
    base_id = (await RootStore(db).find_or_create("A")).data
    items = ItemStore(db)
    root = (await items.find_or_create_node(base_id, "", None)).data
    return (await items.upsert_entry(base_id, path, root, is_dir=False)).data


def test_normalize_tag_rules() -> None:
    assert normalize_tag("  Hello World ") == "hello_world"
    assert normalize_tag("") == ""
    assert normalize_tag(None) == ""
    assert normalize_tag(True) == ""
    assert normalize_tag("x" * 101) == ""
    assert normalize_tags(["LoRA", "lora", " Style ", ""]) == ["lora", "style"]


@pytest.mark.asyncio
async def test_add_is_idempotent(services):
    db = services["db"]
    tags = TagGraph(db)
    item = await _item(db)

    first = await tags.add(item, ["Checkpoint", "sd 1.5"])
    second = await tags.add(item, ["checkpoint"])

    assert first.data == {"tags": ["checkpoint", "sd_1.5"], "added": 2}
    assert second.data["added"] == 0
    assert (await tags.tags_for_item(item)).data == {"checkpoint", "sd_1.5"}


@pytest.mark.asyncio
async def test_add_with_dependencies_is_one_hop(services):
    db = services["db"]
    tags = TagGraph(db)
    item = await _item(db)
    assert (await tags.add_dependency("lora", "adapter")).data is True
    assert (await tags.add_dependency("adapter", "network")).ok

    res = await tags.add_with_dependencies(item, "LoRA")

    assert res.ok
    assert (await tags.tags_for_item(item)).data == {"lora", "adapter"}


@pytest.mark.asyncio
async def test_implied_closure_handles_cycles(services):
    tags = TagGraph(services["db"])
    await tags.add_dependency("a", "b")
    await tags.add_dependency("b", "c")
    await tags.add_dependency("c", "a")

    closure = await tags.implied_closure("a")
    shallow = await tags.implied_closure("a", max_depth=1)

    assert closure.data == {"b", "c"}
    assert shallow.data == {"b"}


@pytest.mark.asyncio
async def test_self_dependency_rejected(services):
    res = await TagGraph(services["db"]).add_dependency("Style", "style")
    assert not res.ok
    assert res.code == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_rename_conflict_and_missing(services):
    tags = TagGraph(services["db"])
    await tags.add_tag("anime")
    await tags.add_tag("realistic")

    conflict = await tags.rename("anime", "Realistic")
    missing = await tags.rename("nope", "fresh")
    same = await tags.rename("anime", "ANIME")
    renamed = await tags.rename("anime", "cartoon")

    assert conflict.code == "CONFLICT"
    assert missing.code == "NOT_FOUND"
    assert same.ok
    assert renamed.ok
    names = [t["name"] for t in (await tags.list_tags()).data]
    assert names == ["cartoon", "realistic"]


@pytest.mark.asyncio
async def test_remove_cascades_associations(services):
    db = services["db"]
    tags = TagGraph(db)
    item = await _item(db)
    await tags.add(item, ["style", "lora"])
    await tags.add_dependency("lora", "style")

    assert (await tags.remove("style")).ok
    assert (await tags.remove("style")).code == "NOT_FOUND"
    assert (await tags.tags_for_item(item)).data == {"lora"}
    assert (await tags.direct_dependencies("lora")).data == []


@pytest.mark.asyncio
async def test_remove_from_item_and_counts(services):
    db = services["db"]
    tags = TagGraph(db)
    a = await _item(db, "a.pt")
    b = await _item(db, "b.pt")
    await tags.add(a, ["style"])
    await tags.add(b, ["style"])

    assert (await tags.remove_from_item(a, "Style")).data is True
    assert (await tags.remove_from_item(a, "style")).data is False

    listed = (await tags.list_tags()).data
    assert listed[0]["name"] == "style"
    assert listed[0]["item_count"] == 1


@pytest.mark.asyncio
async def test_invalid_tag_rejected(services):
    res = await TagGraph(services["db"]).add_tag("   ")
    assert not res.ok
    assert res.code == "INVALID_INPUT"
