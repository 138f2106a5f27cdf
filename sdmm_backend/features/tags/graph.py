"""
Tag graph: item <-> tag associations plus tag -> implied-tag edges.
"""
from collections import deque
from typing import Any, Dict, Iterable, List, Optional, Set

from ...adapters.db.sqlite import Sqlite
from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

MAX_TAG_LENGTH = 100
DEFAULT_CLOSURE_DEPTH = 8


def normalize_tag(name: Any) -> str:
    """Trim, lowercase and replace spaces with underscores; '' when unusable."""
    if name is None or isinstance(name, bool):
        return ""
    tag = "_".join(str(name).strip().lower().split(" "))
    if not tag or len(tag) > MAX_TAG_LENGTH:
        return ""
    return tag


def normalize_tags(names: Iterable[Any]) -> List[str]:
    out: List[str] = []
    seen: Set[str] = set()
    for raw in names or []:
        tag = normalize_tag(raw)
        if tag and tag not in seen:
            seen.add(tag)
            out.append(tag)
    return out


class TagGraph:
    def __init__(self, db: Sqlite):
        self.db = db

    async def _tag_id(self, name: str) -> Result[Optional[int]]:
        rows = await self.db.aquery("SELECT id FROM tag WHERE name = ?", (name,))
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read tag")
        return Result.Ok(int(rows.data[0]["id"]) if rows.data else None)

    async def add_tag(self, name: str, description: Optional[str] = None) -> Result[int]:
        """Find-or-create a tag and return its id."""
        tag = normalize_tag(name)
        if not tag:
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid tag: {name!r}")
        res = await self.db.aexecute(
            "INSERT INTO tag (name, description) VALUES (?, ?) ON CONFLICT(name) DO NOTHING",
            (tag, description),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to create tag")
        found = await self._tag_id(tag)
        if not found.ok or found.data is None:
            return Result.Err(found.code if not found.ok else ErrorCode.DB_ERROR, found.error or "Tag vanished")
        return Result.Ok(found.data)

    async def add(self, item_id: int, tags: Iterable[Any]) -> Result[Dict[str, Any]]:
        """
        Associate `tags` with an item. Existing associations are no-ops.

        Returns:
            Result with {"tags": normalized tags, "added": new association count}
        """
        names = normalize_tags(tags)
        pairs = []
        for name in names:
            tag_id = await self.add_tag(name)
            if not tag_id.ok:
                return Result.Err(tag_id.code, tag_id.error or "Failed to create tag")
            pairs.append((tag_id.data, int(item_id)))
        res = await self.db.aexecutemany("INSERT OR IGNORE INTO tag_item (tag, item) VALUES (?, ?)", pairs)
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to tag item")
        return Result.Ok({"tags": names, "added": int(res.data or 0)})

    async def direct_dependencies(self, name: str) -> Result[List[str]]:
        rows = await self.db.aquery(
            """
            SELECT d.name FROM tag_depend td
            JOIN tag t ON t.id = td.tag
            JOIN tag d ON d.id = td.depend
            WHERE t.name = ?
            ORDER BY d.name
            """,
            (normalize_tag(name),),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read dependencies")
        return Result.Ok([r["name"] for r in rows.data or []])

    async def add_with_dependencies(self, item_id: int, name: str) -> Result[Dict[str, Any]]:
        """Add `name` and the tags it directly implies (one hop, not transitive)."""
        tag = normalize_tag(name)
        if not tag:
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid tag: {name!r}")
        deps = await self.direct_dependencies(tag)
        if not deps.ok:
            return Result.Err(deps.code, deps.error or "Failed to read dependencies")
        return await self.add(item_id, [tag, *(deps.data or [])])

    async def add_dependency(self, name: str, depend: str) -> Result[bool]:
        """Declare that tag `name` implies tag `depend`."""
        tag, dep = normalize_tag(name), normalize_tag(depend)
        if not tag or not dep:
            return Result.Err(ErrorCode.INVALID_INPUT, "Both tags are required")
        if tag == dep:
            return Result.Err(ErrorCode.INVALID_INPUT, "A tag cannot imply itself")
        tag_id = await self.add_tag(tag)
        dep_id = await self.add_tag(dep)
        if not tag_id.ok or not dep_id.ok:
            failed = tag_id if not tag_id.ok else dep_id
            return Result.Err(failed.code, failed.error or "Failed to create tag")
        res = await self.db.aexecute(
            "INSERT OR IGNORE INTO tag_depend (tag, depend) VALUES (?, ?)",
            (tag_id.data, dep_id.data),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to add dependency")
        return Result.Ok(bool(res.data))

    async def implied_closure(self, name: str, max_depth: int = DEFAULT_CLOSURE_DEPTH) -> Result[Set[str]]:
        """
        Every tag reachable from `name` through implied-tag edges, up to `max_depth` hops.

        Cycles are tolerated; each tag is expanded once.
        """
        start = normalize_tag(name)
        if not start:
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid tag: {name!r}")
        seen: Set[str] = {start}
        frontier = deque([(start, 0)])
        while frontier:
            current, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            deps = await self.direct_dependencies(current)
            if not deps.ok:
                return Result.Err(deps.code, deps.error or "Failed to read dependencies")
            for dep in deps.data or []:
                if dep not in seen:
                    seen.add(dep)
                    frontier.append((dep, depth + 1))
        seen.discard(start)
        return Result.Ok(seen)

    async def rename(self, old: str, new: str) -> Result[bool]:
        """Rename a tag. Fails when `new` already exists; tags are never merged."""
        old_name, new_name = normalize_tag(old), normalize_tag(new)
        if not old_name or not new_name:
            return Result.Err(ErrorCode.INVALID_INPUT, "Both tag names are required")
        if old_name == new_name:
            return Result.Ok(True)
        existing = await self._tag_id(new_name)
        if not existing.ok:
            return Result.Err(existing.code, existing.error or "Failed to read tag")
        if existing.data is not None:
            return Result.Err(ErrorCode.CONFLICT, f"Tag already exists: {new_name}")
        res = await self.db.aexecute("UPDATE tag SET name = ? WHERE name = ?", (new_name, old_name))
        if not res.ok:
            if res.meta.get("integrity"):
                return Result.Err(ErrorCode.CONFLICT, f"Tag already exists: {new_name}")
            return Result.Err(res.code, res.error or "Failed to rename tag")
        if not res.data:
            return Result.Err(ErrorCode.NOT_FOUND, f"Tag not found: {old_name}")
        return Result.Ok(True)

    async def remove(self, name: str) -> Result[bool]:
        """Delete a tag together with its associations and dependency edges."""
        tag = normalize_tag(name)
        res = await self.db.aexecute("DELETE FROM tag WHERE name = ?", (tag,))
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to remove tag")
        if not res.data:
            return Result.Err(ErrorCode.NOT_FOUND, f"Tag not found: {tag}")
        return Result.Ok(True)

    async def remove_from_item(self, item_id: int, name: str) -> Result[bool]:
        res = await self.db.aexecute(
            "DELETE FROM tag_item WHERE item = ? AND tag = (SELECT id FROM tag WHERE name = ?)",
            (int(item_id), normalize_tag(name)),
        )
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to untag item")
        return Result.Ok(bool(res.data))

    async def tags_for_item(self, item_id: int) -> Result[Set[str]]:
        rows = await self.db.aquery(
            "SELECT t.name FROM tag_item ti JOIN tag t ON t.id = ti.tag WHERE ti.item = ?",
            (int(item_id),),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read item tags")
        return Result.Ok({r["name"] for r in rows.data or []})

    async def list_tags(self) -> Result[List[Dict[str, Any]]]:
        return await self.db.aquery(
            """
            SELECT t.id, t.name, t.description, COUNT(ti.id) AS item_count
            FROM tag t LEFT JOIN tag_item ti ON ti.tag = t.id
            GROUP BY t.id
            ORDER BY t.name
            """
        )
