"""
Item rows of the catalog: directory nodes and files below a root.

Relative paths use POSIX separators; the root node of each root has path ''
and no parent.
"""
from typing import Any, Dict, List, Optional

from ...adapters.db.sqlite import Sqlite, rollback
from ...config import SEARCH_MAX_LIMIT
from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

ROOT_NODE_PATH = ""

_ITEM_COLUMNS = """
    i.id, i.name, i.model_name, i.path, i.parent, i.is_dir,
    i.content_hash, i.is_checked, i.base_id, b.label AS base_label
"""


def parent_path(rel_path: str) -> str:
    """`a/b/c.safetensors` -> `a/b`; top-level entries -> '' (the root node)."""
    head, _, _ = str(rel_path).rpartition("/")
    return head


def display_name(rel_path: str) -> str:
    return str(rel_path).rpartition("/")[2]


class ItemStore:
    def __init__(self, db: Sqlite):
        self.db = db

    # ------------------------------------------------------------------
    # Sync pass primitives
    # ------------------------------------------------------------------

    async def reset_checked(self) -> Result[int]:
        """Clear the checked flag on every item (start of a pass)."""
        return await self.db.aexecute("UPDATE item SET is_checked = 0")

    async def sweep_unchecked(self) -> Result[int]:
        """Delete every item still unchecked (end of a pass)."""
        res = await self.db.aexecute("DELETE FROM item WHERE is_checked = 0")
        if res.ok and res.data:
            logger.info("Swept %s unchecked item(s)", res.data)
        return res

    async def find_or_create_node(self, base_id: int, path: str, parent_id: Optional[int] = None) -> Result[int]:
        """
        Return the id of the directory node (base_id, path), creating it if needed.

        An existing node keeps its parent link and is only marked checked.
        """
        async with self.db.atransaction() as tx:
            if not tx.ok:
                return Result.Err(tx.code, tx.error or "Failed to begin transaction")
            res = await self.db.aexecute(
                """
                INSERT INTO item (name, path, base_id, parent, is_dir, is_checked)
                VALUES (?, ?, ?, ?, 1, 1)
                ON CONFLICT(base_id, path) DO UPDATE SET is_checked = 1
                """,
                (display_name(path) or None, path, int(base_id), parent_id),
            )
            if not res.ok:
                raise rollback(res)
            row = await self._id_for(base_id, path)
            if not row.ok:
                raise rollback(row)
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return row

    async def upsert_entry(
        self,
        base_id: int,
        path: str,
        parent_id: Optional[int],
        *,
        is_dir: bool,
        content_hash: Optional[str] = None,
        hash_state: Optional[str] = None,
    ) -> Result[int]:
        """Insert or update the item for (base_id, path), link its parent and mark it checked."""
        async with self.db.atransaction() as tx:
            if not tx.ok:
                return Result.Err(tx.code, tx.error or "Failed to begin transaction")
            res = await self.db.aexecute(
                """
                INSERT INTO item (name, path, base_id, parent, is_dir, content_hash, hash_state, is_checked)
                VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(base_id, path) DO UPDATE SET
                    name = excluded.name,
                    parent = excluded.parent,
                    is_dir = excluded.is_dir,
                    content_hash = excluded.content_hash,
                    hash_state = excluded.hash_state,
                    is_checked = 1
                """,
                (display_name(path), path, int(base_id), parent_id, 1 if is_dir else 0, content_hash, hash_state),
            )
            if not res.ok:
                raise rollback(res)
            row = await self._id_for(base_id, path)
            if not row.ok:
                raise rollback(row)
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return row

    async def _id_for(self, base_id: int, path: str) -> Result[int]:
        rows = await self.db.aquery("SELECT id FROM item WHERE base_id = ? AND path = ?", (int(base_id), path))
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read item")
        if not rows.data:
            return Result.Err(ErrorCode.NOT_FOUND, f"Item not found: {path}")
        return Result.Ok(int(rows.data[0]["id"]))

    async def load_hash_states(self, base_id: int) -> Result[Dict[str, tuple[str, str]]]:
        """Map path -> (hash_state, content_hash) for already hashed files of a root."""
        rows = await self.db.aquery(
            "SELECT path, hash_state, content_hash FROM item "
            "WHERE base_id = ? AND content_hash IS NOT NULL AND hash_state IS NOT NULL",
            (int(base_id),),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to load hash states")
        return Result.Ok({r["path"]: (r["hash_state"], r["content_hash"]) for r in rows.data or []})

    # ------------------------------------------------------------------
    # Point lookups / mutations
    # ------------------------------------------------------------------

    async def get(self, item_id: int) -> Result[Optional[Dict[str, Any]]]:
        rows = await self.db.aquery(
            f"SELECT {_ITEM_COLUMNS} FROM item i JOIN base b ON b.id = i.base_id WHERE i.id = ?",
            (int(item_id),),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read item")
        return Result.Ok(rows.data[0] if rows.data else None)

    async def get_many(self, item_ids: List[int]) -> Result[List[Dict[str, Any]]]:
        return await self.db.aquery_in(
            f"SELECT {_ITEM_COLUMNS} FROM item i JOIN base b ON b.id = i.base_id WHERE {{IN_CLAUSE}}",
            "i.id",
            [int(i) for i in item_ids],
        )

    async def mark_unchecked(self, item_id: int) -> Result[Dict[str, Any]]:
        """Clear the checked flag of one item; returns its path and root label."""
        res = await self.db.aexecute("UPDATE item SET is_checked = 0 WHERE id = ?", (int(item_id),))
        if not res.ok:
            return Result.Err(res.code, res.error or "Failed to update item")
        if not res.data:
            return Result.Err(ErrorCode.NOT_FOUND, f"Item not found: {item_id}")
        rows = await self.db.aquery(
            "SELECT i.path, b.label AS base_label, i.is_dir FROM item i JOIN base b ON b.id = i.base_id WHERE i.id = ?",
            (int(item_id),),
        )
        if not rows.ok or not rows.data:
            return Result.Err(rows.code if not rows.ok else ErrorCode.NOT_FOUND, rows.error or "Item vanished")
        return Result.Ok(rows.data[0])

    async def delete(self, item_id: int) -> Result[int]:
        return await self.db.aexecute("DELETE FROM item WHERE id = ?", (int(item_id),))

    async def set_model_name(self, item_id: int, model_name: Optional[str]) -> Result[int]:
        return await self.db.aexecute("UPDATE item SET model_name = ? WHERE id = ?", (model_name, int(item_id)))

    async def set_content_hash(self, item_id: int, content_hash: str, hash_state: Optional[str]) -> Result[int]:
        return await self.db.aexecute(
            "UPDATE item SET content_hash = ?, hash_state = ? WHERE id = ?",
            (content_hash, hash_state, int(item_id)),
        )

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_children(self, parent_id: int, *, limit: int = 50, offset: int = 0) -> Result[Dict[str, Any]]:
        """Page through the direct children of `parent_id`, directories first."""
        limit = max(1, min(SEARCH_MAX_LIMIT, int(limit)))
        offset = max(0, int(offset))
        rows = await self.db.aquery(
            f"""
            SELECT {_ITEM_COLUMNS}, COUNT(*) OVER() AS _total
            FROM item i JOIN base b ON b.id = i.base_id
            WHERE i.parent = ?
            ORDER BY i.is_dir DESC, i.name COLLATE NOCASE, i.id
            LIMIT ? OFFSET ?
            """,
            (int(parent_id), limit, offset),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to list items")
        items = rows.data or []
        total = int(items[0].pop("_total")) if items else 0
        for row in items[1:]:
            row.pop("_total", None)
        if not items and offset:
            count = await self.db.aquery("SELECT COUNT(*) AS n FROM item WHERE parent = ?", (int(parent_id),))
            total = int(count.data[0]["n"]) if count.ok and count.data else 0
        return Result.Ok({"items": items, "total": total, "limit": limit, "offset": offset})

    async def root_node_id(self, label: str) -> Result[Optional[int]]:
        rows = await self.db.aquery(
            "SELECT i.id FROM item i JOIN base b ON b.id = i.base_id WHERE b.label = ? AND i.path = ''",
            (label,),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read root node")
        return Result.Ok(int(rows.data[0]["id"]) if rows.data else None)

    async def list_root_level(self, label: str, *, limit: int = 50, offset: int = 0) -> Result[Dict[str, Any]]:
        """Top-level entries of root `label` (children of its root node)."""
        node = await self.root_node_id(label)
        if not node.ok:
            return Result.Err(node.code, node.error or "Failed to read root node")
        if node.data is None:
            return Result.Err(ErrorCode.NOT_FOUND, f"Unknown root: {label}")
        return await self.list_children(node.data, limit=limit, offset=offset)

    async def list_hashed_files(self, labels: Optional[List[str]] = None) -> Result[List[Dict[str, Any]]]:
        """Files that carry a content identity, optionally restricted to some roots."""
        base_sql = (
            f"SELECT {_ITEM_COLUMNS} FROM item i JOIN base b ON b.id = i.base_id "
            "WHERE i.is_dir = 0 AND i.content_hash IS NOT NULL"
        )
        if labels:
            return await self.db.aquery_in(
                base_sql + " AND {IN_CLAUSE} ORDER BY i.id",
                "b.label",
                list(labels),
            )
        return await self.db.aquery(base_sql + " ORDER BY i.id")
