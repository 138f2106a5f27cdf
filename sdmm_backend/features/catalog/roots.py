"""
Root ("base") rows of the catalog.
"""
from typing import Any, Dict, List, Optional

from ...adapters.db.sqlite import Sqlite
from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)


class RootStore:
    def __init__(self, db: Sqlite):
        self.db = db

    async def find_or_create(self, label: str) -> Result[int]:
        """Return the id of the root `label`, creating it if needed, and mark it checked."""
        label = str(label or "").strip()
        if not label:
            return Result.Err(ErrorCode.INVALID_INPUT, "Root label is empty")
        upsert = await self.db.aexecute(
            """
            INSERT INTO base (label, is_checked) VALUES (?, 1)
            ON CONFLICT(label) DO UPDATE SET is_checked = 1
            """,
            (label,),
        )
        if not upsert.ok:
            return Result.Err(upsert.code, upsert.error or "Failed to upsert root")
        return await self._id_for(label)

    async def _id_for(self, label: str) -> Result[int]:
        rows = await self.db.aquery("SELECT id FROM base WHERE label = ?", (label,))
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read root")
        if not rows.data:
            return Result.Err(ErrorCode.NOT_FOUND, f"Root not found: {label}")
        return Result.Ok(int(rows.data[0]["id"]))

    async def get_by_label(self, label: str) -> Result[Optional[Dict[str, Any]]]:
        rows = await self.db.aquery("SELECT id, label, is_checked FROM base WHERE label = ?", (label,))
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Failed to read root")
        return Result.Ok(rows.data[0] if rows.data else None)

    async def list_roots(self) -> Result[List[Dict[str, Any]]]:
        """Roots with the id of their root node item."""
        return await self.db.aquery(
            """
            SELECT b.id, b.label, b.is_checked, i.id AS node_id
            FROM base b
            LEFT JOIN item i ON i.base_id = b.id AND i.path = ''
            ORDER BY b.label
            """
        )

    async def reset_checked(self) -> Result[int]:
        return await self.db.aexecute("UPDATE base SET is_checked = 0")

    async def sweep_unchecked(self) -> Result[int]:
        res = await self.db.aexecute("DELETE FROM base WHERE is_checked = 0")
        if res.ok and res.data:
            logger.info("Swept %s unchecked root(s)", res.data)
        return res
