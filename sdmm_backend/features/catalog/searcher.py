"""
Catalog search: full-text name search, tag-set search, and their union.

The two branches are separate parameterized queries; `search()` merges them
by item id so an item matching both is returned and counted once.
"""
import re
from typing import Any, Dict, List, Optional, Sequence

from ...adapters.db.sqlite import Sqlite
from ...config import SEARCH_MAX_LIMIT, SEARCH_MAX_QUERY_LENGTH, SEARCH_MAX_TAGS, SEARCH_MAX_TOKENS
from ...shared import ErrorCode, Result, get_logger
from ..tags.graph import normalize_tag
from .items import ItemStore

logger = get_logger(__name__)

_FTS_SPECIAL_RE = re.compile(r"[\"'\-:&/\\|;@#*~()\[\]{}.^+,=<>!?%$]+")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]+")


def sanitize_fts_query(query: str) -> str:
    """
    Strip FTS5 operators, collapse whitespace, and turn every token into a
    quoted prefix match (`dark` -> `"dark"*`). Returns '' when nothing is left.
    """
    text = _CONTROL_RE.sub(" ", str(query or ""))
    text = _FTS_SPECIAL_RE.sub(" ", text)
    tokens = text.split()[:SEARCH_MAX_TOKENS]
    return " ".join(f'"{token}"*' for token in tokens)


class CatalogSearcher:
    def __init__(self, db: Sqlite, items: Optional[ItemStore] = None):
        self.db = db
        self.items = items or ItemStore(db)

    async def search_by_name(self, query: str) -> Result[List[int]]:
        """Ids of items whose name or model name matches every query token (best first)."""
        text = str(query or "").strip()
        if len(text) > SEARCH_MAX_QUERY_LENGTH:
            return Result.Err(ErrorCode.INVALID_INPUT, f"Query longer than {SEARCH_MAX_QUERY_LENGTH} characters")
        fts_query = sanitize_fts_query(text)
        if not fts_query:
            return Result.Ok([])
        rows = await self.db.aquery(
            "SELECT rowid AS id FROM item_fts WHERE item_fts MATCH ? ORDER BY bm25(item_fts), rowid DESC",
            (fts_query,),
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Name search failed")
        return Result.Ok([int(r["id"]) for r in rows.data or []])

    async def search_by_tags(self, tags: Sequence[str], *, match_all: bool = False) -> Result[List[int]]:
        """
        Ids of items carrying any (or, with `match_all`, every) of `tags`.
        """
        names = sorted({n for n in (normalize_tag(t) for t in tags or []) if n})
        if not names:
            return Result.Ok([])
        if len(names) > SEARCH_MAX_TAGS:
            return Result.Err(ErrorCode.INVALID_INPUT, f"At most {SEARCH_MAX_TAGS} tags per search")
        having = " HAVING COUNT(DISTINCT t.id) = ?" if match_all else ""
        rows = await self.db.aquery_in(
            "SELECT ti.item AS id FROM tag_item ti JOIN tag t ON t.id = ti.tag "
            "WHERE {IN_CLAUSE} GROUP BY ti.item" + having + " ORDER BY ti.item DESC",
            "t.name",
            names,
            additional_params=(len(names),) if match_all else None,
        )
        if not rows.ok:
            return Result.Err(rows.code, rows.error or "Tag search failed")
        return Result.Ok([int(r["id"]) for r in rows.data or []])

    async def search(
        self,
        query: str = "",
        tags: Sequence[str] = (),
        *,
        match_all: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Result[Dict[str, Any]]:
        """
        Union of name and tag matches, deduplicated by id, newest id first.
        """
        limit = max(1, min(SEARCH_MAX_LIMIT, int(limit)))
        offset = max(0, int(offset))

        ids: set[int] = set()
        if str(query or "").strip():
            by_name = await self.search_by_name(query)
            if not by_name.ok:
                return Result.Err(by_name.code, by_name.error or "Name search failed")
            ids.update(by_name.data or [])
        if tags:
            by_tags = await self.search_by_tags(tags, match_all=match_all)
            if not by_tags.ok:
                return Result.Err(by_tags.code, by_tags.error or "Tag search failed")
            ids.update(by_tags.data or [])

        ordered = sorted(ids, reverse=True)
        page_ids = ordered[offset:offset + limit]
        items: List[Dict[str, Any]] = []
        if page_ids:
            rows = await self.items.get_many(page_ids)
            if not rows.ok:
                return Result.Err(rows.code, rows.error or "Failed to load search results")
            by_id = {int(r["id"]): r for r in rows.data or []}
            items = [by_id[i] for i in page_ids if i in by_id]
        return Result.Ok(
            {"items": items, "total": len(ordered), "limit": limit, "offset": offset}
        )
