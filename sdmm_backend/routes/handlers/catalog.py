"""
Catalog browsing endpoints: roots, listings, item details and search.
"""
from pathlib import PurePosixPath
from typing import Any, Dict
from urllib.parse import quote

from aiohttp import web

from ...shared import ErrorCode, Result, get_logger
from ..core import (
    _json_response,
    _page_params,
    _parse_item_id,
    _query_bool,
    _require_services,
    _service_or_error,
)

logger = get_logger(__name__)

STATIC_PREFIX = "/base_"


def static_url(label: str, rel_path: str) -> str:
    """URL of a file below root `label` as served by the static routes."""
    return f"{STATIC_PREFIX}{quote(label)}/{quote(rel_path)}"


def _with_urls(row: Dict[str, Any], preview_ext: str) -> Dict[str, Any]:
    label = str(row.get("base_label") or "")
    path = str(row.get("path") or "")
    out = dict(row)
    out["is_dir"] = bool(row.get("is_dir"))
    if label and path and not out["is_dir"]:
        out["url"] = static_url(label, path)
        out["preview_url"] = static_url(label, str(PurePosixPath(path).with_suffix(f".{preview_ext}")))
    return out


def _page_with_urls(page: Dict[str, Any], preview_ext: str) -> Dict[str, Any]:
    return {**page, "items": [_with_urls(r, preview_ext) for r in page.get("items") or []]}


def _split_tags(raw: str) -> list[str]:
    return [t.strip() for t in str(raw or "").split(",") if t.strip()]


def register_catalog_routes(routes: web.RouteTableDef) -> None:
    @routes.get("/sdmm/roots")
    async def list_roots(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        roots = await svc["roots"].list_roots()
        if not roots.ok:
            return _json_response(roots)
        configured = svc["config"].model_paths
        data = [{**r, "configured": r.get("label") in configured} for r in roots.data or []]
        return _json_response(Result.Ok(data))

    @routes.get("/sdmm/items")
    async def list_items(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        config = svc["config"]
        limit, offset = _page_params(request, config.page_size)
        items = svc["items"]

        parent_raw = (request.query.get("parent") or "").strip()
        base = (request.query.get("base") or "").strip()
        if parent_raw:
            try:
                parent_id = int(parent_raw)
            except ValueError:
                return _json_response(Result.Err(ErrorCode.INVALID_INPUT, f"Invalid parent id: {parent_raw!r}"))
            page = await items.list_children(parent_id, limit=limit, offset=offset)
        elif base:
            page = await items.list_root_level(base, limit=limit, offset=offset)
        else:
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Either 'base' or 'parent' is required"))
        if not page.ok:
            return _json_response(page)
        return _json_response(Result.Ok(_page_with_urls(page.data or {}, config.preview_ext)))

    @routes.get("/sdmm/item/{item_id}")
    async def get_item(request: web.Request) -> web.Response:
        item_id = _parse_item_id(request)
        if not item_id.ok:
            return _json_response(item_id)
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        row = await svc["items"].get(item_id.data)
        if not row.ok:
            return _json_response(row)
        if row.data is None:
            return _json_response(Result.Err(ErrorCode.NOT_FOUND, f"Item not found: {item_id.data}"))
        tags = await svc["tags"].tags_for_item(item_id.data)
        if not tags.ok:
            return _json_response(tags)
        data = _with_urls(row.data, svc["config"].preview_ext)
        data["tags"] = sorted(tags.data or [])
        return _json_response(Result.Ok(data))

    @routes.get("/sdmm/search")
    async def search(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        searcher_res = _service_or_error(svc, "searcher")
        if not searcher_res.ok:
            return _json_response(searcher_res)
        config = svc["config"]

        query = request.query.get("q") or ""
        tags = _split_tags(request.query.get("tags") or "")
        if not query.strip() and not tags:
            return _json_response(Result.Err(ErrorCode.INVALID_INPUT, "Provide 'q' or 'tags'"))
        limit, offset = _page_params(request, config.page_size)
        result = await searcher_res.data.search(
            query,
            tags,
            match_all=_query_bool(request, "match_all"),
            limit=limit,
            offset=offset,
        )
        if not result.ok:
            return _json_response(result)
        return _json_response(Result.Ok(_page_with_urls(result.data or {}, config.preview_ext)))
