"""
Query / path parameter helpers for route handlers.
"""
from typing import Any, Optional

from aiohttp import web

from ...config import SEARCH_MAX_LIMIT
from ...shared import ErrorCode, Result
from ...utils import parse_bool, parse_int


def _parse_item_id(request: web.Request) -> Result[int]:
    raw = request.match_info.get("item_id", "")
    try:
        item_id = int(raw)
    except (TypeError, ValueError):
        return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid item id: {raw!r}")
    if item_id <= 0:
        return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid item id: {raw!r}")
    return Result.Ok(item_id)


def _page_params(request: web.Request, default_limit: int) -> tuple[int, int]:
    """(limit, offset) from 1-based `page` and `limit` query params."""
    limit = parse_int(request.query.get("limit"), default_limit, min_value=1, max_value=SEARCH_MAX_LIMIT)
    page = parse_int(request.query.get("page"), 1, min_value=1)
    return limit, (page - 1) * limit


def _query_bool(request: web.Request, key: str, default: bool = False) -> bool:
    return parse_bool(request.query.get(key), default)


def _service_or_error(services: Optional[dict], name: str) -> Result[Any]:
    svc = services.get(name) if isinstance(services, dict) else None
    if svc is None:
        return Result.Err(ErrorCode.SERVICE_UNAVAILABLE, f"Service unavailable: {name}")
    return Result.Ok(svc)
