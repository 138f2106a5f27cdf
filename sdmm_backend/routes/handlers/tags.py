"""
Tag endpoints: list/create/rename/delete tags, implied tags, item tagging.
"""
from typing import Any

from aiohttp import web

from ...shared import ErrorCode, Result
from ...utils import parse_bool
from ..core import _json_response, _parse_item_id, _read_json, _require_services


def _tag_list(value: Any) -> Result[list]:
    if value is None:
        return Result.Ok([])
    if isinstance(value, str):
        return Result.Ok([value])
    if not isinstance(value, list):
        return Result.Err(ErrorCode.INVALID_INPUT, "Tags must be a string or a list of strings")
    return Result.Ok([str(v) for v in value if isinstance(v, (str, int, float)) and not isinstance(v, bool)])


async def _services_and_body(request: web.Request):
    svc, error_result = await _require_services()
    if error_result:
        return None, None, error_result
    body_res = await _read_json(request)
    if not body_res.ok:
        return None, None, body_res
    return svc, body_res.data or {}, None


def register_tags_routes(routes: web.RouteTableDef) -> None:
    @routes.get("/sdmm/tags")
    async def list_tags(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        return _json_response(await svc["tags"].list_tags())

    @routes.post("/sdmm/tags")
    async def create_tag(request: web.Request) -> web.Response:
        svc, body, error_result = await _services_and_body(request)
        if error_result:
            return _json_response(error_result)
        description = body.get("description")
        result = await svc["tags"].add_tag(body.get("name") or "", str(description) if description else None)
        if not result.ok:
            return _json_response(result)
        return _json_response(Result.Ok({"id": result.data}))

    @routes.post("/sdmm/tags/rename")
    async def rename_tag(request: web.Request) -> web.Response:
        svc, body, error_result = await _services_and_body(request)
        if error_result:
            return _json_response(error_result)
        return _json_response(await svc["tags"].rename(body.get("old") or "", body.get("new") or ""))

    @routes.post("/sdmm/tags/delete")
    async def delete_tag(request: web.Request) -> web.Response:
        svc, body, error_result = await _services_and_body(request)
        if error_result:
            return _json_response(error_result)
        return _json_response(await svc["tags"].remove(body.get("name") or ""))

    @routes.post("/sdmm/tags/depend")
    async def add_dependency(request: web.Request) -> web.Response:
        svc, body, error_result = await _services_and_body(request)
        if error_result:
            return _json_response(error_result)
        return _json_response(await svc["tags"].add_dependency(body.get("tag") or "", body.get("depend") or ""))

    @routes.post("/sdmm/item/{item_id}/tags")
    async def tag_item(request: web.Request) -> web.Response:
        item_id = _parse_item_id(request)
        if not item_id.ok:
            return _json_response(item_id)
        svc, body, error_result = await _services_and_body(request)
        if error_result:
            return _json_response(error_result)
        add_res, remove_res = _tag_list(body.get("add")), _tag_list(body.get("remove"))
        if not add_res.ok or not remove_res.ok:
            return _json_response(add_res if not add_res.ok else remove_res)

        row = await svc["items"].get(item_id.data)
        if not row.ok:
            return _json_response(row)
        if row.data is None:
            return _json_response(Result.Err(ErrorCode.NOT_FOUND, f"Item not found: {item_id.data}"))

        graph = svc["tags"]
        for name in remove_res.data or []:
            removed = await graph.remove_from_item(item_id.data, name)
            if not removed.ok:
                return _json_response(removed)
        if parse_bool(body.get("with_dependencies"), False):
            for name in add_res.data or []:
                added = await graph.add_with_dependencies(item_id.data, name)
                if not added.ok:
                    return _json_response(added)
        elif add_res.data:
            added = await graph.add(item_id.data, add_res.data)
            if not added.ok:
                return _json_response(added)

        tags = await graph.tags_for_item(item_id.data)
        if not tags.ok:
            return _json_response(tags)
        return _json_response(Result.Ok({"item_id": item_id.data, "tags": sorted(tags.data or [])}))
