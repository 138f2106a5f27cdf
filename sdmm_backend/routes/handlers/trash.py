"""
Trash endpoints: soft delete an item, empty every root's trash.
"""
from aiohttp import web

from ..core import _json_response, _parse_item_id, _require_services, _service_or_error


def register_trash_routes(routes: web.RouteTableDef) -> None:
    @routes.post("/sdmm/item/{item_id}/delete")
    async def delete_item(request: web.Request) -> web.Response:
        item_id = _parse_item_id(request)
        if not item_id.ok:
            return _json_response(item_id)
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        trash_res = _service_or_error(svc, "trash")
        if not trash_res.ok:
            return _json_response(trash_res)
        return _json_response(await trash_res.data.soft_delete(item_id.data))

    @routes.post("/sdmm/trash/empty")
    async def empty_trash(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        trash_res = _service_or_error(svc, "trash")
        if not trash_res.ok:
            return _json_response(trash_res)
        return _json_response(await trash_res.data.empty_trash())
