"""
Synchronization endpoints: start passes, sweep, enrichment, status.
"""
from aiohttp import web

from ...utils import parse_bool
from ..core import _json_response, _read_json, _require_services, _service_or_error


def register_sync_routes(routes: web.RouteTableDef) -> None:
    @routes.post("/sdmm/sync")
    async def start_sync(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        index_res = _service_or_error(svc, "index")
        if not index_res.ok:
            return _json_response(index_res)

        body_res = await _read_json(request)
        if not body_res.ok:
            return _json_response(body_res)
        body = body_res.data or {}
        result = await index_res.data.start_background_sync(
            enrich=parse_bool(body.get("enrich"), False),
            exclusive=parse_bool(body.get("exclusive"), False),
        )
        return _json_response(result)

    @routes.post("/sdmm/clean")
    async def clean(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        index_res = _service_or_error(svc, "index")
        if not index_res.ok:
            return _json_response(index_res)
        return _json_response(await index_res.data.clean())

    @routes.post("/sdmm/enrich")
    async def start_enrich(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        index_res = _service_or_error(svc, "index")
        if not index_res.ok:
            return _json_response(index_res)
        return _json_response(await index_res.data.start_background_enrich())

    @routes.get("/sdmm/status")
    async def status(request: web.Request) -> web.Response:
        svc, error_result = await _require_services()
        if error_result:
            return _json_response(error_result)
        index_res = _service_or_error(svc, "index")
        if not index_res.ok:
            return _json_response(index_res)
        return _json_response(await index_res.data.get_status())
