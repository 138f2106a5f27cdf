"""
Route registration system.
Coordinates all route handlers and registers them on an aiohttp app.
"""
from __future__ import annotations

from pathlib import Path
from typing import Mapping

from aiohttp import web

from ..observability import ensure_observability
from ..shared import get_logger
from .handlers import (
    register_catalog_routes,
    register_sync_routes,
    register_tags_routes,
    register_trash_routes,
)
from .handlers.catalog import STATIC_PREFIX

API_PREFIX = "/sdmm/"
_APP_KEY_ROUTES_REGISTERED: web.AppKey[bool] = web.AppKey("_sdmm_routes_registered", bool)

logger = get_logger(__name__)


def _log_route_collisions(app: web.Application, routes: web.RouteTableDef) -> None:
    app_paths = {
        getattr(route.resource, "canonical", "")
        for route in app.router.routes()
        if route.resource is not None
    }
    table_paths = {getattr(item, "path", "") for item in routes}
    overlaps = sorted(p for p in app_paths.intersection(table_paths) if p)
    if overlaps:
        logger.warning("Potential route path collisions detected before registration: %s", ", ".join(overlaps[:20]))


def register_all_routes() -> web.RouteTableDef:
    """
    Build the RouteTableDef holding every API handler.
    """
    routes = web.RouteTableDef()
    register_catalog_routes(routes)
    register_sync_routes(routes)
    register_tags_routes(routes)
    register_trash_routes(routes)

    logger.debug("=" * 60)
    logger.debug("Routes registered:")
    for item in routes:
        logger.debug("  %s %s", getattr(item, "method", "?"), getattr(item, "path", "?"))
    logger.debug("=" * 60)
    return routes


def register_static_roots(app: web.Application, model_paths: Mapping[str, str]) -> None:
    """Serve each configured root read-only under `/base_<label>/`."""
    for label, path in model_paths.items():
        base = Path(path)
        if not base.is_dir():
            logger.warning("Not serving root %s: %s is not a directory", label, base)
            continue
        app.router.add_static(f"{STATIC_PREFIX}{label}/", base, name=f"base_{label}", show_index=False)


def register_routes(app: web.Application) -> None:
    """
    Register API routes (and the observability middleware) onto an aiohttp application.
    """
    ensure_observability(app)
    if app.get(_APP_KEY_ROUTES_REGISTERED):
        logger.debug("register_routes(app) skipped: routes already registered on this app")
        return
    route_table = register_all_routes()
    _log_route_collisions(app, route_table)
    app.add_routes(route_table)
    app[_APP_KEY_ROUTES_REGISTERED] = True
