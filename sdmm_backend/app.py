"""
aiohttp application factory.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from aiohttp import web

from .config import AppConfig
from .deps import build_services
from .routes import register_routes, register_static_roots
from .routes.core import _dispose_services, configure_services, set_services
from .shared import get_logger, log_success

logger = get_logger(__name__)

_APP_KEY_CONFIG: web.AppKey[AppConfig] = web.AppKey("sdmm_config", AppConfig)


async def _on_startup(app: web.Application) -> None:
    config = app[_APP_KEY_CONFIG]
    try:
        res = await asyncio.wait_for(build_services(config=config), timeout=config.init_timeout)
    except asyncio.TimeoutError:
        # Routes retry lazily through _require_services().
        logger.warning("Service initialization exceeded %.1fs; deferring to first request", config.init_timeout)
        return
    if not res.ok:
        logger.error("Service initialization failed: %s", res.error)
        return
    set_services(res.data)
    log_success(logger, f"Serving {len(config.model_paths)} root(s)")


async def _on_cleanup(_app: web.Application) -> None:
    await _dispose_services()


def create_app(config: AppConfig, services: Optional[dict] = None) -> web.Application:
    """
    Build the HTTP application for `config`.

    When `services` is given it is installed as-is and no startup build runs.
    """
    app = web.Application()
    app[_APP_KEY_CONFIG] = config
    configure_services(config)
    if services is not None:
        set_services(services)
    else:
        app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)

    register_routes(app)
    register_static_roots(app, config.model_paths)
    return app
