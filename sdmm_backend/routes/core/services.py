"""
Service management and initialization.
"""
import asyncio
import threading
from typing import Any, Optional

from ...config import AppConfig
from ...deps import build_services, dispose_services
from ...shared import ErrorCode, Result, get_logger
from .response import safe_error_message

logger = get_logger(__name__)

_services: Optional[dict] = None
_services_error: Optional[str] = None
_services_config: Optional[AppConfig] = None
_services_lock: asyncio.Lock | None = None
_services_lock_guard = threading.Lock()


def _get_services_lock() -> asyncio.Lock:
    global _services_lock
    if _services_lock is not None:
        return _services_lock
    with _services_lock_guard:
        if _services_lock is None:
            _services_lock = asyncio.Lock()
        return _services_lock


def configure_services(config: AppConfig) -> None:
    """Set the configuration used by the next (lazy) service build."""
    global _services_config
    _services_config = config


def set_services(services: Optional[dict]) -> None:
    """Install an already built container (app startup and tests)."""
    global _services, _services_error
    _services = services
    _services_error = None


async def _dispose_services() -> None:
    global _services
    if not _services:
        return
    services, _services = _services, None
    try:
        await dispose_services(services)
        logger.debug("Services disposed")
    except Exception as exc:
        logger.warning("Error while disposing services: %s", exc, exc_info=True)


async def _build_services(force: bool = False) -> Optional[dict]:
    global _services, _services_error
    async with _get_services_lock():
        if _services and not force:
            return _services

        if force:
            await _dispose_services()

        services_result = await build_services(config=_services_config)
        if not services_result.ok:
            _services_error = services_result.error or "Initialization failed"
            logger.error("Failed to initialize services: %s", _services_error)
            _services = None
            return None

        _services = services_result.data
        _services_error = None
        return _services


async def _require_services() -> tuple[dict[str, Any] | None, Result[Any] | None]:
    services = await _build_services()
    if services:
        return services, None
    return None, Result.Err(
        ErrorCode.SERVICE_UNAVAILABLE,
        "Services are unavailable",
        detail=safe_error_message(_services_error, "Initialization failed"),
    )


def get_services_error() -> Optional[str]:
    """Get the current services error if any."""
    return _services_error
