"""
Core utilities for route handlers.
"""
from .params import _page_params, _parse_item_id, _query_bool, _service_or_error
from .request_json import _read_json
from .response import _json_response, safe_error_message
from .services import (
    _build_services,
    _dispose_services,
    _require_services,
    configure_services,
    get_services_error,
    set_services,
)

__all__ = [
    "_json_response",
    "safe_error_message",
    "_read_json",
    "_parse_item_id",
    "_page_params",
    "_query_bool",
    "_service_or_error",
    "_require_services",
    "_build_services",
    "_dispose_services",
    "configure_services",
    "set_services",
    "get_services_error",
]
