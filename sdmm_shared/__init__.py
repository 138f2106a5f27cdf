"""Shared utilities for SD Models Manager."""
from .errors import sanitize_error_message
from .log import get_logger, log_structured, log_success, request_id_var
from .result import Result
from .time import timer
from .types import DEFAULT_MODEL_EXTENSIONS, ErrorCode, PreviewKind

__all__ = [
    "Result",
    "get_logger",
    "log_success",
    "log_structured",
    "request_id_var",
    "timer",
    "ErrorCode",
    "PreviewKind",
    "DEFAULT_MODEL_EXTENSIONS",
    "sanitize_error_message",
]
