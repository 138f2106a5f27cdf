"""Backend-facing alias for shared utilities.

Backend modules import `Result`, `get_logger` and friends from here so the
shared package can move without touching every feature module.
"""

from __future__ import annotations

import sdmm_shared as _root_shared

Result = _root_shared.Result
ErrorCode = _root_shared.ErrorCode
get_logger = _root_shared.get_logger
log_success = _root_shared.log_success
log_structured = _root_shared.log_structured
request_id_var = _root_shared.request_id_var
sanitize_error_message = _root_shared.sanitize_error_message
timer = _root_shared.timer
PreviewKind = _root_shared.PreviewKind
DEFAULT_MODEL_EXTENSIONS = _root_shared.DEFAULT_MODEL_EXTENSIONS

__all__ = list(_root_shared.__all__)
