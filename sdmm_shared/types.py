"""
Shared types, enums, and constants.
"""
from enum import Enum
from typing import Final, Literal

# Content classification used by the preview pipeline
PreviewKind = Literal["image", "video", "unknown"]


class ErrorCode(str, Enum):
    """Standardized error codes (string enum)."""

    # Client / validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_JSON = "INVALID_JSON"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Feature / service availability
    TOOL_MISSING = "TOOL_MISSING"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    # Server / infrastructure
    DB_ERROR = "DB_ERROR"
    IO_ERROR = "IO_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"

    # Operation errors
    TRASH_FAILED = "TRASH_FAILED"

    # Tool / parsing
    FFPROBE_ERROR = "FFPROBE_ERROR"
    FFMPEG_ERROR = "FFMPEG_ERROR"
    PARSE_ERROR = "PARSE_ERROR"


# Default file extensions accepted as model files
DEFAULT_MODEL_EXTENSIONS: Final[tuple[str, ...]] = ("safetensors", "ckpt", "pt")
