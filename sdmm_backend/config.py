"""
Configuration for SD Models Manager.

Two layers:
- module-level tunables read from `SDMM_*` environment variables (DB pool,
  tool timeouts, search limits);
- `AppConfig`, the user configuration loaded from a JSON file, with a few env
  overrides applied on top so containers can inject secrets.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .shared import ErrorCode, Result
from .utils import env_bool, parse_bool, parse_int

logger = logging.getLogger(__name__)


def _env_raw(*names: str, default: str | None = None) -> str | None:
    for name in names:
        if not name:
            continue
        val = os.getenv(name)
        if val is not None and str(val).strip() != "":
            return str(val).strip()
    return default


def _env_int(default: int, *names: str, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid integer for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_float(default: float, *names: str, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = _env_raw(*names)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        logger.warning("Invalid float for %s=%r, using default=%s", names[0] if names else "<unknown>", raw, default)
        return default
    if min_value is not None and value < min_value:
        logger.warning("Value too small for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, min_value)
        value = min_value
    if max_value is not None and value > max_value:
        logger.warning("Value too large for %s=%s, clamped to %s", names[0] if names else "<unknown>", value, max_value)
        value = max_value
    return value


def _env_bool(default: bool, *names: str) -> bool:
    for name in names:
        if name and name in os.environ:
            return env_bool(name, default)
    return default


# Database
DB_TIMEOUT = _env_float(30.0, "SDMM_DB_TIMEOUT", min_value=1.0, max_value=600.0)
DB_MAX_CONNECTIONS = _env_int(8, "SDMM_DB_MAX_CONNECTIONS", min_value=1, max_value=64)
DB_QUERY_TIMEOUT = _env_float(0.0, "SDMM_DB_QUERY_TIMEOUT", min_value=0.0, max_value=600.0)

# Walker
WALK_MAX_WORKERS_CAP = 64

# External tools
FFPROBE_BIN = _env_raw("SDMM_FFPROBE_BIN", default="ffprobe")
FFMPEG_BIN = _env_raw("SDMM_FFMPEG_BIN", default="ffmpeg")
TOOL_TIMEOUT = _env_float(30.0, "SDMM_TOOL_TIMEOUT", min_value=1.0, max_value=600.0)

# Search
SEARCH_MAX_QUERY_LENGTH = 256
SEARCH_MAX_TOKENS = 16
SEARCH_MAX_TAGS = 32
SEARCH_MAX_LIMIT = _env_int(500, "SDMM_SEARCH_MAX_LIMIT", min_value=1, max_value=5000)

# Registry
CIVITAI_BASE_URL = "https://civitai.com/api/v1"
CIVITAI_USER_AGENT = "sd-models-manager"


DEFAULT_CONFIG_PATH = Path(_env_raw("SDMM_CONFIG", default="config.json") or "config.json")


@dataclass
class CivitaiConfig:
    api_key: str = ""
    base_url: str = CIVITAI_BASE_URL
    overwrite_thumbnail: bool = False
    concurrency: int = 4
    timeout: float = 30.0
    max_retries: int = 2

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CivitaiConfig":
        out = cls()
        out.api_key = str(data.get("api_key") or "")
        out.base_url = str(data.get("base_url") or CIVITAI_BASE_URL).rstrip("/")
        out.overwrite_thumbnail = parse_bool(data.get("overwrite_thumbnail"), False)
        out.concurrency = parse_int(data.get("concurrency"), 4, min_value=1, max_value=32)
        try:
            out.timeout = max(1.0, float(data.get("timeout", 30.0)))
        except (TypeError, ValueError):
            out.timeout = 30.0
        out.max_retries = parse_int(data.get("max_retries"), 2, min_value=0, max_value=10)
        return out


@dataclass
class AppConfig:
    """User configuration for a catalog instance."""

    model_paths: dict[str, str] = field(default_factory=dict)
    extensions: list[str] = field(default_factory=lambda: ["safetensors", "ckpt", "pt"])
    db_path: str = "models.db"
    walkdir_parallel: int = 8
    page_size: int = 50
    civitai: CivitaiConfig = field(default_factory=CivitaiConfig)
    listen_addr: str = "127.0.0.1"
    listen_port: int = 3000
    ffmpeg_bin: str = FFMPEG_BIN or "ffmpeg"
    ffprobe_bin: str = FFPROBE_BIN or "ffprobe"
    tool_timeout: float = TOOL_TIMEOUT
    trash_dir: str = ".trash"
    metadata_ext: str = "json"
    preview_ext: str = "jpeg"
    init_timeout: float = 5.0

    @property
    def accepted_extensions(self) -> frozenset[str]:
        return frozenset(e.lower().lstrip(".") for e in self.extensions if e)

    def base_path(self, label: str) -> Path | None:
        raw = self.model_paths.get(label)
        return Path(raw) if raw else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppConfig":
        cfg = cls()
        paths = data.get("model_paths") or {}
        if isinstance(paths, dict):
            cfg.model_paths = {str(k): str(v) for k, v in paths.items() if k and v}
        exts = data.get("extensions")
        if isinstance(exts, list) and exts:
            cfg.extensions = [str(e).lower().lstrip(".") for e in exts if str(e).strip()]
        cfg.db_path = str(data.get("db_path") or cfg.db_path)
        cfg.walkdir_parallel = parse_int(
            data.get("walkdir_parallel"), cfg.walkdir_parallel, min_value=1, max_value=WALK_MAX_WORKERS_CAP
        )
        cfg.page_size = parse_int(data.get("page_size", data.get("count")), cfg.page_size, min_value=1, max_value=SEARCH_MAX_LIMIT)
        civitai = data.get("civitai") or {}
        cfg.civitai = CivitaiConfig.from_dict(civitai if isinstance(civitai, dict) else {})
        cfg.listen_addr = str(data.get("listen_addr") or cfg.listen_addr)
        cfg.listen_port = parse_int(data.get("listen_port"), cfg.listen_port, min_value=1, max_value=65535)
        cfg.ffmpeg_bin = str(data.get("ffmpeg_bin") or cfg.ffmpeg_bin)
        cfg.ffprobe_bin = str(data.get("ffprobe_bin") or cfg.ffprobe_bin)
        try:
            cfg.tool_timeout = max(1.0, float(data.get("tool_timeout", cfg.tool_timeout)))
            cfg.init_timeout = max(0.1, float(data.get("init_timeout", cfg.init_timeout)))
        except (TypeError, ValueError):
            logger.warning("Invalid timeout value in config, keeping defaults")
        cfg.trash_dir = str(data.get("trash_dir") or cfg.trash_dir)
        cfg.metadata_ext = str(data.get("metadata_ext") or cfg.metadata_ext).lstrip(".")
        cfg.preview_ext = str(data.get("preview_ext") or cfg.preview_ext).lstrip(".").lower()
        return cfg

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_env_overrides(self) -> "AppConfig":
        db_path = _env_raw("SDMM_DB_PATH")
        if db_path:
            self.db_path = db_path
        api_key = _env_raw("SDMM_CIVITAI_API_KEY", "CIVITAI_API_KEY")
        if api_key:
            self.civitai.api_key = api_key
        self.civitai.overwrite_thumbnail = _env_bool(self.civitai.overwrite_thumbnail, "SDMM_OVERWRITE_THUMBNAIL")
        self.walkdir_parallel = _env_int(
            self.walkdir_parallel, "SDMM_WALKDIR_PARALLEL", min_value=1, max_value=WALK_MAX_WORKERS_CAP
        )
        self.listen_port = _env_int(self.listen_port, "SDMM_LISTEN_PORT", min_value=1, max_value=65535)
        listen_addr = _env_raw("SDMM_LISTEN_ADDR")
        if listen_addr:
            self.listen_addr = listen_addr
        return self


def load_config(path: str | Path | None = None):
    """
    Load the JSON configuration file and apply env overrides.

    A missing file yields the defaults; an unreadable or malformed file is an error.

    Returns:
        Result[AppConfig]
    """
    cfg_path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not cfg_path.exists():
        logger.warning("Config file %s not found, using defaults", cfg_path)
        return Result.Ok(AppConfig().apply_env_overrides(), source="defaults")
    try:
        data = json.loads(cfg_path.read_text(encoding="utf-8"))
    except OSError as exc:
        return Result.Err(ErrorCode.IO_ERROR, f"Failed to read config: {exc}")
    except json.JSONDecodeError as exc:
        return Result.Err(ErrorCode.PARSE_ERROR, f"Invalid config JSON: {exc}")
    if not isinstance(data, dict):
        return Result.Err(ErrorCode.PARSE_ERROR, "Config root must be an object")
    return Result.Ok(AppConfig.from_dict(data).apply_env_overrides(), source=str(cfg_path))


def export_default_config(path: str | Path):
    """Write the default configuration as pretty JSON. Returns Result[Path]."""
    out = Path(path)
    try:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(AppConfig().to_dict(), indent=2), encoding="utf-8")
    except OSError as exc:
        return Result.Err(ErrorCode.IO_ERROR, f"Failed to write config: {exc}")
    return Result.Ok(out)
