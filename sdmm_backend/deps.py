"""
Dependency injection - builds services.
Simple, debug-friendly DI without framework magic.
"""
from typing import Optional

from .adapters.db.schema import migrate_schema
from .adapters.db.sqlite import Sqlite
from .adapters.tools import FFmpeg, FFProbe
from .config import DB_MAX_CONNECTIONS, DB_TIMEOUT, AppConfig
from .features.catalog import CatalogSearcher, ItemStore, RootStore
from .features.civitai import CivitaiClient, CivitaiEnricher
from .features.index import IndexService
from .features.tags import TagGraph
from .features.thumbnails import ThumbnailPipeline
from .features.trash import TrashService
from .shared import ErrorCode, Result, get_logger, log_success

logger = get_logger(__name__)


def _init_db_or_error(db_path: str) -> Result[Sqlite]:
    logger.info("Initializing database: %s", db_path)
    try:
        return Result.Ok(Sqlite(db_path, max_connections=DB_MAX_CONNECTIONS, timeout=DB_TIMEOUT))
    except OSError as exc:
        logger.error("Failed to initialize database: %s", exc)
        return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")


async def _migrate_db_or_error(db: Sqlite) -> Result[bool]:
    migrate_result = await migrate_schema(db)
    if not migrate_result.ok:
        logger.error("Schema migration failed: %s", migrate_result.error)
        return Result.Err(migrate_result.code or ErrorCode.DB_ERROR, f"Failed to initialize database: {migrate_result.error}")
    return Result.Ok(True)


def _init_tools(config: AppConfig) -> tuple[FFProbe, FFmpeg]:
    ffprobe = FFProbe(bin_name=config.ffprobe_bin, timeout=config.tool_timeout)
    ffmpeg = FFmpeg(bin_name=config.ffmpeg_bin, timeout=config.tool_timeout)
    return ffprobe, ffmpeg


def _log_tool_availability(ffprobe: FFProbe, ffmpeg: FFmpeg) -> None:
    if ffprobe.is_available():
        log_success(logger, "ffprobe is available")
    else:
        logger.warning("ffprobe not found - video previews cannot be detected")
    if ffmpeg.is_available():
        log_success(logger, "ffmpeg is available")
    else:
        logger.warning("ffmpeg not found - video previews will not get a still thumbnail")


async def build_services(db_path: Optional[str] = None, *, config: Optional[AppConfig] = None) -> Result[dict]:
    """
    Build all services (DI container).

    Args:
        db_path: Path to SQLite database (default: `config.db_path`)
        config: user configuration (default: `AppConfig()`)

    Returns:
        Result[dict] of service instances
    """
    logger.info("Building services...")
    config = config or AppConfig()
    db_res = _init_db_or_error(db_path or config.db_path)
    if not db_res.ok or db_res.data is None:
        return Result.Err(db_res.code or ErrorCode.DB_ERROR, db_res.error or "Failed to initialize database")
    db = db_res.data

    migrate_result = await _migrate_db_or_error(db)
    if not migrate_result.ok:
        await db.aclose()
        return migrate_result  # type: ignore[return-value]

    ffprobe, ffmpeg = _init_tools(config)
    _log_tool_availability(ffprobe, ffmpeg)

    items = ItemStore(db)
    thumbnails = ThumbnailPipeline(ffprobe=ffprobe, ffmpeg=ffmpeg)
    civitai = CivitaiClient.from_config(config.civitai)
    enricher = CivitaiEnricher(
        db,
        civitai,
        base_paths=config.model_paths,
        thumbnails=thumbnails,
        overwrite_thumbnail=config.civitai.overwrite_thumbnail,
        metadata_ext=config.metadata_ext,
        preview_ext=config.preview_ext,
    )

    services = {
        "db": db,
        "config": config,
        "ffprobe": ffprobe,
        "ffmpeg": ffmpeg,
        "roots": RootStore(db),
        "items": items,
        "searcher": CatalogSearcher(db, items),
        "tags": TagGraph(db),
        "civitai": civitai,
        "thumbnails": thumbnails,
        "enricher": enricher,
        "index": IndexService(db, config, enricher=enricher),
        "trash": TrashService(
            db,
            config.model_paths,
            trash_dir=config.trash_dir,
            metadata_ext=config.metadata_ext,
            preview_ext=config.preview_ext,
            extensions=config.accepted_extensions,
        ),
    }

    log_success(logger, "All services initialized")
    return Result.Ok(services)


async def dispose_services(services: dict) -> None:
    """Stop background runs and release network/database resources."""
    index = services.get("index")
    if index is not None:
        await index.stop()
    civitai = services.get("civitai")
    if civitai is not None:
        await civitai.aclose()
    db = services.get("db")
    if db is not None:
        await db.aclose()
