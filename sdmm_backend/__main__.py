"""
Command line entry point: `python -m sdmm_backend`.
"""
import argparse
import asyncio
import sys
from typing import Optional, Sequence

from aiohttp import web

from .app import create_app
from .config import AppConfig, export_default_config, load_config
from .deps import build_services, dispose_services
from .shared import get_logger, log_success

logger = get_logger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sdmm", description="Stable Diffusion models manager")
    parser.add_argument("--config", "-c", default=None, help="path to the JSON configuration file")
    parser.add_argument("--export-config", metavar="PATH", default=None, help="write the default configuration and exit")
    parser.add_argument(
        "--update-model-info",
        action="store_true",
        help="synchronize the catalog, fetch Civitai metadata for every model and exit",
    )
    return parser


async def _update_model_info(config: AppConfig) -> int:
    built = await build_services(config=config)
    if not built.ok:
        logger.error("Cannot start: %s", built.error)
        return 1
    services = built.data
    try:
        result = await services["index"].reload_from_disk(enrich=True)
    finally:
        await dispose_services(services)
    if not result.ok:
        logger.error("Update failed: %s", result.error)
        return 1
    log_success(logger, f"Catalog updated: {result.data}")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.export_config:
        exported = export_default_config(args.export_config)
        if not exported.ok:
            logger.error("%s", exported.error)
            return 1
        log_success(logger, f"Default configuration written to {exported.data}")
        return 0

    loaded = load_config(args.config)
    if not loaded.ok:
        logger.error("%s", loaded.error)
        return 1
    config = loaded.data
    logger.info("Configuration loaded from %s", loaded.meta.get("source"))

    if args.update_model_info:
        return asyncio.run(_update_model_info(config))

    web.run_app(create_app(config), host=config.listen_addr, port=config.listen_port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
