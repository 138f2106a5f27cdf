"""
Route handler modules.
"""
from .catalog import register_catalog_routes
from .sync import register_sync_routes
from .tags import register_tags_routes
from .trash import register_trash_routes

__all__ = [
    "register_catalog_routes",
    "register_sync_routes",
    "register_tags_routes",
    "register_trash_routes",
]
