"""Database adapters."""
from .schema import migrate_schema, rebuild_fts
from .sqlite import Sqlite, rollback

__all__ = ["Sqlite", "migrate_schema", "rebuild_fts", "rollback"]
