"""
Database schema and migrations.
"""
import re
from typing import List

from ...shared import ErrorCode, Result, get_logger, log_success

logger = get_logger(__name__)

CURRENT_SCHEMA_VERSION = 3
# Schema version history (high-level):
# 1: base/item/tag/tag_item tables
# 2: tag_depend edges, item.hash_state, item.is_dir
# 3: item_fts full-text index over name/model_name

SCHEMA_V1 = """
-- Metadata table for schema versioning
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- Configured roots ("base" directories), keyed by label
CREATE TABLE IF NOT EXISTS base (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    label TEXT NOT NULL UNIQUE,
    is_checked INTEGER NOT NULL DEFAULT 0
);

-- Directory nodes and files below a root; path '' is the root node itself
CREATE TABLE IF NOT EXISTS item (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT,
    model_name TEXT,
    path TEXT NOT NULL,
    base_id INTEGER NOT NULL,
    parent INTEGER,
    is_dir INTEGER NOT NULL DEFAULT 0,
    content_hash TEXT,
    hash_state TEXT,
    is_checked INTEGER NOT NULL DEFAULT 0,
    UNIQUE (base_id, path),
    FOREIGN KEY (base_id) REFERENCES base(id) ON DELETE CASCADE,
    FOREIGN KEY (parent) REFERENCES item(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS tag (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT
);

CREATE TABLE IF NOT EXISTS tag_item (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tag INTEGER NOT NULL,
    item INTEGER NOT NULL,
    UNIQUE (tag, item),
    FOREIGN KEY (tag) REFERENCES tag(id) ON DELETE CASCADE,
    FOREIGN KEY (item) REFERENCES item(id) ON DELETE CASCADE
);

-- tag implies depend
CREATE TABLE IF NOT EXISTS tag_depend (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tag INTEGER NOT NULL,
    depend INTEGER NOT NULL,
    UNIQUE (tag, depend),
    FOREIGN KEY (tag) REFERENCES tag(id) ON DELETE CASCADE,
    FOREIGN KEY (depend) REFERENCES tag(id) ON DELETE CASCADE
);
"""

# Columns added after v1; ensured on every start for older databases.
COLUMN_DEFINITIONS = {
    "item": [
        ("model_name", "model_name TEXT"),
        ("is_dir", "is_dir INTEGER NOT NULL DEFAULT 0"),
        ("content_hash", "content_hash TEXT"),
        ("hash_state", "hash_state TEXT"),
    ],
    "tag": [
        ("description", "description TEXT"),
    ],
}

INDEXES_AND_TRIGGERS = """
CREATE INDEX IF NOT EXISTS idx_item_parent ON item(parent);
CREATE INDEX IF NOT EXISTS idx_item_base ON item(base_id);
CREATE INDEX IF NOT EXISTS idx_item_checked ON item(is_checked);
CREATE INDEX IF NOT EXISTS idx_item_content_hash ON item(content_hash);
CREATE INDEX IF NOT EXISTS idx_tag_item_item ON tag_item(item);
CREATE INDEX IF NOT EXISTS idx_tag_depend_tag ON tag_depend(tag);

CREATE VIRTUAL TABLE IF NOT EXISTS item_fts USING fts5(
    name,
    model_name,
    content='item',
    content_rowid='id',
    tokenize='unicode61 remove_diacritics 2'
);

CREATE TRIGGER IF NOT EXISTS item_fts_insert AFTER INSERT ON item BEGIN
    INSERT INTO item_fts(rowid, name, model_name)
    VALUES (new.id, COALESCE(new.name, ''), COALESCE(new.model_name, ''));
END;

CREATE TRIGGER IF NOT EXISTS item_fts_delete AFTER DELETE ON item BEGIN
    INSERT INTO item_fts(item_fts, rowid, name, model_name)
    VALUES ('delete', old.id, COALESCE(old.name, ''), COALESCE(old.model_name, ''));
END;

CREATE TRIGGER IF NOT EXISTS item_fts_update AFTER UPDATE OF name, model_name ON item
WHEN old.name IS NOT new.name OR old.model_name IS NOT new.model_name BEGIN
    INSERT INTO item_fts(item_fts, rowid, name, model_name)
    VALUES ('delete', old.id, COALESCE(old.name, ''), COALESCE(old.model_name, ''));
    INSERT INTO item_fts(rowid, name, model_name)
    VALUES (new.id, COALESCE(new.name, ''), COALESCE(new.model_name, ''));
END;
"""

_SAFE_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _is_safe_identifier(value: str) -> bool:
    return bool(value and isinstance(value, str) and _SAFE_IDENT_RE.match(value))


async def _get_table_columns(db, table_name: str) -> Result[List[str]]:
    if not _is_safe_identifier(table_name):
        return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid table name: {table_name}")
    result = await db.aquery(f"PRAGMA table_info('{table_name}')")
    if not result.ok:
        return Result.Err(ErrorCode.DB_ERROR, f"Unable to inspect {table_name}: {result.error}")
    return Result.Ok([row["name"] for row in result.data or []])


async def table_has_column(db, table_name: str, column_name: str) -> bool:
    if not _is_safe_identifier(column_name):
        logger.warning("Invalid identifier in table_has_column: %s.%s", table_name, column_name)
        return False
    columns_result = await _get_table_columns(db, table_name)
    if not columns_result.ok:
        logger.warning("Unable to determine columns for %s.%s: %s", table_name, column_name, columns_result.error)
        return False
    return column_name in (columns_result.data or [])


async def _ensure_column(db, table_name: str, column_name: str, definition: str) -> Result[bool]:
    columns_result = await _get_table_columns(db, table_name)
    if not columns_result.ok:
        return Result.Err(columns_result.code, columns_result.error or "PRAGMA failed")
    if column_name in (columns_result.data or []):
        return Result.Ok(True)

    logger.info("Adding missing column %s.%s", table_name, column_name)
    alter_result = await db.aexecute(f"ALTER TABLE {table_name} ADD COLUMN {definition}")
    if not alter_result.ok:
        return Result.Err(alter_result.code, alter_result.error or "ALTER TABLE failed")
    return Result.Ok(True)


async def ensure_columns_exist(db) -> Result[bool]:
    for table, columns in COLUMN_DEFINITIONS.items():
        for column_name, definition in columns:
            result = await _ensure_column(db, table, column_name, definition)
            if not result.ok:
                logger.error("Failed to ensure column %s.%s: %s", table, column_name, result.error)
                return result
    return Result.Ok(True)


async def ensure_tables_exist(db) -> Result[bool]:
    logger.debug("Ensuring tables exist...")
    result = await db.aexecutescript(SCHEMA_V1)
    if not result.ok:
        logger.error("Failed to ensure base tables: %s", result.error)
    return result


async def ensure_indexes_and_triggers(db) -> Result[bool]:
    logger.debug("Ensuring indexes/triggers exist...")
    result = await db.aexecutescript(INDEXES_AND_TRIGGERS)
    if not result.ok:
        logger.error("Failed to ensure indexes/triggers: %s", result.error)
    return result


async def _ensure_schema(db) -> Result[bool]:
    for step in (ensure_tables_exist, ensure_columns_exist, ensure_indexes_and_triggers):
        result = await step(db)
        if not result.ok:
            return result

    version_result = await db.aset_schema_version(CURRENT_SCHEMA_VERSION)
    if not version_result.ok:
        logger.error("Failed to set schema version: %s", version_result.error)
        return Result.Err(version_result.code, version_result.error or "Failed to set schema version")

    return Result.Ok(True)


async def migrate_schema(db) -> Result[bool]:
    """
    Repair schema to the current version by ensuring expected tables, columns,
    indexes, and triggers exist.

    Args:
        db: Sqlite instance

    Returns:
        Result with success boolean
    """
    current_version = await db.aget_schema_version()
    logger.debug("Ensuring schema (current version %s -> target %s)", current_version, CURRENT_SCHEMA_VERSION)

    repair_result = await _ensure_schema(db)
    if not repair_result.ok:
        return repair_result

    if current_version != CURRENT_SCHEMA_VERSION:
        if current_version and current_version < 3:
            rebuild = await rebuild_fts(db)
            if not rebuild.ok:
                return rebuild
        log_success(logger, f"Schema migrated from version {current_version} to {CURRENT_SCHEMA_VERSION}")
    return Result.Ok(True)


async def rebuild_fts(db) -> Result[bool]:
    """
    Rebuild the item name full-text index from the `item` table.
    """
    logger.info("Rebuilding FTS index...")
    result = await db.aexecute("INSERT INTO item_fts(item_fts) VALUES('rebuild')")
    if not result.ok:
        logger.error("Failed to rebuild item_fts: %s", result.error)
        return Result.Err(result.code, result.error or "FTS rebuild failed")
    return Result.Ok(True)
