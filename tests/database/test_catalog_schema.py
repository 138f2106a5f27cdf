import pytest

from sdmm_backend.adapters.db.schema import CURRENT_SCHEMA_VERSION, migrate_schema, table_has_column
from sdmm_backend.adapters.db.sqlite import Sqlite, rollback


@pytest.mark.asyncio
async def test_migrate_creates_tables_and_version(tmp_path):
    db = Sqlite(str(tmp_path / "t.db"))
    try:
        assert (await migrate_schema(db)).ok
        for table in ("base", "item", "tag", "tag_item", "tag_depend", "item_fts"):
            assert await db.ahas_table(table)
        assert await db.aget_schema_version() == CURRENT_SCHEMA_VERSION
        assert await table_has_column(db, "item", "content_hash")
        # Re-running is a no-op.
        assert (await migrate_schema(db)).ok
    finally:
        await db.aclose()


@pytest.mark.asyncio
async def test_migrate_heals_missing_columns(tmp_path):
    db = Sqlite(str(tmp_path / "old.db"))
    try:
        await db.aexecutescript(
            """
            CREATE TABLE base (id INTEGER PRIMARY KEY AUTOINCREMENT, label TEXT NOT NULL UNIQUE, is_checked INTEGER NOT NULL DEFAULT 0);
            CREATE TABLE item (
                id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT, path TEXT NOT NULL, base_id INTEGER NOT NULL,
                parent INTEGER, is_checked INTEGER NOT NULL DEFAULT 0, UNIQUE (base_id, path)
            );
            CREATE TABLE tag (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL UNIQUE);
            """
        )
        assert (await migrate_schema(db)).ok
        assert await table_has_column(db, "item", "model_name")
        assert await table_has_column(db, "item", "hash_state")
        assert await table_has_column(db, "tag", "description")
    finally:
        await db.aclose()


@pytest.mark.asyncio
async def test_transaction_rollback(tmp_path):
    db = Sqlite(str(tmp_path / "tx.db"))
    try:
        await migrate_schema(db)
        async with db.atransaction() as tx:
            await db.aexecute("INSERT INTO base (label) VALUES ('A')")
            raise rollback(await db.aexecute("INSERT INTO base (label) VALUES ('A')"))
        assert not tx.ok
        rows = await db.aquery("SELECT COUNT(*) AS n FROM base")
        assert rows.data[0]["n"] == 0
    finally:
        await db.aclose()


@pytest.mark.asyncio
async def test_integrity_error_is_flagged(tmp_path):
    db = Sqlite(str(tmp_path / "i.db"))
    try:
        await migrate_schema(db)
        await db.aexecute("INSERT INTO tag (name) VALUES ('x')")
        dup = await db.aexecute("INSERT INTO tag (name) VALUES ('x')")
        assert not dup.ok
        assert dup.code == "DB_ERROR"
        assert dup.meta.get("integrity") is True
    finally:
        await db.aclose()


@pytest.mark.asyncio
async def test_query_in_binds_additional_params(tmp_path):
    db = Sqlite(str(tmp_path / "q.db"))
    try:
        await migrate_schema(db)
        for label in ("A", "B", "C"):
            await db.aexecute("INSERT INTO base (label, is_checked) VALUES (?, ?)", (label, 1 if label != "B" else 0))
        rows = await db.aquery_in(
            "SELECT label FROM base WHERE {IN_CLAUSE} AND is_checked = ? ORDER BY label",
            "label",
            ["A", "B"],
            additional_params=(1,),
        )
        assert [r["label"] for r in rows.data] == ["A"]
        bad = await db.aquery_in("SELECT 1 WHERE {IN_CLAUSE}", "x; DROP", ["a"])
        assert bad.code == "INVALID_INPUT"
    finally:
        await db.aclose()
