"""
SQLite connection manager (aiosqlite-backed).

Critical guarantee:
- The adapter never raises to callers; it returns `Result(...)`.

Concurrency model:
- Reads run on any pooled connection (WAL allows concurrent readers).
- Writes are serialized through a single asyncio write lock, always taken
  before a connection is checked out so writers cannot starve the pool.
- `atransaction()` pins one connection to a context-var token; statements
  issued inside the block reuse it without re-taking the write lock.
"""

from __future__ import annotations

import asyncio
import contextvars
import random
import re
import sqlite3
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from ...config import DB_MAX_CONNECTIONS, DB_QUERY_TIMEOUT, DB_TIMEOUT
from ...shared import ErrorCode, Result, get_logger

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_MS = max(1000, int(float(DB_TIMEOUT) * 1000))
# Negative cache_size is in KiB. -32000 ~= 32 MiB cache.
SQLITE_CACHE_SIZE_KIB = -32000

_TX_TOKEN: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("sdmm_db_tx_token", default=None)
_COLUMN_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)?$")
_IN_QUERY_FORBIDDEN = re.compile(r";|--|/\*|\*/|\b(attach|detach|pragma|vacuum)\b", re.IGNORECASE)


def _validate_in_base_query(base_query: str) -> Tuple[bool, str]:
    """
    Validate the `base_query` template used by `aquery_in`.

    The template is expected to be a constant defined in code; the allowlist
    keeps accidental misuse from reintroducing SQL injection.
    """
    q = str(base_query or "").strip()
    if not q:
        return False, "base_query is empty"
    if q.count("{IN_CLAUSE}") != 1:
        return False, "base_query must contain exactly one {IN_CLAUSE}"
    if not re.match(r"^(select|with)\b", q.lower()):
        return False, "base_query must be a SELECT query"
    if _IN_QUERY_FORBIDDEN.search(q):
        return False, "base_query contains forbidden SQL tokens"
    return True, ""


def _build_in_query(base_query: str, safe_column: str, value_count: int) -> str:
    before, after = str(base_query).split("{IN_CLAUSE}")
    placeholders = ",".join(["?"] * int(value_count))
    return f"{before}{safe_column} IN ({placeholders}){after}"


class Sqlite:
    """
    Connection pool manager for SQLite (aiosqlite-backed).
    """

    def __init__(self, db_path: str, max_connections: Optional[int] = None, timeout: float = DB_TIMEOUT):
        self.db_path = Path(db_path)
        self._max_conn_limit = max(1, int(max_connections if max_connections is not None else DB_MAX_CONNECTIONS))
        self._pool: List[aiosqlite.Connection] = []
        self._active_conns: set[aiosqlite.Connection] = set()
        self._async_sem: Optional[asyncio.Semaphore] = None
        self._initialized = False
        self._closed = False

        self._timeout = float(timeout)
        self._query_timeout = float(DB_QUERY_TIMEOUT or 0.0)
        self._lock_retry_attempts = 6
        self._lock_retry_base_seconds = 0.05
        self._lock_retry_max_seconds = 0.75

        self._tx_conns: Dict[str, aiosqlite.Connection] = {}
        self._write_lock: Optional[asyncio.Lock] = None

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @staticmethod
    def _is_locked_error(exc: Exception) -> bool:
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = min(self._lock_retry_max_seconds, self._lock_retry_base_seconds * (2 ** max(0, attempt)))
        delay += random.random() * 0.03
        logger.debug("DB lock backoff: attempt=%d delay=%.3fs", int(attempt), float(delay))
        await asyncio.sleep(delay)

    async def _apply_connection_pragmas(self, conn: aiosqlite.Connection) -> None:
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute(f"PRAGMA cache_size={SQLITE_CACHE_SIZE_KIB}")
        await conn.execute("PRAGMA temp_store=MEMORY")
        await conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        await conn.execute("PRAGMA foreign_keys=ON")

    async def _create_connection(self) -> aiosqlite.Connection:
        # Autocommit mode; transactions are managed explicitly (BEGIN/COMMIT).
        conn = await aiosqlite.connect(str(self.db_path), timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        await self._apply_connection_pragmas(conn)
        return conn

    def _write_lock_or_create(self) -> asyncio.Lock:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    async def _acquire_connection_async(self) -> aiosqlite.Connection:
        if self._closed:
            raise RuntimeError("Database is closed")
        if self._async_sem is None:
            self._async_sem = asyncio.Semaphore(self._max_conn_limit)
        sem = self._async_sem
        await sem.acquire()
        try:
            conn = self._pool.pop() if self._pool else await self._create_connection()
            self._active_conns.add(conn)
            return conn
        except Exception:
            sem.release()
            raise

    async def _release_connection_async(self, conn: aiosqlite.Connection) -> None:
        try:
            self._active_conns.discard(conn)
            if self._closed or len(self._pool) >= self._max_conn_limit:
                await conn.close()
            else:
                self._pool.append(conn)
        finally:
            if self._async_sem:
                self._async_sem.release()

    async def _ensure_initialized_async(self) -> None:
        if self._initialized:
            return
        conn = await self._acquire_connection_async()
        try:
            await conn.commit()
        finally:
            await self._release_connection_async(conn)
        self._initialized = True
        logger.debug("Database initialized: %s", self.db_path)

    def _tx_token(self) -> Optional[str]:
        tok = _TX_TOKEN.get()
        return str(tok) if tok else None

    @staticmethod
    def _rows_to_dicts(rows: Any) -> List[Dict[str, Any]]:
        if not rows:
            return []
        return [dict(r) for r in rows]

    @staticmethod
    def _is_write_sql(query: str) -> bool:
        q = str(query or "").lstrip()
        if not q:
            return False
        head = q.split(None, 1)[0].upper()
        return head not in ("SELECT", "PRAGMA", "WITH", "EXPLAIN")

    async def _with_query_timeout(self, coro):
        if self._query_timeout > 0:
            try:
                return await asyncio.wait_for(coro, timeout=self._query_timeout)
            except asyncio.TimeoutError:
                return Result.Err(ErrorCode.TIMEOUT, "Database operation timed out")
        return await coro

    # ------------------------------------------------------------------
    # Statement execution
    # ------------------------------------------------------------------

    async def _execute_async(self, query: str, params: Optional[tuple], fetch: bool) -> Result[Any]:
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            logger.error("Failed to initialize database: %s", exc)
            return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")

        token = self._tx_token()
        if token:
            conn = self._tx_conns.get(token)
            if not conn:
                return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
            return await self._execute_on_conn_async(conn, query, params, fetch, commit=False)

        if self._is_write_sql(query):
            async with self._write_lock_or_create():
                return await self._execute_pooled(query, params, fetch)
        return await self._execute_pooled(query, params, fetch)

    async def _execute_pooled(self, query: str, params: Optional[tuple], fetch: bool) -> Result[Any]:
        try:
            conn = await self._acquire_connection_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        try:
            return await self._execute_on_conn_async(conn, query, params, fetch, commit=True)
        finally:
            await self._release_connection_async(conn)

    async def _execute_on_conn_async(
        self,
        conn: aiosqlite.Connection,
        query: str,
        params: Optional[tuple],
        fetch: bool,
        *,
        commit: bool,
    ) -> Result[Any]:
        async def _execute_inner() -> Result[Any]:
            try:
                for attempt in range(self._lock_retry_attempts + 1):
                    try:
                        return await self._execute_with_cursor_result(conn, query, params, fetch=fetch, commit=commit)
                    except sqlite3.OperationalError as exc:
                        if self._is_locked_error(exc) and attempt < self._lock_retry_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        raise
                return Result.Err(ErrorCode.DB_ERROR, "Query failed after retries")
            except sqlite3.IntegrityError as exc:
                logger.warning("Integrity error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, f"Integrity error: {exc}", integrity=True)
            except sqlite3.OperationalError as exc:
                if "interrupted" in str(exc).lower():
                    return Result.Err(ErrorCode.TIMEOUT, "Database operation interrupted (query timeout)")
                logger.error("Operational error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, f"Operational error: {exc}")
            except sqlite3.DatabaseError as exc:
                logger.error("Database error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            except Exception as exc:
                logger.error("Unexpected database error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, str(exc))

        return await self._with_query_timeout(_execute_inner())

    async def _execute_with_cursor_result(
        self,
        conn: aiosqlite.Connection,
        query: str,
        params: Optional[tuple],
        *,
        fetch: bool,
        commit: bool,
    ) -> Result[Any]:
        cursor = await conn.execute(query, params or ())
        try:
            if fetch:
                rows = await cursor.fetchall()
                return Result.Ok(self._rows_to_dicts(rows))
            if commit:
                await conn.commit()
            return self._cursor_write_result(cursor)
        finally:
            await cursor.close()

    @staticmethod
    def _cursor_write_result(cursor: Any) -> Result[int]:
        # data is the affected row count; lastrowid is only meaningful after INSERT
        rowcount = getattr(cursor, "rowcount", None)
        last_id = getattr(cursor, "lastrowid", None)
        return Result.Ok(int(rowcount) if rowcount is not None and rowcount >= 0 else 0, lastrowid=last_id)

    async def aexecute(self, query: str, params: Optional[tuple] = None, fetch: bool = False) -> Result[Any]:
        """Execute one SQL statement."""
        return await self._execute_async(query, params, fetch)

    async def aquery(self, sql: str, params: Optional[tuple] = None) -> Result[List[Dict[str, Any]]]:
        """Execute a SELECT query and return rows as dicts."""
        return await self._execute_async(sql, params, True)

    async def aquery_in(
        self,
        base_query: str,
        column: str,
        values: List[Any],
        additional_params: Optional[tuple] = None,
    ) -> Result[List[Dict[str, Any]]]:
        """
        Run a SELECT whose `{IN_CLAUSE}` placeholder expands to `column IN (?,...)`.

        `additional_params` are bound after the IN values.
        """
        if not values:
            return Result.Ok([])
        if not isinstance(values, (list, tuple)):
            return Result.Err(ErrorCode.INVALID_INPUT, "values must be a list or tuple")
        if not _COLUMN_NAME_PATTERN.match(str(column or "")):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid column name: {column}")
        ok_tpl, why = _validate_in_base_query(base_query)
        if not ok_tpl:
            return Result.Err(ErrorCode.INVALID_INPUT, why or "Invalid base_query template")

        params = tuple(values)
        if additional_params:
            params = params + tuple(additional_params)
        return await self.aquery(_build_in_query(base_query, column, len(values)), params)

    async def aexecutemany(self, query: str, params_list: List[Tuple]) -> Result[int]:
        """Execute one statement for many parameter tuples; returns the affected row count."""
        if not params_list:
            return Result.Ok(0)
        total = 0
        token = self._tx_token()
        if token:
            for params in params_list:
                res = await self.aexecute(query, params)
                if not res.ok:
                    return res
                total += int(res.data or 0)
            return Result.Ok(total)
        async with self.atransaction() as tx:
            if not tx.ok:
                return Result.Err(ErrorCode.DB_ERROR, tx.error or "Failed to begin transaction")
            for params in params_list:
                res = await self.aexecute(query, params)
                if not res.ok:
                    raise _RollbackRequested(res)
                total += int(res.data or 0)
        if not tx.ok:
            return Result.Err(tx.code, tx.error or "Commit failed")
        return Result.Ok(total)

    async def aexecutescript(self, script: str) -> Result[bool]:
        """Execute a multi-statement SQL script."""
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, f"Failed to initialize database: {exc}")
        async with self._write_lock_or_create():
            try:
                conn = await self._acquire_connection_async()
            except Exception as exc:
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            try:
                await conn.executescript(script)
                await conn.commit()
                return Result.Ok(True)
            except Exception as exc:
                logger.error("Script execution error: %s", exc)
                return Result.Err(ErrorCode.DB_ERROR, str(exc))
            finally:
                await self._release_connection_async(conn)

    async def ahas_table(self, table_name: str) -> bool:
        """Return True if `table_name` exists in sqlite_master."""
        result = await self.aquery(
            "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (table_name,),
        )
        return bool(result.ok and result.data)

    async def aget_schema_version(self) -> int:
        """Get the schema version from the `metadata` table (0 if missing)."""
        if not await self.ahas_table("metadata"):
            return 0
        result = await self.aquery("SELECT value FROM metadata WHERE key = 'schema_version'")
        if result.ok and result.data:
            try:
                return int(result.data[0]["value"])
            except (ValueError, KeyError, TypeError):
                logger.warning("Invalid schema_version value in database")
        return 0

    async def aset_schema_version(self, version: int) -> Result[Any]:
        """Set the schema version in the `metadata` table."""
        return await self.aexecute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema_version', ?)",
            (str(version),),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @staticmethod
    def _begin_stmt_for_mode(mode: str) -> str:
        if isinstance(mode, str) and mode.lower() in ("deferred", "immediate", "exclusive"):
            return f"BEGIN {mode.upper()}"
        return "BEGIN IMMEDIATE"

    async def _begin_tx_async(self, mode: str) -> Result[str]:
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        lock = self._write_lock_or_create()
        await lock.acquire()
        try:
            conn = await self._acquire_connection_async()
        except Exception as exc:
            lock.release()
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        begin_stmt = self._begin_stmt_for_mode(mode)
        try:
            for attempt in range(self._lock_retry_attempts + 1):
                try:
                    await conn.execute(begin_stmt)
                    break
                except sqlite3.OperationalError as exc:
                    if self._is_locked_error(exc) and attempt < self._lock_retry_attempts:
                        await self._sleep_backoff(attempt)
                        continue
                    raise
        except Exception as exc:
            await self._release_connection_async(conn)
            lock.release()
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        token = f"tx_{uuid.uuid4().hex}"
        self._tx_conns[token] = conn
        return Result.Ok(token)

    async def _finish_tx_async(self, token: str, *, commit: bool) -> Result[bool]:
        conn = self._tx_conns.pop(token, None)
        if conn is None:
            return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
        try:
            if commit:
                for attempt in range(self._lock_retry_attempts + 1):
                    try:
                        await conn.commit()
                        break
                    except sqlite3.OperationalError as exc:
                        if self._is_locked_error(exc) and attempt < self._lock_retry_attempts:
                            await self._sleep_backoff(attempt)
                            continue
                        raise
            else:
                await conn.rollback()
            return Result.Ok(True)
        except Exception as exc:
            # Never hand a connection with an open transaction back to the pool.
            try:
                await conn.rollback()
            except sqlite3.Error:
                logger.debug("Rollback after failed commit also failed", exc_info=True)
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        finally:
            await self._release_connection_async(conn)
            if self._write_lock is not None and self._write_lock.locked():
                self._write_lock.release()

    @asynccontextmanager
    async def atransaction(self, mode: str = "immediate"):
        """
        Async context manager for a DB transaction.

        Yields a `Result` whose `ok` flag reports begin/commit success. An exception
        raised in the block rolls back and propagates; `_RollbackRequested` rolls
        back and is swallowed, with the carried result copied onto the yielded state.
        """
        tx_state: Result[bool] = Result.Ok(True)
        begin_res = await self._begin_tx_async(mode)
        if not begin_res.ok or not begin_res.data:
            tx_state = Result.Err(ErrorCode.DB_ERROR, str(begin_res.error or "Failed to begin transaction"))
            yield tx_state
            return

        token = str(begin_res.data)
        token_handle = _TX_TOKEN.set(token)
        try:
            yield tx_state
        except _RollbackRequested as rb:
            await self._finish_tx_async(token, commit=False)
            tx_state.ok = False
            tx_state.code = rb.result.code or ErrorCode.DB_ERROR.value
            tx_state.error = rb.result.error or "Transaction rolled back"
            return
        except BaseException:
            await self._finish_tx_async(token, commit=False)
            raise
        finally:
            _TX_TOKEN.reset(token_handle)
        commit_res = await self._finish_tx_async(token, commit=True)
        if not commit_res.ok:
            tx_state.ok = False
            tx_state.code = str(commit_res.code or ErrorCode.DB_ERROR.value)
            tx_state.error = str(commit_res.error or "Commit failed")

    async def aclose(self) -> None:
        """Close every pooled, active and transaction connection."""
        self._closed = True
        conns = list(self._tx_conns.values()) + list(self._pool) + list(self._active_conns)
        self._tx_conns.clear()
        self._pool.clear()
        self._active_conns.clear()
        for conn in conns:
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("Error closing connection: %s", exc)
        self._async_sem = None
        self._initialized = False


class _RollbackRequested(Exception):
    """Raised inside `atransaction()` to roll back with a failed `Result`."""

    def __init__(self, result: Result[Any]):
        super().__init__(result.error or "rollback")
        self.result = result


def rollback(result: Result[Any]) -> _RollbackRequested:
    """Build the exception that rolls back the enclosing `atransaction()` block."""
    return _RollbackRequested(result)
