"""
Async SQLite adapter (aiosqlite-backed) with pooling, lock retry and explicit transactions.
"""
import asyncio
import random
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from ...shared import ErrorCode, Result, get_logger
from .diagnostics import is_locked_error, is_malformed_error, is_safe_identifier, quoted_identifier

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000
SQLITE_CACHE_SIZE_KIB = -32000
PATH_LOCKS_TTL_S = 600.0
PATH_LOCKS_MAX = 10000

_TX_TOKEN: ContextVar[Optional[str]] = ContextVar("mmc_sqlite_tx_token", default=None)


class Sqlite:
    """
    Connection pool manager for SQLite (aiosqlite-backed).

    Every public method is a coroutine returning Result; SQL errors never propagate.
    """

    def __init__(
        self,
        db_path: str | Path,
        max_connections: int = 8,
        timeout: float = 30.0,
        query_timeout: float = 0.0,
    ):
        self.db_path = Path(db_path)
        self._max_conn_limit = max(1, int(max_connections))
        self._pool: "Queue[aiosqlite.Connection]" = Queue(maxsize=self._max_conn_limit)
        self._async_sem: Optional[asyncio.Semaphore] = None
        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None

        # Drain mechanics (file swap for restore / migration)
        self._resetting = False
        self._active_conns: set[aiosqlite.Connection] = set()

        self._timeout = float(timeout)
        self._query_timeout = float(query_timeout or 0.0)
        self._lock_retry_attempts = 6
        self._lock_retry_base_seconds = 0.05
        self._lock_retry_max_seconds = 0.75

        self._tx_conns: Dict[str, aiosqlite.Connection] = {}
        self._write_lock = asyncio.Lock()
        self._tx_write_lock_tokens: set[str] = set()
        self._path_locks: Dict[str, Dict[str, Any]] = {}

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    async def _sleep_backoff(self, attempt: int) -> None:
        base = float(self._lock_retry_base_seconds)
        max_s = float(self._lock_retry_max_seconds)
        delay = min(max_s, base * (2 ** max(0, attempt)))
        delay = delay + (random.random() * 0.03)
        logger.debug("DB lock backoff: attempt=%d delay=%.3fs", int(attempt), float(delay))
        await asyncio.sleep(delay)

    def get_runtime_status(self) -> Dict[str, Any]:
        """Return lightweight runtime counters for diagnostics."""
        return {
            "active_connections": len(self._active_conns),
            "pooled_connections": int(self._pool.qsize()),
            "max_connections": int(self._max_conn_limit),
            "open_transactions": len(self._tx_conns),
            "path_locks": len(self._path_locks),
            "resetting": bool(self._resetting),
        }

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

    async def _acquire_connection_async(self) -> aiosqlite.Connection:
        if self._async_sem is None:
            self._async_sem = asyncio.Semaphore(self._max_conn_limit)
        if self._resetting:
            raise RuntimeError("Database is being replaced - connection rejected")

        sem = self._async_sem
        await sem.acquire()
        try:
            # Re-check after waiting: a drain may start while this waiter is queued.
            if self._resetting:
                raise RuntimeError("Database is being replaced - connection rejected")
            try:
                conn = self._pool.get_nowait()
            except Empty:
                conn = await self._create_connection()
            self._active_conns.add(conn)
            return conn
        except Exception:
            sem.release()
            raise

    async def _release_connection_async(self, conn: aiosqlite.Connection) -> None:
        sem = self._async_sem
        try:
            self._active_conns.discard(conn)
            if not self._resetting and not self._pool.full():
                self._pool.put(conn)
            else:
                try:
                    await conn.close()
                except Exception as exc:
                    logger.debug("Connection close failed: %s", exc)
        finally:
            if sem is not None:
                sem.release()

    async def _ensure_initialized_async(self) -> None:
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            conn = await self._acquire_connection_async()
            try:
                await conn.commit()
            finally:
                await self._release_connection_async(conn)
            self._initialized = True
            logger.debug("Database initialized: %s", self.db_path)

    def _prune_path_locks(self, now: float) -> None:
        cutoff = now - PATH_LOCKS_TTL_S
        for key, entry in list(self._path_locks.items()):
            if entry["last"] < cutoff and not entry["lock"].locked():
                self._path_locks.pop(key, None)
        if len(self._path_locks) <= PATH_LOCKS_MAX:
            return
        items = sorted(self._path_locks.items(), key=lambda kv: kv[1]["last"])
        for key, entry in items[: len(items) - PATH_LOCKS_MAX]:
            if not entry["lock"].locked():
                self._path_locks.pop(key, None)

    def _get_or_create_path_lock(self, path: str) -> asyncio.Lock:
        key = str(path)
        now = time.time()
        entry = self._path_locks.get(key)
        if entry:
            entry["last"] = now
            return entry["lock"]
        lock = asyncio.Lock()
        self._path_locks[key] = {"lock": lock, "last": now}
        self._prune_path_locks(now)
        return lock

    @asynccontextmanager
    async def lock_for_path(self, path: str):
        """
        Async context manager that serializes work per cache key.
        """
        lock = self._get_or_create_path_lock(path)
        await lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def _tx_token(self) -> Optional[str]:
        tok = _TX_TOKEN.get()
        return str(tok) if tok else None

    @staticmethod
    def _rows_to_dicts(rows: Any) -> List[Dict[str, Any]]:
        if not rows:
            return []
        return [dict(r) for r in rows]

    async def _with_query_timeout(self, coro):
        timeout = float(self._query_timeout or 0)
        if timeout > 0:
            try:
                return await asyncio.wait_for(coro, timeout=timeout)
            except asyncio.TimeoutError:
                return Result.Err(ErrorCode.TIMEOUT, "Database operation timed out")
        return await coro

    @staticmethod
    def _is_write_sql(query: str) -> bool:
        q = str(query or "").lstrip()
        if not q:
            return False
        head = q.split(None, 1)[0].upper()
        return head not in ("SELECT", "PRAGMA", "WITH", "EXPLAIN")

    def _holds_write_lock(self, tx_token: Optional[str]) -> bool:
        return bool(tx_token and tx_token in self._tx_write_lock_tokens)

    async def _run_with_retry(self, op):
        for attempt in range(self._lock_retry_attempts + 1):
            try:
                return await op()
            except sqlite3.OperationalError as exc:
                if is_locked_error(exc) and attempt < self._lock_retry_attempts:
                    await self._sleep_backoff(attempt)
                    continue
                raise
        return Result.Err(ErrorCode.DB_ERROR, "Query failed after retries")

    def _error_result(self, exc: Exception, label: str) -> Result[Any]:
        if isinstance(exc, sqlite3.IntegrityError):
            logger.warning("Integrity error: %s", exc)
            return Result.Err(ErrorCode.DB_ERROR, f"Integrity error: {exc}")
        if isinstance(exc, sqlite3.OperationalError):
            if "interrupted" in str(exc).lower():
                return Result.Err(ErrorCode.TIMEOUT, "Database operation interrupted (query timeout)")
            logger.error("%s operational error: %s", label, exc)
            return Result.Err(ErrorCode.DB_ERROR, f"Operational error: {exc}", locked=is_locked_error(exc))
        if isinstance(exc, sqlite3.DatabaseError):
            logger.error("%s database error: %s", label, exc)
            return Result.Err(ErrorCode.DB_ERROR, str(exc), malformed=is_malformed_error(exc))
        logger.error("Unexpected %s error: %s", label, exc)
        return Result.Err(ErrorCode.DB_ERROR, str(exc))

    async def _run_on_conn(self, op, *, is_write: bool, tx_token: Optional[str], label: str) -> Result[Any]:
        async def _inner() -> Result[Any]:
            try:
                if is_write and not self._holds_write_lock(tx_token):
                    async with self._write_lock:
                        return await self._run_with_retry(op)
                return await self._run_with_retry(op)
            except Exception as exc:
                return self._error_result(exc, label)
        return await self._with_query_timeout(_inner())

    async def _dispatch(self, make_op, *, is_write: bool, label: str) -> Result[Any]:
        """Run `make_op(conn, commit)` on the transaction connection or a pooled one."""
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return self._error_result(exc, label)
        token = self._tx_token()
        if token:
            conn = self._tx_conns.get(token)
            if not conn:
                return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
            return await self._run_on_conn(make_op(conn, False), is_write=is_write, tx_token=token, label=label)
        try:
            conn = await self._acquire_connection_async()
        except Exception as exc:
            return Result.Err(ErrorCode.SERVICE_UNAVAILABLE, str(exc))
        try:
            return await self._run_on_conn(make_op(conn, True), is_write=is_write, tx_token=None, label=label)
        finally:
            await self._release_connection_async(conn)

    async def aexecute(self, query: str, params: Optional[tuple] = None, fetch: bool = False) -> Result[Any]:
        """Execute one parameterized statement; returns rows when `fetch`, else lastrowid/rowcount."""

        def _make(conn: aiosqlite.Connection, commit: bool):
            async def _op() -> Result[Any]:
                cursor = await conn.execute(query, params or ())
                try:
                    if fetch:
                        rows = await cursor.fetchall()
                        return Result.Ok(self._rows_to_dicts(rows))
                    if commit and conn.in_transaction:
                        await conn.commit()
                    return Result.Ok(int(cursor.rowcount if cursor.rowcount is not None else 0), lastrowid=cursor.lastrowid)
                finally:
                    await cursor.close()
            return _op

        return await self._dispatch(_make, is_write=self._is_write_sql(query) and not fetch, label="Query")

    async def aquery(self, sql: str, params: Optional[tuple] = None) -> Result[List[Dict[str, Any]]]:
        """Execute a SELECT query and return rows."""
        return await self.aexecute(sql, params, fetch=True)

    async def aquery_in(
        self,
        base_query: str,
        column: str,
        values: List[Any],
        additional_params: Optional[tuple] = None,
    ) -> Result[List[Dict[str, Any]]]:
        """
        Run `base_query` with an IN-list for `column`.

        `base_query` must contain a single ``{IN_CLAUSE}`` marker; values are bound, never inlined.
        """
        if not values:
            return Result.Ok([])
        if not is_safe_identifier(column):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid column name: {column}")
        if base_query.count("{IN_CLAUSE}") != 1:
            return Result.Err(ErrorCode.INVALID_INPUT, "base_query must contain exactly one {IN_CLAUSE}")
        placeholders = ",".join("?" for _ in values)
        query = base_query.replace("{IN_CLAUSE}", f"{quoted_identifier(column)} IN ({placeholders})")
        params = tuple(values) + tuple(additional_params or ())
        return await self.aquery(query, params)

    async def aexecutemany(self, query: str, params_list: List[Tuple]) -> Result[int]:
        """Execute a parameterized statement over multiple param tuples."""
        if not params_list:
            return Result.Ok(0)

        def _make(conn: aiosqlite.Connection, commit: bool):
            async def _op() -> Result[int]:
                if commit:
                    await conn.execute("BEGIN IMMEDIATE")
                    try:
                        cursor = await conn.executemany(query, params_list)
                        await conn.commit()
                    except Exception:
                        await conn.rollback()
                        raise
                else:
                    cursor = await conn.executemany(query, params_list)
                try:
                    return Result.Ok(int(cursor.rowcount or 0))
                finally:
                    await cursor.close()
            return _op

        return await self._dispatch(_make, is_write=True, label="Batch execute")

    async def aexecutescript(self, script: str) -> Result[bool]:
        """Execute a multi-statement SQL script (DDL only; no parameters)."""

        def _make(conn: aiosqlite.Connection, commit: bool):
            async def _op() -> Result[bool]:
                await conn.executescript(script)
                return Result.Ok(True)
            return _op

        return await self._dispatch(_make, is_write=True, label="Script")

    async def ahas_table(self, table_name: str) -> bool:
        """Return True if `table_name` exists in sqlite_master."""
        result = await self.aquery(
            "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
            (table_name,),
        )
        return bool(result.ok and result.data)

    async def atable_names(self) -> Result[List[str]]:
        res = await self.aquery(
            "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        if not res.ok:
            return res
        return Result.Ok([str(r["name"]) for r in res.data or []])

    async def atable_columns(self, table_name: str) -> Result[List[str]]:
        if not is_safe_identifier(table_name):
            return Result.Err(ErrorCode.INVALID_INPUT, f"Invalid table name: {table_name}")
        res = await self.aquery(f"PRAGMA table_info({quoted_identifier(table_name)})")
        if not res.ok:
            return res
        return Result.Ok([str(r["name"]) for r in res.data or []])

    async def acheckpoint(self) -> Result[Any]:
        """Fold the WAL into the main file so a file-level copy is complete."""
        return await self.aquery("PRAGMA wal_checkpoint(TRUNCATE)")

    async def aintegrity_check(self) -> Result[List[str]]:
        res = await self.aquery("PRAGMA integrity_check")
        if not res.ok:
            return res
        messages = [str(next(iter(r.values()))) for r in res.data or []]
        return Result.Ok(messages)

    @staticmethod
    def _begin_stmt_for_mode(mode: str) -> str:
        if isinstance(mode, str) and mode.lower() in ("deferred", "immediate", "exclusive"):
            return f"BEGIN {mode.upper()}"
        return "BEGIN IMMEDIATE"

    async def _begin_tx_async(self, mode: str) -> Result[str]:
        try:
            await self._ensure_initialized_async()
        except Exception as exc:
            return self._error_result(exc, "Begin")
        await self._write_lock.acquire()
        try:
            conn = await self._acquire_connection_async()
        except Exception as exc:
            self._write_lock.release()
            return Result.Err(ErrorCode.SERVICE_UNAVAILABLE, str(exc))
        token = f"tx_{uuid.uuid4().hex}"
        begin_stmt = self._begin_stmt_for_mode(mode)
        try:
            await self._run_with_retry(lambda: conn.execute(begin_stmt))
        except Exception as exc:
            await self._release_connection_async(conn)
            self._write_lock.release()
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        self._tx_conns[token] = conn
        self._tx_write_lock_tokens.add(token)
        return Result.Ok(token)

    async def _end_tx_async(self, token: str, *, commit: bool) -> Result[bool]:
        conn = self._tx_conns.get(token)
        if not conn:
            return Result.Err(ErrorCode.DB_ERROR, "Transaction connection missing")
        try:
            if commit:
                await self._run_with_retry(conn.commit)
            else:
                await conn.rollback()
            return Result.Ok(True)
        except Exception as exc:
            # Never hand a connection with an open transaction back to the pool.
            try:
                await conn.rollback()
            except Exception as rb_exc:
                logger.debug("Rollback after failed commit also failed: %s", rb_exc)
            return Result.Err(ErrorCode.DB_ERROR, str(exc))
        finally:
            self._tx_conns.pop(token, None)
            self._tx_write_lock_tokens.discard(token)
            await self._release_connection_async(conn)
            self._write_lock.release()

    @asynccontextmanager
    async def atransaction(self, mode: str = "immediate"):
        """
        Async context manager for a DB transaction.

        Yields a Result describing the transaction state; statements issued through this
        adapter inside the block run on the transaction connection. An exception inside the
        block rolls back and re-raises. Setting ``ok = False`` on the yielded Result rolls back
        without raising; a failed commit flips it to an error.
        """
        begin_res = await self._begin_tx_async(mode)
        if not begin_res.ok or not begin_res.data:
            yield Result.Err(ErrorCode.DB_ERROR, str(begin_res.error or "Failed to begin transaction"))
            return

        tx_state: Result[bool] = Result.Ok(True)
        token = str(begin_res.data)
        token_handle = _TX_TOKEN.set(token)
        try:
            yield tx_state
        except BaseException:
            await self._end_tx_async(token, commit=False)
            raise
        else:
            if not tx_state.ok:
                await self._end_tx_async(token, commit=False)
            else:
                commit_res = await self._end_tx_async(token, commit=True)
                if not commit_res.ok:
                    tx_state.ok = False
                    tx_state.code = str(commit_res.code or ErrorCode.DB_ERROR.value)
                    tx_state.error = str(commit_res.error or "Commit failed")
        finally:
            _TX_TOKEN.reset(token_handle)

    async def _close_all_async(self) -> None:
        for token in list(self._tx_conns.keys()):
            conn = self._tx_conns.pop(token, None)
            if conn is not None:
                try:
                    await conn.close()
                except Exception as exc:
                    logger.debug("Closing transaction connection failed: %s", exc)
        self._tx_write_lock_tokens.clear()

        while True:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                break
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("Closing pooled connection failed: %s", exc)

        for conn in list(self._active_conns):
            try:
                await conn.close()
            except Exception as exc:
                logger.debug("Closing active connection failed: %s", exc)
        self._active_conns.clear()
        self._async_sem = None

    async def adrain(self, wait_s: float = 5.0) -> None:
        """
        Stop handing out connections, wait for checked-out ones, then close everything.

        Used before the database file is replaced on disk. Pair with `areopen()`.
        """
        try:
            await self.acheckpoint()
        except Exception as exc:
            logger.debug("WAL checkpoint before drain failed: %s", exc)
        self._resetting = True
        deadline = time.monotonic() + max(0.0, wait_s)
        while self._active_conns and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        if self._active_conns:
            logger.warning("DB drain: forced close with %d active connections", len(self._active_conns))
        await self._close_all_async()
        self._initialized = False

    async def areopen(self) -> None:
        """Accept connections again after `adrain()`."""
        self._resetting = False
        self._initialized = False
        await self._ensure_initialized_async()

    async def aclose(self) -> None:
        """Close all connections."""
        await self._close_all_async()
        self._initialized = False
