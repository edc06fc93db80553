"""
Quarry Database Engine: async connection manager over backend adapters.

Provides:
- Database: async engine delegating to a backend adapter
- SQLite (aiosqlite) backend
- Faults instead of bare driver exceptions
- Transaction scoping with nested reuse (see ``quarry.models.transactions``)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextvars import ContextVar, Token
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union, TYPE_CHECKING

from ..faults.domains import (
    DatabaseConnectionFault,
    QueryFault,
)
from .backends.base import DatabaseAdapter, AdapterCapabilities, ExecResult, Row

if TYPE_CHECKING:
    from ..models.transactions import Atomic

logger = logging.getLogger("quarry.db")

T = TypeVar("T")

# Transactions open in the current context, per database. Tasks created inside
# a transaction block copy the context and join it; other tasks wait.
_transactions: ContextVar[Dict[Any, Any]] = ContextVar("quarry_transactions", default={})


def _create_adapter(driver: str) -> DatabaseAdapter:
    """Factory: instantiate the correct backend adapter."""
    if driver == "sqlite":
        from .backends.sqlite import SQLiteAdapter
        return SQLiteAdapter()
    raise DatabaseConnectionFault(
        url=f"<{driver}>",
        reason=f"No adapter registered for driver: {driver}",
    )


class Database:
    """
    Async database engine.

    All operations are async and use parameterized statements with ``?``
    placeholders; the adapter translates to its native param style.

    Usage:
        db = Database("sqlite:///:memory:")
        await db.connect()
        result = await db.execute("INSERT INTO users (name) VALUES (?)", ["Ann"])
        rows = await db.query("SELECT * FROM users WHERE id = ?", [result.last_insert_id])
        total = await db.scalar("SELECT COUNT(*) FROM users")

        async with db.transaction() as tx:
            await db.execute("UPDATE users SET name = ?", ["Bo"])
            tx.on_commit(lambda: print("done"))
    """

    __slots__ = (
        "_url",
        "_driver",
        "_adapter",
        "_connected",
        "_lock",
        "_options",
        "_echo",
        "_active_transaction",
        "_transaction_lock",
        "_connect_retries",
        "_connect_retry_delay",
    )

    def __init__(self, url: str = "sqlite:///:memory:", **options: Any):
        """
        Initialize database engine.

        Args:
            url: Database URL, e.g. ``sqlite:///path/to/db.sqlite3`` or
                 ``sqlite:///:memory:``
            **options: Driver-specific options passed to the backend adapter.
                connect_retries (int): Number of connection retries (default 3).
                connect_retry_delay (float): Seconds between retries (default 0.5).
                echo (bool): Log every statement at DEBUG level.
        """
        self._url = url
        self._driver = self._detect_driver(url)
        self._adapter: DatabaseAdapter = _create_adapter(self._driver)
        self._connected = False
        self._lock = asyncio.Lock()
        self._connect_retries = int(options.pop("connect_retries", 3))
        self._connect_retry_delay = float(options.pop("connect_retry_delay", 0.5))
        self._echo = bool(options.pop("echo", False))
        self._options = options
        self._active_transaction: Optional[Atomic] = None
        self._transaction_lock = asyncio.Lock()

    @staticmethod
    def _detect_driver(url: str) -> str:
        """Detect database driver from URL scheme."""
        if url.startswith("sqlite"):
            return "sqlite"
        raise DatabaseConnectionFault(
            url=url,
            reason=f"Unsupported database URL scheme: {url}",
        )

    # ── Connection management ────────────────────────────────────────

    async def connect(self) -> None:
        """Open database connection with retry logic."""
        if self._connected:
            return

        async with self._lock:
            if self._connected:
                return

            last_exc: Optional[Exception] = None
            for attempt in range(1, self._connect_retries + 1):
                try:
                    await self._adapter.connect(self._url, **self._options)
                    self._connected = True
                    logger.info(f"Database connected ({self._driver}), attempt {attempt}")
                    return
                except DatabaseConnectionFault:
                    raise
                except Exception as exc:
                    last_exc = exc
                    if attempt < self._connect_retries:
                        logger.warning(
                            f"Connection attempt {attempt} failed: {exc}, "
                            f"retrying in {self._connect_retry_delay}s..."
                        )
                        await asyncio.sleep(self._connect_retry_delay)

            raise DatabaseConnectionFault(
                url=self._url,
                reason=f"Failed after {self._connect_retries} attempts: {last_exc}",
            )

    async def disconnect(self) -> None:
        """Close database connection."""
        if not self._connected:
            return
        async with self._lock:
            if not self._connected:
                return
            try:
                await self._adapter.disconnect()
                self._connected = False
                logger.info("Database disconnected")
            except Exception as exc:
                self._connected = False
                raise DatabaseConnectionFault(
                    url=self._url,
                    reason=f"Disconnect failed: {exc}",
                ) from exc

    async def ensure_connected(self) -> None:
        """Ensure a live connection exists, reconnecting if needed."""
        if not self._connected:
            await self.connect()
        elif not self._adapter.is_connected:
            self._connected = False
            await self.connect()

    # ── Transactions ─────────────────────────────────────────────────

    def transaction(self) -> Atomic:
        """
        Open (or join) a transaction.

        The outermost block issues BEGIN and COMMIT, rolling back when the
        block raises or ``tx.rollback()`` was called. Nested blocks reuse the
        active transaction and return the same ``Atomic`` object, so commit
        and rollback hooks always attach to the outermost scope.

        The transaction belongs to the task that opened it and to tasks it
        spawns inside the block. Other tasks wait for it to finish before
        they open their own or run statements on the shared connection.

        Usage:
            async with db.transaction() as tx:
                await db.execute("INSERT INTO ...")
                if something_wrong:
                    tx.rollback()
        """
        from ..models.transactions import Atomic
        return Atomic(self)

    async def run_in_transaction(
        self, body: Callable[[Atomic], Union[T, Awaitable[T]]]
    ) -> T:
        """Call ``body(tx)`` inside a transaction and return its result."""
        async with self.transaction() as tx:
            result = body(tx)
            if inspect.isawaitable(result):
                result = await result
            return result

    def current_transaction(self) -> Optional[Atomic]:
        """The open transaction the calling task belongs to, if any."""
        tx = _transactions.get().get(self)
        if tx is not None and tx is self._active_transaction:
            return tx
        return None

    async def _open_transaction(self, tx: Atomic) -> Token:
        """Wait for other tasks' transactions, BEGIN, and bind ``tx`` to this context."""
        await self._transaction_lock.acquire()
        try:
            await self.begin()
        except BaseException:
            self._transaction_lock.release()
            raise
        self._active_transaction = tx
        return _transactions.set({**_transactions.get(), self: tx})

    def _close_transaction(self, token: Token) -> None:
        self._active_transaction = None
        _transactions.reset(token)
        self._transaction_lock.release()

    def _in_foreign_transaction(self) -> bool:
        return self._active_transaction is not None and self.current_transaction() is None

    async def begin(self) -> None:
        await self.ensure_connected()
        await self._adapter.begin()

    async def commit(self) -> None:
        await self._adapter.commit()

    async def rollback(self) -> None:
        await self._adapter.rollback()

    # ── Statement execution ──────────────────────────────────────────

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        """
        Execute a write statement.

        Returns:
            ExecResult with ``affected_rows`` and ``last_insert_id``

        Raises:
            QueryFault: When execution fails
        """
        return await self._run("execute", self._adapter.execute, sql, params)

    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        """
        Execute a SELECT and return its rows.

        Raises:
            QueryFault: When execution fails
        """
        return await self._run("query", self._adapter.query, sql, params)

    async def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        """
        Execute a query and return the first column of the first row.

        Raises:
            QueryFault: When execution fails
        """
        return await self._run("scalar", self._adapter.scalar, sql, params)

    async def _run(
        self,
        operation: str,
        call: Callable[[str, List[Any]], Awaitable[T]],
        sql: str,
        params: Optional[Sequence[Any]],
    ) -> T:
        await self.ensure_connected()
        params = list(params or [])
        if self._in_foreign_transaction():
            # The connection is inside another task's transaction
            async with self._transaction_lock:
                return await self._call(operation, call, sql, params)
        return await self._call(operation, call, sql, params)

    async def _call(
        self,
        operation: str,
        call: Callable[[str, List[Any]], Awaitable[T]],
        sql: str,
        params: List[Any],
    ) -> T:
        self._log(sql, params)
        try:
            return await call(self._adapter.adapt_sql(sql), params)
        except (DatabaseConnectionFault, QueryFault):
            raise
        except Exception as exc:
            raise QueryFault(
                model="<raw>",
                operation=operation,
                reason=str(exc),
                metadata={"sql": sql[:200]},
            ) from exc

    def _log(self, sql: str, params: List[Any]) -> None:
        if self._echo:
            logger.debug(f"SQL: {sql} {params}")

    # ── Properties ───────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self._connected and self._adapter.is_connected

    @property
    def url(self) -> str:
        return self._url

    @property
    def driver(self) -> str:
        return self._driver

    @property
    def dialect(self) -> str:
        """Return the SQL dialect name."""
        return self._adapter.dialect

    @property
    def capabilities(self) -> AdapterCapabilities:
        """Return backend capabilities."""
        return self._adapter.capabilities

    @property
    def adapter(self) -> DatabaseAdapter:
        """Direct access to the underlying adapter (advanced use)."""
        return self._adapter

    @property
    def in_transaction(self) -> bool:
        """True when the calling task is inside this database's transaction."""
        return self.current_transaction() is not None
