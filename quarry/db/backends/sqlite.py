"""
Quarry DB Backend: SQLite adapter via aiosqlite.

This is the default backend. The connection runs in autocommit mode
(``isolation_level=None``) so that transaction boundaries are exactly
the BEGIN/COMMIT/ROLLBACK statements issued by ``Atomic``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence

import aiosqlite

from .base import (
    DatabaseAdapter,
    AdapterCapabilities,
    ExecResult,
    Row,
)

logger = logging.getLogger("quarry.db.backends.sqlite")

__all__ = ["SQLiteAdapter"]


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite adapter using aiosqlite.

    Features:
    - WAL journal mode for concurrent reads
    - Foreign key enforcement
    - Explicit transaction statements
    """

    capabilities = AdapterCapabilities(
        supports_row_locks=False,
        supports_savepoints=True,
        param_style="qmark",
        name="sqlite",
    )

    def __init__(self):
        self._connection: Optional[aiosqlite.Connection] = None
        self._connected = False
        self._lock = asyncio.Lock()

    async def connect(self, url: str, **options) -> None:
        if self._connected:
            return
        async with self._lock:
            if self._connected:
                return
            db_path = self._parse_url(url)
            self._connection = await aiosqlite.connect(db_path, isolation_level=None)
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA foreign_keys=ON")
            self._connected = True
            logger.info(f"SQLite connected: {db_path}")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False
            logger.info("SQLite disconnected")

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        if not self._connected:
            raise RuntimeError("Not connected")
        cursor = await self._connection.execute(sql, list(params or []))
        try:
            return ExecResult(
                affected_rows=max(cursor.rowcount, 0),
                last_insert_id=cursor.lastrowid,
            )
        finally:
            await cursor.close()

    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        if not self._connected:
            raise RuntimeError("Not connected")
        cursor = await self._connection.execute(sql, list(params or []))
        try:
            records = await cursor.fetchall()
            columns = [d[0] for d in cursor.description or ()]
        finally:
            await cursor.close()
        return [Row(columns, record) for record in records]

    # ── Transactions ─────────────────────────────────────────────────

    async def begin(self) -> None:
        await self._connection.execute("BEGIN")

    async def commit(self) -> None:
        await self._connection.execute("COMMIT")

    async def rollback(self) -> None:
        # SQLite may already have rolled back on its own after some errors
        if self._connection.in_transaction:
            await self._connection.execute("ROLLBACK")

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def dialect(self) -> str:
        return "sqlite"

    @staticmethod
    def _parse_url(url: str) -> str:
        """Extract file path from sqlite URL."""
        for prefix in ("sqlite:///", "sqlite://"):
            if url.startswith(prefix):
                path = url[len(prefix):]
                return path or ":memory:"
        return url.replace("sqlite:", "").lstrip("/") or ":memory:"
