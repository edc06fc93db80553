"""
Quarry DB Backend: Base Adapter Interface.

All database backends implement this interface. The ``Database`` engine
delegates to the appropriate adapter based on the connection URL.

The adapter contract is deliberately small:
- ``execute`` returns an ``ExecResult`` (affected rows, last insert id)
- ``query`` returns a list of ``Row`` objects
- ``scalar`` returns the first column of the first row
- ``begin`` / ``commit`` / ``rollback`` scope transactions
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterator, List, Optional, Sequence, Tuple

__all__ = [
    "DatabaseAdapter",
    "AdapterCapabilities",
    "ExecResult",
    "Row",
]


@dataclass
class AdapterCapabilities:
    """Describes what a specific backend supports."""

    supports_row_locks: bool = True     # SELECT ... FOR UPDATE
    supports_savepoints: bool = True
    param_style: str = "qmark"          # qmark (?) | format (%s) | numeric ($1)
    name: str = "base"


@dataclass(frozen=True)
class ExecResult:
    """Outcome of a write statement."""

    affected_rows: int
    last_insert_id: Optional[int] = None


class Row(Mapping):
    """
    One result row.

    Exposes the ordered column names, a sequential reader used when
    demultiplexing joined rows, and read-only mapping access by column
    name (or by position when indexed with an int).
    """

    __slots__ = ("_columns", "_values", "_cursor")

    def __init__(self, columns: Sequence[str], values: Sequence[Any]):
        self._columns: Tuple[str, ...] = tuple(columns)
        self._values: Tuple[Any, ...] = tuple(values)
        self._cursor = 0

    def column_names(self) -> List[str]:
        return list(self._columns)

    def read_next_value(self) -> Any:
        """Return the next unread value, left to right."""
        if self._cursor >= len(self._values):
            raise IndexError("Row exhausted")
        value = self._values[self._cursor]
        self._cursor += 1
        return value

    def rewind(self) -> None:
        self._cursor = 0

    def __getitem__(self, key: Any) -> Any:
        if isinstance(key, int):
            return self._values[key]
        try:
            return self._values[self._columns.index(key)]
        except ValueError:
            raise KeyError(key) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    def __repr__(self) -> str:
        return f"Row({dict(zip(self._columns, self._values))!r})"


class DatabaseAdapter(ABC):
    """
    Abstract database adapter interface.

    The ``Database`` engine uses this interface to execute statements
    and manage transactions.
    """

    capabilities: AdapterCapabilities = AdapterCapabilities()

    @abstractmethod
    async def connect(self, url: str, **options) -> None:
        """Open a connection to the database."""
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the database connection."""
        ...

    @abstractmethod
    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        """Execute a write statement."""
        ...

    @abstractmethod
    async def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Row]:
        """Execute a SELECT and return every row."""
        ...

    async def scalar(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Execute and return the first value of the first row."""
        rows = await self.query(sql, params)
        if not rows:
            return None
        return rows[0][0]

    # ── Transaction management ───────────────────────────────────────

    @abstractmethod
    async def begin(self) -> None:
        """Start a transaction."""
        ...

    @abstractmethod
    async def commit(self) -> None:
        """Commit the current transaction."""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Rollback the current transaction."""
        ...

    # ── SQL adaptation ───────────────────────────────────────────────

    def adapt_sql(self, sql: str) -> str:
        """
        Adapt SQL placeholders from qmark (?) to the backend's param style.

        Override this in backends that use a different param style.
        """
        return sql

    @property
    def is_connected(self) -> bool:
        """Check if the adapter is connected."""
        return False

    @property
    def dialect(self) -> str:
        """Return the SQL dialect name."""
        return self.capabilities.name
