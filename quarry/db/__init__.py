"""
Quarry DB: async connection abstraction.

    from quarry.db import Database

    db = Database("sqlite:///:memory:")
    await db.connect()
"""

from .engine import Database
from .backends.base import DatabaseAdapter, AdapterCapabilities, ExecResult, Row

__all__ = [
    "Database",
    "DatabaseAdapter",
    "AdapterCapabilities",
    "ExecResult",
    "Row",
]
