"""
Quarry DB Backends.

Only SQLite ships with the core; other engines plug in by implementing
``DatabaseAdapter``.
"""

from .base import DatabaseAdapter, AdapterCapabilities, ExecResult, Row

__all__ = [
    "DatabaseAdapter",
    "AdapterCapabilities",
    "ExecResult",
    "Row",
]
