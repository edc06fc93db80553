"""
Shared test fixtures for the quarry test suite.
"""

import pytest_asyncio

from quarry.db import Database


@pytest_asyncio.fixture
async def memory_db():
    """Connected in-memory SQLite database, closed after the test."""
    database = Database("sqlite:///:memory:")
    await database.connect()
    yield database
    await database.disconnect()
