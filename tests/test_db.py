"""
Database engine tests: connection lifecycle, rows, fault wrapping and
transaction scoping with hooks.
"""

import asyncio
import logging

import pytest

from quarry.db import Database, ExecResult, Row
from quarry.faults import DatabaseConnectionFault, QueryFault
from quarry.models import Atomic, atomic


async def _create_items(db):
    await db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL)")


class TestRow:
    """Result row access."""

    def test_mapping_access(self):
        row = Row(["id", "name"], [1, "Ann"])
        assert row["name"] == "Ann"
        assert row[0] == 1
        assert dict(row) == {"id": 1, "name": "Ann"}
        assert len(row) == 2
        assert row.column_names() == ["id", "name"]

    def test_missing_column(self):
        with pytest.raises(KeyError):
            Row(["id"], [1])["name"]

    def test_sequential_reads(self):
        row = Row(["a", "b"], [1, 2])
        assert row.read_next_value() == 1
        assert row.read_next_value() == 2
        with pytest.raises(IndexError):
            row.read_next_value()
        row.rewind()
        assert row.read_next_value() == 1


class TestConnection:
    """connect / disconnect and URL handling."""

    def test_unsupported_url(self):
        with pytest.raises(DatabaseConnectionFault) as exc_info:
            Database("postgresql://localhost/app")
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        db = Database("sqlite:///:memory:")
        assert not db.is_connected
        await db.connect()
        await db.connect()
        assert db.is_connected
        assert db.driver == "sqlite"
        assert db.dialect == "sqlite"
        assert db.capabilities.supports_row_locks is False
        await db.disconnect()
        assert not db.is_connected

    @pytest.mark.asyncio
    async def test_statements_connect_lazily(self):
        db = Database("sqlite:///:memory:")
        try:
            assert await db.scalar("SELECT 1") == 1
            assert db.is_connected
        finally:
            await db.disconnect()

    @pytest.mark.asyncio
    async def test_file_database(self, tmp_path):
        path = tmp_path / "app.sqlite3"
        db = Database(f"sqlite:///{path}")
        await db.connect()
        await _create_items(db)
        await db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        await db.disconnect()

        db = Database(f"sqlite:///{path}")
        await db.connect()
        try:
            assert await db.scalar("SELECT COUNT(*) FROM items") == 1
        finally:
            await db.disconnect()


class TestStatements:
    """execute / query / scalar."""

    @pytest.mark.asyncio
    async def test_execute_result(self, memory_db):
        await _create_items(memory_db)
        result = await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        assert isinstance(result, ExecResult)
        assert result.affected_rows == 1
        assert result.last_insert_id == 1

        await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["b"])
        result = await memory_db.execute("UPDATE items SET name = ?", ["z"])
        assert result.affected_rows == 2

    @pytest.mark.asyncio
    async def test_query_rows(self, memory_db):
        await _create_items(memory_db)
        await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        rows = await memory_db.query("SELECT id, name FROM items WHERE name = ?", ["a"])
        assert len(rows) == 1
        assert rows[0]["name"] == "a"
        assert rows[0].column_names() == ["id", "name"]

    @pytest.mark.asyncio
    async def test_scalar_of_nothing(self, memory_db):
        await _create_items(memory_db)
        assert await memory_db.scalar("SELECT name FROM items") is None

    @pytest.mark.asyncio
    async def test_errors_become_query_faults(self, memory_db):
        with pytest.raises(QueryFault) as exc_info:
            await memory_db.query("SELECT * FROM missing")
        fault = exc_info.value
        assert fault.code == "QUERY_FAILED"
        assert fault.metadata["operation"] == "query"
        assert fault.metadata["sql"] == "SELECT * FROM missing"

        with pytest.raises(QueryFault):
            await memory_db.execute("INSERT INTO missing VALUES (1)")

    @pytest.mark.asyncio
    async def test_echo_logs_statements(self, caplog):
        db = Database("sqlite:///:memory:", echo=True)
        caplog.set_level(logging.DEBUG, logger="quarry.db")
        try:
            await db.scalar("SELECT 41 + 1")
        finally:
            await db.disconnect()
        assert "SELECT 41 + 1" in caplog.text


class TestTransactions:
    """Atomic blocks, nesting and hooks."""

    @pytest.mark.asyncio
    async def test_commit(self, memory_db):
        await _create_items(memory_db)
        async with memory_db.transaction() as tx:
            assert isinstance(tx, Atomic)
            assert memory_db.in_transaction
            await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
        assert not memory_db.in_transaction
        assert await memory_db.scalar("SELECT COUNT(*) FROM items") == 1

    @pytest.mark.asyncio
    async def test_nested_blocks_share_the_outermost(self, memory_db):
        calls = []
        async with memory_db.transaction() as outer:
            async with atomic(memory_db) as inner:
                assert inner is outer
                inner.on_commit(lambda: calls.append("sync"))

                async def hook():
                    calls.append("async")

                inner.on_commit(hook)
            assert calls == []
            assert memory_db.in_transaction
        assert calls == ["sync", "async"]

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, memory_db):
        await _create_items(memory_db)
        calls = []
        with pytest.raises(RuntimeError):
            async with memory_db.transaction() as tx:
                tx.on_commit(lambda: calls.append("commit"))
                tx.on_rollback(lambda: calls.append("rollback"))
                await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
                raise RuntimeError("abort")
        assert calls == ["rollback"]
        assert await memory_db.scalar("SELECT COUNT(*) FROM items") == 0

    @pytest.mark.asyncio
    async def test_rollback_without_raising(self, memory_db):
        await _create_items(memory_db)
        async with memory_db.transaction() as tx:
            await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
            async with memory_db.transaction() as inner:
                inner.rollback()
            assert tx.is_rollback_only
        assert await memory_db.scalar("SELECT COUNT(*) FROM items") == 0

    @pytest.mark.asyncio
    async def test_failing_hook_is_logged(self, memory_db, caplog):
        calls = []

        def broken():
            raise ValueError("hook failed")

        async with memory_db.transaction() as tx:
            tx.on_commit(broken)
            tx.on_commit(lambda: calls.append("after"))
        assert calls == ["after"]
        assert "hook failed" in caplog.text

    @pytest.mark.asyncio
    async def test_run_in_transaction(self, memory_db):
        await _create_items(memory_db)

        async def body(tx):
            result = await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
            return result.last_insert_id

        assert await memory_db.run_in_transaction(body) == 1
        assert await memory_db.run_in_transaction(lambda tx: "plain") == "plain"
        assert not memory_db.in_transaction

    @pytest.mark.asyncio
    async def test_failed_statement_inside_transaction(self, memory_db):
        await _create_items(memory_db)
        with pytest.raises(QueryFault):
            async with memory_db.transaction():
                await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["a"])
                await memory_db.execute("INSERT INTO items (name) VALUES (NULL)")
        assert not memory_db.in_transaction
        assert await memory_db.scalar("SELECT COUNT(*) FROM items") == 0

    @pytest.mark.asyncio
    async def test_tasks_spawned_inside_join(self, memory_db):
        await _create_items(memory_db)
        async with memory_db.transaction() as tx:
            async def child():
                async with memory_db.transaction() as inner:
                    assert inner is tx
                    await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["child"])

            await asyncio.create_task(child())
            tx.rollback()
        assert await memory_db.scalar("SELECT COUNT(*) FROM items") == 0

    @pytest.mark.asyncio
    async def test_statements_from_other_tasks_wait(self, memory_db):
        await _create_items(memory_db)
        opened = asyncio.Event()

        async def outsider():
            await opened.wait()
            assert not memory_db.in_transaction
            await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["outside"])

        task = asyncio.create_task(outsider())
        async with memory_db.transaction() as tx:
            await memory_db.execute("INSERT INTO items (name) VALUES (?)", ["inside"])
            opened.set()
            await asyncio.sleep(0.05)
            assert not task.done()
            tx.rollback()
        await task
        rows = await memory_db.query("SELECT name FROM items")
        assert [row["name"] for row in rows] == ["outside"]
