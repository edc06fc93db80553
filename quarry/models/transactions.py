"""
Quarry Transactions: atomic() context manager with nested reuse.

A transaction is scoped to one logical operation: one save/destroy, or
one block opened by the caller. Nested requests from the same task join the
transaction instead of opening a new one, so an error anywhere inside the
outermost block rolls back everything. Other tasks wait for the block to
finish.

Usage:
    from quarry.models.transactions import atomic

    async with atomic(db):
        user = await User.create(name="Alice")
        await Profile.create(user_id=user.id)
        # Both committed together

    # With commit hooks:
    async with atomic(db) as txn:
        await Order.create(total=100)
        txn.on_commit(lambda: send_email("order confirmed"))
        txn.on_rollback(lambda: log_rollback("order failed"))

    # Explicit abort without raising:
    async with atomic(db) as txn:
        await Order.create(total=100)
        txn.rollback()
"""

from __future__ import annotations

import inspect
import logging
from contextvars import Token
from typing import Callable, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from ..db.engine import Database

logger = logging.getLogger("quarry.models.transactions")

__all__ = [
    "atomic",
    "Atomic",
]


class Atomic:
    """
    Async context manager for database transactions.

    - First atomic() on a database opens the transaction (BEGIN)
    - Nested atomic() joins it and yields the outermost ``Atomic``
    - An exception or an explicit ``rollback()`` rolls back at the outermost exit
    - Successful outermost exit commits

    Supports:
    - ``on_commit(fn)``: called after the outermost commit only
    - ``on_rollback(fn)``: called after the outermost rollback
    """

    def __init__(self, db: Database):
        self._db = db
        self._is_outermost = False
        self._rollback_only = False
        self._commit_hooks: List[Callable] = []
        self._rollback_hooks: List[Callable] = []
        self._token: Optional[Token] = None

    @property
    def db(self) -> Database:
        return self._db

    @property
    def is_rollback_only(self) -> bool:
        return self._rollback_only

    def on_commit(self, fn: Callable) -> None:
        """
        Register a function to call after a successful outermost commit.

        Supports both sync and async callables.
        """
        self._commit_hooks.append(fn)

    def on_rollback(self, fn: Callable) -> None:
        """Register a function to call if the transaction rolls back."""
        self._rollback_hooks.append(fn)

    def rollback(self) -> None:
        """Mark the transaction for rollback; no exception is raised."""
        self._rollback_only = True

    async def _fire_hooks(self, hooks: List[Callable]) -> None:
        """Execute a list of hooks, catching exceptions."""
        for hook in hooks:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(f"Transaction hook failed: {exc}")

    async def __aenter__(self) -> Atomic:
        active: Optional[Atomic] = self._db.current_transaction()
        if active is not None:
            return active

        self._token = await self._db._open_transaction(self)
        self._is_outermost = True
        logger.debug("Began transaction")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self._is_outermost:
            return False

        hooks = self._commit_hooks
        commit_error: Optional[Exception] = None
        try:
            if exc_type is not None or self._rollback_only:
                await self._db.rollback()
                hooks = self._rollback_hooks
                logger.debug("Rolled back transaction")
            else:
                try:
                    await self._db.commit()
                    logger.debug("Committed transaction")
                except Exception as exc:
                    await self._db.rollback()
                    hooks = self._rollback_hooks
                    commit_error = exc
        finally:
            self._db._close_transaction(self._token)
            self._token = None

        await self._fire_hooks(hooks)
        if commit_error is not None:
            raise commit_error
        return False  # Don't suppress exceptions


def atomic(db: Database) -> Atomic:
    """
    Create an atomic transaction context manager on ``db``.

        async with atomic(db):
            ...
    """
    return Atomic(db)
