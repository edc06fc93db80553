"""
Quarry Lifecycle: save and destroy orchestration for records.

The engine owns the ordering contract of a write:

    read-only check
    before_validation → validation → after_validation      (no transaction)
    before_save → before_create | before_update            (timestamps set)
    transaction:
        INSERT | UPDATE (optimistic lock) | DELETE + dependents
        after_create | after_update | after_destroy → after_save
    after_commit once the outermost transaction commits
    after_rollback (and in-memory state restored) when it rolls back

One ``Lifecycle`` exists per ``SchemaRegistry`` (``registry.lifecycle``).
"""

from __future__ import annotations

import inspect
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, TYPE_CHECKING

from ..faults.domains import (
    ReadOnlyRecordError,
    RecordNotSavedError,
    StaleObjectError,
    ValidationError,
)
from .associations import AssociationKind, Dependent
from .fields import UNSET, FieldValidationError

if TYPE_CHECKING:
    from .base import Model
    from .registry import SchemaRegistry

logger = logging.getLogger("quarry.models.lifecycle")

__all__ = ["Lifecycle"]

_BELONGS_TO_KINDS = (AssociationKind.BELONGS_TO, AssociationKind.BELONGS_TO_POLYMORPHIC)
_DEPENDENT_KINDS = (
    AssociationKind.HAS_MANY,
    AssociationKind.HAS_ONE,
    AssociationKind.HAS_MANY_POLYMORPHIC,
)


class Lifecycle:
    """Runs validation, callbacks and SQL writes for records of one registry."""

    def __init__(self, registry: SchemaRegistry):
        self._registry = registry

    # ── Validation ───────────────────────────────────────────────────

    async def validate(self, record: Model, action: str) -> bool:
        """Fill ``record.errors``; True when the record is valid."""
        model = type(record)
        callbacks = model._callbacks
        await callbacks.run("before_validation", record, action)

        errors = record.errors
        errors.clear()

        for attr_name, field in model._fields.items():
            if field.primary_key:
                continue
            value = record.get_attribute(field.column_name)
            try:
                cleaned = field.validate(value)
            except FieldValidationError as exc:
                errors.add(attr_name, exc.message)
                continue
            if cleaned is not value:
                record.set_attribute(field.column_name, cleaned)

        for descriptor in self._registry.associations(model).values():
            if descriptor.kind not in _BELONGS_TO_KINDS or descriptor.optional:
                continue
            if record.get_attribute(descriptor.foreign_key) is None and descriptor.foreign_key not in errors:
                errors.add(descriptor.foreign_key, "can't be blank")

        for validator in model._validations:
            await validator.validate(record, errors)

        result = record.validate(errors)
        if inspect.isawaitable(result):
            await result

        await callbacks.run("after_validation", record, action)
        return not errors

    # ── Save ─────────────────────────────────────────────────────────

    def check_writable(self, record: Model) -> None:
        """Raise ``ReadOnlyRecordError`` for read-only or destroyed records."""
        if record._readonly:
            raise ReadOnlyRecordError(type(record).__name__)
        if record._destroyed:
            raise ReadOnlyRecordError(type(record).__name__, "record has been destroyed")

    async def save(self, record: Model, *, strict: bool = False) -> bool:
        """
        Create or update ``record``.

        Returns False when validation fails or no row was written; with
        ``strict`` those cases raise ``ValidationError`` / ``RecordNotSavedError``.
        ``StaleObjectError`` and database faults always propagate.
        """
        self.check_writable(record)
        model = type(record)
        callbacks = model._callbacks
        action = "update" if record.is_persisted else "create"

        try:
            valid = await self.validate(record, action)
            if valid:
                await callbacks.run("before_save", record, action)
                await callbacks.run(f"before_{action}", record, action)
        except Exception:
            await callbacks.run_quietly("after_rollback", record, action)
            raise

        if not valid:
            if strict:
                raise ValidationError(model.__name__, record.errors.to_dict())
            return False

        if action == "update" and not record._changed:
            return True

        on_rollback = self._rollback_handler(record, record._snapshot(), action)
        self._apply_pre_save(record, action == "create")

        db = self._registry.database
        owns_transaction = not db.in_transaction
        try:
            async with db.transaction() as tx:
                if action == "create":
                    written = await self._insert(record)
                else:
                    written = await self._update(record)

                if not written:
                    if owns_transaction:
                        tx.rollback()
                else:
                    record._mark_saved()
                    await callbacks.run(f"after_{action}", record, action)
                    await callbacks.run("after_save", record, action)
                    tx.on_commit(partial(callbacks.run_quietly, "after_commit", record, action))
                    tx.on_rollback(on_rollback)
        except Exception:
            await on_rollback()
            raise

        if not written:
            await on_rollback()
            if strict:
                raise RecordNotSavedError(model.__name__, "no rows affected")
            return False

        logger.debug(f"{action.capitalize()}d {model.__name__} pk={record.pk}")
        return True

    def _apply_pre_save(self, record: Model, is_create: bool) -> None:
        for field in type(record)._fields.values():
            value = field.pre_save(record, is_create)
            if value is not UNSET:
                record.set_attribute(field.column_name, value)

    def _rollback_handler(
        self, record: Model, snapshot: Dict[str, Any], action: str
    ) -> Callable[[], Awaitable[None]]:
        """Restore state and run after_rollback, at most once per write."""
        fired = False

        async def handler() -> None:
            nonlocal fired
            if fired:
                return
            fired = True
            record._restore(snapshot)
            await type(record)._callbacks.run_quietly("after_rollback", record, action)

        return handler

    async def _insert(self, record: Model) -> bool:
        model = type(record)
        lock_column = model._lock_column
        if lock_column and record.get_attribute(lock_column) is None:
            record.set_attribute(lock_column, 0)

        columns = [c for c in model._column_names if c in record._changed]
        values = [model._fields_by_column[c].to_db(record.get_attribute(c)) for c in columns]
        if columns:
            placeholders = ", ".join("?" for _ in columns)
            sql = f"INSERT INTO {model._table_name} ({', '.join(columns)}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {model._table_name} DEFAULT VALUES"

        result = await self._registry.database.execute(sql, values)
        if result.affected_rows == 0:
            return False
        if record.pk is None and result.last_insert_id is not None:
            pk_field = model._fields_by_column[model._pk_name]
            record._attributes[model._pk_name] = pk_field.to_python(result.last_insert_id)
        return True

    async def _update(self, record: Model) -> bool:
        model = type(record)
        pk_name = model._pk_name
        lock_column = model._lock_column

        # A changed primary key is written; the WHERE matches the loaded key
        columns = [c for c in model._column_names if c in record._changed]
        if not columns and not lock_column:
            return True
        assignments = [f"{c} = ?" for c in columns]
        params = [model._fields_by_column[c].to_db(record.get_attribute(c)) for c in columns]

        where = f"{pk_name} = ?"
        params.append(record._changed.get(pk_name, record.pk))

        previous_lock = None
        if lock_column:
            previous_lock = record._changed.get(lock_column, record.get_attribute(lock_column))
            new_lock = (record.get_attribute(lock_column) or 0) + 1
            record._attributes[lock_column] = new_lock
            if lock_column not in columns:
                assignments.append(f"{lock_column} = ?")
                params.insert(len(assignments) - 1, new_lock)
            else:
                params[columns.index(lock_column)] = new_lock
            if previous_lock is None:
                where += f" AND {lock_column} IS NULL"
            else:
                where += f" AND {lock_column} = ?"
                params.append(previous_lock)

        sql = f"UPDATE {model._table_name} SET {', '.join(assignments)} WHERE {where}"
        result = await self._registry.database.execute(sql, params)
        if result.affected_rows == 0:
            if lock_column:
                record._attributes[lock_column] = previous_lock
                raise StaleObjectError(model.__name__, record.pk)
            return False
        return True

    # ── Destroy ──────────────────────────────────────────────────────

    async def destroy(self, record: Model, *, strict: bool = False) -> bool:
        """
        Delete ``record`` and apply ``dependent`` rules of its associations.

        A record that was never saved is not destroyed and gives False.
        """
        self.check_writable(record)
        model = type(record)
        if record.is_new_record:
            if strict:
                raise RecordNotSavedError(model.__name__, "record was never saved")
            return False

        callbacks = model._callbacks
        action = "destroy"
        try:
            await callbacks.run("before_destroy", record, action)
        except Exception:
            await callbacks.run_quietly("after_rollback", record, action)
            raise

        on_rollback = self._rollback_handler(record, record._snapshot(), action)
        db = self._registry.database
        owns_transaction = not db.in_transaction
        try:
            async with db.transaction() as tx:
                written = await self._delete(record)
                if not written:
                    if owns_transaction:
                        tx.rollback()
                else:
                    await self._destroy_dependents(record)
                    record._mark_destroyed()
                    await callbacks.run("after_destroy", record, action)
                    tx.on_commit(partial(callbacks.run_quietly, "after_commit", record, action))
                    tx.on_rollback(on_rollback)
        except Exception:
            await on_rollback()
            raise

        if not written:
            await on_rollback()
            if strict:
                raise RecordNotSavedError(model.__name__, "no rows deleted")
            return False

        logger.debug(f"Destroyed {model.__name__} pk={record.pk}")
        return True

    async def _delete(self, record: Model) -> bool:
        model = type(record)
        sql = f"DELETE FROM {model._table_name} WHERE {model._pk_name} = ?"
        params = [record.pk]
        lock_column = model._lock_column
        if lock_column:
            lock_value = record._changed.get(lock_column, record.get_attribute(lock_column))
            if lock_value is None:
                sql += f" AND {lock_column} IS NULL"
            else:
                sql += f" AND {lock_column} = ?"
                params.append(lock_value)

        result = await self._registry.database.execute(sql, params)
        if result.affected_rows == 0:
            if lock_column:
                raise StaleObjectError(model.__name__, record.pk)
            return False
        return True

    async def _destroy_dependents(self, record: Model) -> None:
        model = type(record)
        db = self._registry.database

        for descriptor in self._registry.associations(model).values():
            owner_key = record.get_attribute(descriptor.primary_key)

            if descriptor.kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
                await db.execute(
                    f"DELETE FROM {descriptor.join_table} WHERE {descriptor.foreign_key} = ?",
                    [owner_key],
                )
                continue

            if descriptor.kind not in _DEPENDENT_KINDS or descriptor.dependent is None:
                continue

            target = self._registry.target_model(model, descriptor.name)
            where = f"{descriptor.foreign_key} = ?"
            params = [owner_key]
            if descriptor.polymorphic_type_column:
                where += f" AND {descriptor.polymorphic_type_column} = ?"
                params.append(model._meta.polymorphic_name)

            if descriptor.dependent is Dependent.DESTROY:
                children = await target.unscoped().where(where, *params).all()
                for child in children:
                    await child.destroy()
            elif descriptor.dependent is Dependent.DELETE_ALL:
                await db.execute(f"DELETE FROM {target._table_name} WHERE {where}", params)
            elif descriptor.dependent is Dependent.NULLIFY:
                assignments = f"{descriptor.foreign_key} = NULL"
                if descriptor.polymorphic_type_column:
                    assignments += f", {descriptor.polymorphic_type_column} = NULL"
                await db.execute(f"UPDATE {target._table_name} SET {assignments} WHERE {where}", params)

            record._association_cache.pop(descriptor.name, None)
