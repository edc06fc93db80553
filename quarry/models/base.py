"""
Quarry Model Base: records with tracked attributes and association access.

Define models by subclassing and declaring fields and associations:

    class Post(Model):
        table = "posts"

        title = CharField(max_length=200)
        body = TextField(null=True)
        author = BelongsTo("User")
        comments = HasMany("Comment", dependent=Dependent.DESTROY)

        class Meta:
            timestamps = True
            locking_column = "lock_version"

        @scope
        def recent(q):
            return q.order("created_at", "DESC")

API:
    post = await Post.create(title="Hello", author=user)
    post = await Post.find(1)
    posts = await Post.where(author_id=user.id).includes("comments").all()
    post.title = "Changed"
    await post.save()
    comments = await post.related("comments")
    await post.destroy()
"""

from __future__ import annotations

import datetime
import decimal
import uuid
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..faults.domains import (
    AssociationNotFoundError,
    RecordNotFoundError,
    StrictLoadingViolationError,
    UnsupportedJoinError,
)
from .associations import AssociationDescriptor, AssociationKind
from .callbacks import Callback, CallbackChain
from .fields import Field
from .metaclass import ModelMeta
from .options import Options
from .query import NamedScope, QueryBuilder, Scope
from .validation import Errors

if TYPE_CHECKING:
    from .registry import SchemaRegistry
    from .transactions import Atomic

__all__ = ["Model", "scope"]


def scope(fn: Any) -> NamedScope:
    """Declare a named scope; the function receives the builder first."""
    return NamedScope(fn)


def _delegate(name: str) -> classmethod:
    def method(cls, *args: Any, **kwargs: Any) -> Any:
        return getattr(cls.query(), name)(*args, **kwargs)

    method.__name__ = name
    method.__doc__ = f"Shortcut for ``cls.query().{name}(...)``."
    return classmethod(method)


class Model(metaclass=ModelMeta):
    """
    Quarry Model base class: async active-record style records.

    Instances hold an attribute map keyed by column name and a changed set.
    Values assigned through fields (or ``set_attribute``) are tracked, so an
    INSERT writes only set columns and an UPDATE only changed ones.
    """

    # Class-level attributes set by metaclass
    _fields: ClassVar[Dict[str, Field]] = {}
    _fields_by_column: ClassVar[Dict[str, Field]] = {}
    _meta: ClassVar[Options]
    _table_name: ClassVar[str] = ""
    _pk_name: ClassVar[str] = "id"
    _pk_attr: ClassVar[str] = "id"
    _column_names: ClassVar[List[str]] = []
    _attr_names: ClassVar[List[str]] = []
    _registry: ClassVar[SchemaRegistry]
    _callbacks: ClassVar[Optional[CallbackChain]] = None
    _scopes: ClassVar[Dict[str, NamedScope]] = {}
    _validations: ClassVar[List[Any]] = []
    _lock_column: ClassVar[Optional[str]] = None

    def __init__(self, **attributes: Any):
        """Create a model instance (in-memory, not persisted)."""
        self._init_state()
        for field in self._fields.values():
            if field.has_default():
                self.set_attribute(field.column_name, field.get_default())
        for name, value in attributes.items():
            self._assign(name, value)

    def _init_state(self) -> None:
        self._attributes: Dict[str, Any] = {c: None for c in self._column_names}
        self._changed: Dict[str, Any] = {}
        self.previous_changes: Dict[str, Tuple[Any, Any]] = {}
        self._persisted = False
        self._destroyed = False
        self._readonly = False
        self._strict_loading = False
        self._association_cache: Dict[str, Any] = {}
        self.errors = Errors()

    def _assign(self, name: str, value: Any) -> None:
        if name in self._fields or name in self._fields_by_column:
            self.set_attribute(name, value)
            return
        registry = self._registry
        if registry.has_association(type(self), name):
            descriptor = registry.association(type(self), name)
            if descriptor.kind in (AssociationKind.BELONGS_TO, AssociationKind.BELONGS_TO_POLYMORPHIC):
                self._assign_owner(descriptor, value)
                return
        raise AttributeError(f"{type(self).__name__} has no attribute '{name}'")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} pk={self.pk}>"

    def __eq__(self, other: Any) -> bool:
        if other is self:
            return True
        if not isinstance(other, self.__class__):
            return False
        return self.pk is not None and self.pk == other.pk

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self.pk))

    # ── Attributes ───────────────────────────────────────────────────

    @classmethod
    def _column(cls, name: str) -> str:
        field = cls._fields.get(name)
        if field is not None:
            return field.column_name
        if name in cls._fields_by_column:
            return name
        raise AttributeError(f"{cls.__name__} has no attribute '{name}'")

    @property
    def pk(self) -> Any:
        return self._attributes.get(self._pk_name)

    def get_attribute(self, name: str) -> Any:
        return self._attributes.get(self._column(name))

    def set_attribute(self, name: str, value: Any) -> None:
        """Assign a value and track the change against the loaded value."""
        column = self._column(name)
        current = self._attributes.get(column)
        if column in self._changed:
            if self._persisted and value == self._changed[column]:
                del self._changed[column]
        elif not self._persisted or value != current:
            self._changed[column] = current
        self._attributes[column] = value

    @property
    def changed(self) -> List[str]:
        """Changed column names in declaration order."""
        return [c for c in self._column_names if c in self._changed]

    @property
    def changed_attributes(self) -> Dict[str, Any]:
        """Changed column -> value before the change."""
        return {c: self._changed[c] for c in self.changed}

    @property
    def changes(self) -> Dict[str, Tuple[Any, Any]]:
        return {c: (self._changed[c], self._attributes[c]) for c in self.changed}

    def has_changes(self) -> bool:
        return bool(self._changed)

    # ── State ────────────────────────────────────────────────────────

    @property
    def is_new_record(self) -> bool:
        return not self._persisted and not self._destroyed

    @property
    def is_persisted(self) -> bool:
        return self._persisted and not self._destroyed

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def is_readonly(self) -> bool:
        return self._readonly

    def readonly(self, value: bool = True) -> Model:
        """Reject further saves and destroys with ReadOnlyRecordError."""
        self._readonly = value
        return self

    def strict_loading(self, value: bool = True) -> Model:
        """Raise on lazy association loads that were not eager loaded."""
        self._strict_loading = value
        return self

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "attributes": dict(self._attributes),
            "changed": dict(self._changed),
            "previous_changes": dict(self.previous_changes),
            "persisted": self._persisted,
            "destroyed": self._destroyed,
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._attributes = dict(snapshot["attributes"])
        self._changed = dict(snapshot["changed"])
        self.previous_changes = dict(snapshot["previous_changes"])
        self._persisted = snapshot["persisted"]
        self._destroyed = snapshot["destroyed"]

    def _mark_saved(self) -> None:
        self.previous_changes = {
            c: (self._changed[c], self._attributes.get(c)) for c in self.changed
        }
        self._changed = {}
        self._persisted = True

    def _mark_destroyed(self) -> None:
        self._destroyed = True

    # ── Loading ──────────────────────────────────────────────────────

    @classmethod
    def _from_row(cls, row: Any) -> Model:
        """Create a persisted instance from a row mapping keyed by column."""
        instance = cls.__new__(cls)
        instance._init_state()
        for column, field in cls._fields_by_column.items():
            if column in row:
                instance._attributes[column] = field.to_python(row[column])
        instance._persisted = True
        return instance

    @classmethod
    async def find_by_sql(cls, sql: str, params: Optional[Sequence[Any]] = None) -> List[Model]:
        """Load records from hand-written SQL selecting this model's columns."""
        rows = await cls._registry.database.query(sql, params)
        return [cls._from_row(row) for row in rows]

    async def reload(self) -> Model:
        """Re-read every column from the database and drop cached associations."""
        if self.pk is None:
            raise RecordNotFoundError(type(self).__name__, "record has no primary key")
        fresh = await type(self).unscoped().find(self.pk)
        self._attributes = fresh._attributes
        self._changed = {}
        self._association_cache = {}
        return self

    async def lock_row(self, clause: str = "FOR UPDATE") -> Model:
        """Reload with a row lock (omitted on backends without row locks)."""
        fresh = await type(self).unscoped().lock(clause).find(self.pk)
        self._attributes = fresh._attributes
        self._changed = {}
        return self

    def to_dict(self, *, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
        """Serialize model instance to dict."""
        exclude = set(exclude or [])
        result: Dict[str, Any] = {}
        for attr_name, field in self._fields.items():
            if attr_name in exclude:
                continue
            value = self._attributes.get(field.column_name)
            if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
                value = value.isoformat()
            elif isinstance(value, uuid.UUID):
                value = str(value)
            elif isinstance(value, bytes):
                value = value.hex()
            elif isinstance(value, decimal.Decimal):
                value = str(value)
            result[attr_name] = value
        return result

    # ── Query entry points ───────────────────────────────────────────

    @classmethod
    def query(cls) -> QueryBuilder:
        """New builder with the model's default scope applied."""
        builder = QueryBuilder(cls, cls._registry)
        default_scope = cls._meta.default_scope
        if default_scope is None:
            return builder
        if isinstance(default_scope, dict):
            return builder.where(default_scope)
        if hasattr(default_scope, "apply"):
            return builder.merge(default_scope)
        return builder.merge(Scope(default_scope))

    @classmethod
    def unscoped(cls) -> QueryBuilder:
        """New builder without the default scope."""
        return QueryBuilder(cls, cls._registry)

    where = _delegate("where")
    where_not = _delegate("where_not")
    or_where = _delegate("or_where")
    join = _delegate("join")
    inner_join = _delegate("inner_join")
    left_join = _delegate("left_join")
    right_join = _delegate("right_join")
    order = _delegate("order")
    group = _delegate("group")
    select = _delegate("select")
    distinct = _delegate("distinct")
    limit = _delegate("limit")
    offset = _delegate("offset")
    page = _delegate("page")
    includes = _delegate("includes")
    preload = _delegate("preload")
    none = _delegate("none")
    scoped = _delegate("scoped")
    merge = _delegate("merge")
    create_with = _delegate("create_with")
    all = _delegate("all")
    first = _delegate("first")
    last = _delegate("last")
    take = _delegate("take")
    first_or_raise = _delegate("first_or_raise")
    last_or_raise = _delegate("last_or_raise")
    take_or_raise = _delegate("take_or_raise")
    find = _delegate("find")
    find_by = _delegate("find_by")
    find_by_or_raise = _delegate("find_by_or_raise")
    find_or_initialize_by = _delegate("find_or_initialize_by")
    find_or_create_by = _delegate("find_or_create_by")
    find_or_create_by_or_raise = _delegate("find_or_create_by_or_raise")
    find_each = _delegate("find_each")
    find_in_batches = _delegate("find_in_batches")
    count = _delegate("count")
    sum = _delegate("sum")
    average = _delegate("average")
    minimum = _delegate("minimum")
    maximum = _delegate("maximum")
    pluck = _delegate("pluck")
    pick = _delegate("pick")
    ids = _delegate("ids")
    exists = _delegate("exists")
    update_all = _delegate("update_all")
    delete_all = _delegate("delete_all")
    destroy_all = _delegate("destroy_all")

    # ── Persistence ──────────────────────────────────────────────────

    @classmethod
    def transaction(cls) -> Atomic:
        """Open (or join) a transaction on the model's database."""
        return cls._registry.database.transaction()

    @classmethod
    async def create(cls, **attributes: Any) -> Model:
        """
        Build and save a record; check ``is_persisted`` or ``errors``.

        Usage:
            user = await User.create(name="Alice", email="alice@test.com")
        """
        record = cls(**attributes)
        await record.save()
        return record

    @classmethod
    async def create_or_raise(cls, **attributes: Any) -> Model:
        """Build and save a record, raising ValidationError / RecordNotSavedError."""
        record = cls(**attributes)
        await record.save_or_raise()
        return record

    @classmethod
    def register_callback(
        cls,
        phase: str,
        fn: Any,
        *,
        if_: Any = None,
        unless: Any = None,
        on: Any = None,
    ) -> Callback:
        """Register ``fn(record)`` (or a method name) as a callback for ``phase``."""
        callback = Callback(phase, fn, if_=if_, unless=unless, on=on)
        cls._callbacks.add(callback)
        return callback

    def validate(self, errors: Errors) -> Any:
        """Hook for record-level validation; add messages to ``errors``."""
        return None

    async def is_valid(self) -> bool:
        """Run validation (with validation callbacks) and fill ``errors``."""
        action = "update" if self.is_persisted else "create"
        return await self._registry.lifecycle.validate(self, action)

    async def save(self) -> bool:
        return await self._registry.lifecycle.save(self)

    async def save_or_raise(self) -> bool:
        return await self._registry.lifecycle.save(self, strict=True)

    async def update(self, **attributes: Any) -> bool:
        """Assign ``attributes`` and save."""
        self._registry.lifecycle.check_writable(self)
        for name, value in attributes.items():
            self._assign(name, value)
        return await self.save()

    async def update_or_raise(self, **attributes: Any) -> bool:
        self._registry.lifecycle.check_writable(self)
        for name, value in attributes.items():
            self._assign(name, value)
        return await self.save_or_raise()

    async def destroy(self) -> bool:
        return await self._registry.lifecycle.destroy(self)

    async def destroy_or_raise(self) -> bool:
        return await self._registry.lifecycle.destroy(self, strict=True)

    # ── Associations ─────────────────────────────────────────────────

    def _descriptor(self, name: str) -> AssociationDescriptor:
        return self._registry.association(type(self), name)

    def is_loaded(self, name: str) -> bool:
        """Whether association ``name`` is cached (eager loaded or already read)."""
        return name in self._association_cache

    def association_query(self, name: str) -> QueryBuilder:
        """Builder for the records of association ``name`` owned by this record."""
        registry = self._registry
        model = type(self)
        descriptor = self._descriptor(name)
        kind = descriptor.kind

        if kind is AssociationKind.BELONGS_TO_POLYMORPHIC:
            discriminator = self.get_attribute(descriptor.polymorphic_type_column)
            if discriminator is None:
                raise UnsupportedJoinError(model.__name__, name, "polymorphic type is not set")
            target = registry.polymorphic_class(discriminator)
            return target.query().where({descriptor.primary_key: self.get_attribute(descriptor.foreign_key)})

        target = registry.target_model(model, name)
        table = target._table_name

        if kind is AssociationKind.BELONGS_TO:
            return target.query().where({descriptor.primary_key: self.get_attribute(descriptor.foreign_key)})

        owner_key = self.get_attribute(descriptor.primary_key)

        if kind in (AssociationKind.HAS_MANY, AssociationKind.HAS_ONE):
            return target.query().where({f"{table}.{descriptor.foreign_key}": owner_key})

        if kind is AssociationKind.HAS_MANY_POLYMORPHIC:
            return target.query().where({
                f"{table}.{descriptor.foreign_key}": owner_key,
                f"{table}.{descriptor.polymorphic_type_column}": model._meta.polymorphic_name,
            })

        if kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            join_table = descriptor.join_table
            return (
                target.query()
                .inner_join(
                    join_table,
                    on=f"{join_table}.{descriptor.association_foreign_key} = {table}.{target._pk_name}",
                )
                .where({f"{join_table}.{descriptor.foreign_key}": owner_key})
            )

        # has-many through: target joined back to the intermediate table
        through = registry.association(model, descriptor.through)
        through_model = registry.target_model(model, through.name)
        through_table = through_model._table_name
        source = registry._source_association(through_model, descriptor)
        if source.kind is AssociationKind.BELONGS_TO:
            on = f"{through_table}.{source.foreign_key} = {table}.{source.primary_key}"
        else:
            on = f"{through_table}.{source.primary_key} = {table}.{source.foreign_key}"
        if through.kind is AssociationKind.BELONGS_TO:
            owner_column = f"{through_table}.{through.primary_key}"
            owner_key = self.get_attribute(through.foreign_key)
        else:
            owner_column = f"{through_table}.{through.foreign_key}"
            owner_key = self.get_attribute(through.primary_key)
        return (
            target.query()
            .inner_join(through_table, on=on)
            .where({owner_column: owner_key})
            .distinct()
        )

    async def related(self, name: str) -> Any:
        """
        Read association ``name``: a record (or None) or a list of records.

        Results are cached on the record until ``reload()``.

        Raises:
            StrictLoadingViolationError: On a strict-loading record whose
                association was not eager loaded
        """
        if name in self._association_cache:
            return self._association_cache[name]

        descriptor = self._descriptor(name)
        if self._strict_loading:
            raise StrictLoadingViolationError(type(self).__name__, name)

        if descriptor.kind in (AssociationKind.BELONGS_TO, AssociationKind.BELONGS_TO_POLYMORPHIC):
            if self.get_attribute(descriptor.foreign_key) is None:
                value = None
            elif (
                descriptor.kind is AssociationKind.BELONGS_TO_POLYMORPHIC
                and self.get_attribute(descriptor.polymorphic_type_column) is None
            ):
                value = None
            else:
                value = await self.association_query(name).take()
        elif self.is_new_record:
            value = None if descriptor.is_singular else []
        elif descriptor.is_singular:
            value = await self.association_query(name).first()
        else:
            value = await self.association_query(name).all()

        self._association_cache[name] = value
        return value

    def _assign_owner(self, descriptor: AssociationDescriptor, record: Optional[Model]) -> None:
        key = record.get_attribute(descriptor.primary_key) if record is not None else None
        self.set_attribute(descriptor.foreign_key, key)
        if descriptor.kind is AssociationKind.BELONGS_TO_POLYMORPHIC:
            self.set_attribute(
                descriptor.polymorphic_type_column,
                record._meta.polymorphic_name if record is not None else None,
            )
        self._association_cache[descriptor.name] = record

    def _owned_attributes(self, descriptor: AssociationDescriptor) -> Dict[str, Any]:
        attributes = {descriptor.foreign_key: self.get_attribute(descriptor.primary_key)}
        if descriptor.kind is AssociationKind.HAS_MANY_POLYMORPHIC:
            attributes[descriptor.polymorphic_type_column] = type(self)._meta.polymorphic_name
        return attributes

    def build_related(self, name: str, **attributes: Any) -> Model:
        """
        Build (without saving) a record for association ``name``.

        belongs-to: the new owner is cached; its key is copied on ``create_related``.
        has-many / has-one: the foreign key (and type) point at this record.
        """
        descriptor = self._descriptor(name)
        kind = descriptor.kind
        model = type(self)

        if kind is AssociationKind.BELONGS_TO_POLYMORPHIC:
            raise UnsupportedJoinError(model.__name__, name, "build the owner through its own class")
        if kind is AssociationKind.HAS_MANY_THROUGH:
            raise UnsupportedJoinError(model.__name__, name, f"records are built through '{descriptor.through}'")

        target = self._registry.target_model(model, name)

        if kind is AssociationKind.BELONGS_TO:
            record = target(**attributes)
            self._association_cache[name] = record
            return record

        if kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            return target(**attributes)

        record = target(**{**attributes, **self._owned_attributes(descriptor)})
        if kind is AssociationKind.HAS_ONE:
            self._association_cache[name] = record
        elif isinstance(self._association_cache.get(name), list):
            self._association_cache[name].append(record)
        return record

    async def create_related(self, name: str, **attributes: Any) -> Model:
        """Build and save a record for association ``name``."""
        descriptor = self._descriptor(name)
        record = self.build_related(name, **attributes)
        saved = await record.save()
        if saved and descriptor.kind is AssociationKind.BELONGS_TO:
            self._assign_owner(descriptor, record)
        elif saved and descriptor.kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            await self.attach(name, record)
        return record

    async def set_related(self, name: str, record: Optional[Model]) -> None:
        """
        Point association ``name`` at ``record``.

        belongs-to only assigns the key (and type) on this record; has-one and
        has-many update and save ``record`` so its foreign key refers here.
        """
        descriptor = self._descriptor(name)
        kind = descriptor.kind

        if kind in (AssociationKind.BELONGS_TO, AssociationKind.BELONGS_TO_POLYMORPHIC):
            self._assign_owner(descriptor, record)
            return

        if kind in (AssociationKind.HAS_ONE, AssociationKind.HAS_MANY, AssociationKind.HAS_MANY_POLYMORPHIC):
            if record is None:
                raise AssociationNotFoundError(type(self).__name__, name, metadata={"reason": "no record given"})
            for column, value in self._owned_attributes(descriptor).items():
                record.set_attribute(column, value)
            await record.save_or_raise()
            if kind is AssociationKind.HAS_ONE:
                self._association_cache[name] = record
            else:
                self._association_cache.pop(name, None)
            return

        if kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            await self.attach(name, record)
            return

        raise UnsupportedJoinError(type(self).__name__, name, f"assign through '{descriptor.through}'")

    def _join_rows(self, name: str) -> AssociationDescriptor:
        descriptor = self._descriptor(name)
        if descriptor.kind is not AssociationKind.HAS_AND_BELONGS_TO_MANY:
            raise UnsupportedJoinError(
                type(self).__name__, name, "attach / detach / clear need a many-to-many association"
            )
        return descriptor

    @staticmethod
    def _key_of(target: Any) -> Any:
        return target.pk if isinstance(target, Model) else target

    async def attach(self, name: str, *targets: Any) -> None:
        """
        Add join-table rows linking this record to ``targets``.

        Usage:
            await post.attach("tags", tag1, tag2.id)
        """
        descriptor = self._join_rows(name)
        db = self._registry.database
        owner_key = self.get_attribute(descriptor.primary_key)
        table, fk, afk = descriptor.join_table, descriptor.foreign_key, descriptor.association_foreign_key

        async with db.transaction():
            for target in targets:
                target_key = self._key_of(target)
                linked = await db.query(
                    f"SELECT 1 FROM {table} WHERE {fk} = ? AND {afk} = ? LIMIT 1",
                    [owner_key, target_key],
                )
                if not linked:
                    await db.execute(
                        f"INSERT INTO {table} ({fk}, {afk}) VALUES (?, ?)",
                        [owner_key, target_key],
                    )
        self._association_cache.pop(name, None)

    async def detach(self, name: str, *targets: Any) -> int:
        """Remove join-table rows to ``targets``; returns rows removed."""
        descriptor = self._join_rows(name)
        if not targets:
            return 0
        keys = [self._key_of(t) for t in targets]
        placeholders = ", ".join("?" for _ in keys)
        result = await self._registry.database.execute(
            f"DELETE FROM {descriptor.join_table} WHERE {descriptor.foreign_key} = ? "
            f"AND {descriptor.association_foreign_key} IN ({placeholders})",
            [self.get_attribute(descriptor.primary_key), *keys],
        )
        self._association_cache.pop(name, None)
        return result.affected_rows

    async def clear(self, name: str) -> int:
        """Remove every join-table row of this record for ``name``."""
        descriptor = self._join_rows(name)
        result = await self._registry.database.execute(
            f"DELETE FROM {descriptor.join_table} WHERE {descriptor.foreign_key} = ?",
            [self.get_attribute(descriptor.primary_key)],
        )
        self._association_cache[name] = []
        return result.affected_rows
