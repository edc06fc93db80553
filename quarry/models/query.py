"""
Quarry QueryBuilder: chainable SELECT assembly, eager loading and bulk SQL.

Every clause method mutates the builder and returns it, so calls chain:

    users = await (
        User.query()
        .where(active=True)
        .where("age > ?", 18)
        .or_where(role="admin")
        .left_join("posts")
        .order("name")
        .limit(10)
        .all()
    )

Terminal methods (``all``, ``first``, ``count``, ``pluck``, ...) are async
and execute against the database bound to the model's registry. ``build()``
and ``to_sql()`` are pure and never touch the database.

Builders are not safe to share across concurrent tasks.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
    TYPE_CHECKING,
)

from ..faults.domains import InvalidConditionError, RecordNotFoundError
from .associations import AssociationDescriptor, AssociationKind, JoinClause, normalize_join_type
from .predicates import AND, OR, Fragment, PredicateList, bind_value, check_identifier

if TYPE_CHECKING:
    from ..db.engine import Database
    from .base import Model
    from .registry import SchemaRegistry

logger = logging.getLogger("quarry.models.query")

__all__ = ["QueryBuilder", "Scope", "NamedScope"]

_DIRECTIONS = ("ASC", "DESC")


def _mentions(sql: str, table: str) -> bool:
    return re.search(rf"(?<![\w.]){re.escape(table)}\.", sql) is not None


class Scope:
    """
    Reusable query fragment: anything with ``apply(builder)`` merges.

        active = Scope(lambda q: q.where(active=True))
        await User.query().merge(active).all()
    """

    def __init__(self, fn: Callable[..., Any], *args: Any, **kwargs: Any):
        self.fn = fn
        self.args = args
        self.kwargs = kwargs

    def apply(self, builder: QueryBuilder) -> QueryBuilder:
        result = self.fn(builder, *self.args, **self.kwargs)
        return builder if result is None else result


class NamedScope:
    """
    Class-level named scope declared with ``@scope``.

        class Post(Model):
            @scope
            def published(q):
                return q.where(published=True)

            @scope
            def since(q, day):
                return q.where("created_at >= ?", day)

        await Post.published().since(day).all()
    """

    def __init__(self, fn: Callable[..., Any]):
        self.fn = fn
        self.name = fn.__name__
        self.__doc__ = fn.__doc__

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: Any, owner: type) -> Callable[..., QueryBuilder]:
        def build(*args: Any, **kwargs: Any) -> QueryBuilder:
            return owner.query().scoped(self.name, *args, **kwargs)
        build.__name__ = self.name
        return build

    def apply(self, builder: QueryBuilder, *args: Any, **kwargs: Any) -> QueryBuilder:
        result = self.fn(builder, *args, **kwargs)
        return builder if result is None else result


class QueryBuilder:
    """
    Chainable query over one model.

    Holds an accumulated predicate (WHERE), a separate HAVING predicate with
    its own parameters, join clauses, ordering, grouping, selection, paging,
    lock and eager-loading lists.
    """

    def __init__(self, model: Type[Model], registry: Optional[SchemaRegistry] = None):
        self._model = model
        self._registry = registry or model._registry
        self._table = model._table_name
        self._where = PredicateList()
        self._having = PredicateList()
        self._joins: List[JoinClause] = []
        self._eager_joins: List[JoinClause] = []
        self._includes: List[str] = []
        self._preloads: List[str] = []
        self._order: List[Tuple[str, str]] = []
        self._group: List[str] = []
        self._select: Optional[List[str]] = None
        self._distinct = False
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None
        self._lock: Optional[str] = None
        self._none = False
        self._readonly = False
        self._strict_loading = False
        self._create_with: Dict[str, Any] = {}
        self._alias_map: Dict[str, Tuple[Optional[str], str]] = {}

    def __repr__(self) -> str:
        return f"<QueryBuilder {self._model.__name__}: {self.to_sql()}>"

    def __getattr__(self, name: str) -> Any:
        # Named scopes chain like clause methods
        model = self.__dict__.get("_model")
        if model is not None and name in model._scopes:
            def scoped(*args: Any, **kwargs: Any) -> QueryBuilder:
                return self.scoped(name, *args, **kwargs)
            return scoped
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    @property
    def model(self) -> Type[Model]:
        return self._model

    @property
    def db(self) -> Database:
        return self._registry.database

    def _clone(self) -> QueryBuilder:
        clone = copy.copy(self)
        clone._where = self._where.copy()
        clone._having = self._having.copy()
        clone._joins = list(self._joins)
        clone._eager_joins = list(self._eager_joins)
        clone._includes = list(self._includes)
        clone._preloads = list(self._preloads)
        clone._order = list(self._order)
        clone._group = list(self._group)
        clone._select = list(self._select) if self._select is not None else None
        clone._create_with = dict(self._create_with)
        clone._alias_map = {}
        return clone

    # ── Predicates ───────────────────────────────────────────────────

    @staticmethod
    def _accumulate(
        predicates: PredicateList,
        condition: Any,
        params: Sequence[Any],
        conditions: Dict[str, Any],
        *,
        connector: str = AND,
        negate: bool = False,
    ) -> None:
        if condition is None:
            if not conditions:
                raise InvalidConditionError(condition, "no condition given")
            predicates.add(conditions, connector=connector, negate=negate)
        elif isinstance(condition, str) and conditions:
            predicates.add(condition, params, named=conditions, connector=connector, negate=negate)
        elif isinstance(condition, dict) and conditions:
            predicates.add({**condition, **conditions}, connector=connector, negate=negate)
        else:
            predicates.add(condition, params, connector=connector, negate=negate)

    def where(self, condition: Any = None, *params: Any, **conditions: Any) -> QueryBuilder:
        """
        AND a condition into the WHERE predicate.

            .where(status="active", deleted_at=None)
            .where({"age": Range(18, 65)})
            .where("score > ? AND score < ?", 10, 90)
            .where("name = :name", name="Ann")
            .where(P(role="admin") | P(role="owner"))
        """
        self._accumulate(self._where, condition, params, conditions)
        return self

    def where_not(self, condition: Any = None, *params: Any, **conditions: Any) -> QueryBuilder:
        self._accumulate(self._where, condition, params, conditions, negate=True)
        return self

    def or_where(self, condition: Any = None, *params: Any, **conditions: Any) -> QueryBuilder:
        self._accumulate(self._where, condition, params, conditions, connector=OR)
        return self

    def having(self, condition: Any = None, *params: Any, **conditions: Any) -> QueryBuilder:
        self._accumulate(self._having, condition, params, conditions)
        return self

    # ── Joins ────────────────────────────────────────────────────────

    def _add_join(self, target: str, on: Optional[str], join_type: Optional[str]) -> QueryBuilder:
        if on is not None:
            clause = JoinClause(normalize_join_type(join_type or "INNER"), check_identifier(target), on)
            clauses = [clause]
        else:
            clauses = self._registry.join_clauses(self._model, target, join_type)
        for clause in clauses:
            existing = next((c for c in self._joins if c.table == clause.table and c.on == clause.on), None)
            if existing is None:
                self._joins.append(clause)
            elif existing in self._eager_joins:
                # An explicit join now filters on a table eager loading added
                self._eager_joins.remove(existing)
        return self

    def join(self, target: str, on: Optional[str] = None) -> QueryBuilder:
        """
        Join an association by name (smart join type), or a table with ``on``.

            .join("author")                                  # INNER (required belongs-to)
            .join("audits", on="audits.user_id = users.id")  # INNER JOIN audits ON ...
        """
        return self._add_join(target, on, None)

    def inner_join(self, target: str, on: Optional[str] = None) -> QueryBuilder:
        return self._add_join(target, on, "INNER")

    def left_join(self, target: str, on: Optional[str] = None) -> QueryBuilder:
        return self._add_join(target, on, "LEFT")

    def right_join(self, target: str, on: Optional[str] = None) -> QueryBuilder:
        return self._add_join(target, on, "RIGHT")

    # ── Ordering, grouping, paging ───────────────────────────────────

    @staticmethod
    def _order_term(column: str, direction: str) -> Tuple[str, str]:
        parts = column.split()
        if len(parts) == 2:
            column, direction = parts
        elif len(parts) != 1:
            raise InvalidConditionError(column, "order expects 'column' or 'column DIRECTION'")
        direction = str(direction).upper()
        if direction not in _DIRECTIONS:
            raise InvalidConditionError(direction, "order direction must be ASC or DESC")
        return check_identifier(column), direction

    def order(self, column: Optional[str] = None, direction: str = "ASC", **columns: str) -> QueryBuilder:
        """
        Append ORDER BY terms.

            .order("name")                  # name ASC
            .order("created_at", "desc")    # created_at DESC
            .order(age="DESC", name="ASC")
        """
        if column is not None:
            self._order.append(self._order_term(column, direction))
        for name, dir_ in columns.items():
            self._order.append(self._order_term(name, dir_))
        return self

    def reorder(self, column: Optional[str] = None, direction: str = "ASC", **columns: str) -> QueryBuilder:
        self._order = []
        return self.order(column, direction, **columns)

    def group(self, *columns: str) -> QueryBuilder:
        self._group.extend(columns)
        return self

    def limit(self, n: Optional[int]) -> QueryBuilder:
        if n is not None and (not isinstance(n, int) or isinstance(n, bool) or n < 0):
            raise InvalidConditionError(n, "limit must be a non-negative integer")
        self._limit = n
        return self

    def offset(self, n: Optional[int]) -> QueryBuilder:
        if n is not None and (not isinstance(n, int) or isinstance(n, bool) or n < 0):
            raise InvalidConditionError(n, "offset must be a non-negative integer")
        self._offset = n
        return self

    def page(self, number: int, per_page: int = 20) -> QueryBuilder:
        """1-based page of ``per_page`` rows."""
        if number < 1 or per_page < 1:
            raise InvalidConditionError((number, per_page), "page and per_page start at 1")
        return self.limit(per_page).offset((number - 1) * per_page)

    # ── Selection and flags ──────────────────────────────────────────

    def select(self, *columns: str) -> QueryBuilder:
        self._select = (self._select or []) + list(columns)
        return self

    def distinct(self, value: bool = True) -> QueryBuilder:
        self._distinct = value
        return self

    def lock(self, clause: Union[str, bool] = "FOR UPDATE") -> QueryBuilder:
        """Append a row lock clause; backends without row locks omit it."""
        if clause is True:
            clause = "FOR UPDATE"
        self._lock = clause or None
        return self

    def none(self) -> QueryBuilder:
        """Match nothing; terminal methods return empty results without a query."""
        self._none = True
        return self

    def readonly(self, value: bool = True) -> QueryBuilder:
        self._readonly = value
        return self

    def strict_loading(self, value: bool = True) -> QueryBuilder:
        self._strict_loading = value
        return self

    def create_with(self, **defaults: Any) -> QueryBuilder:
        """Attributes used only when ``find_or_*_by`` has to build a record."""
        self._create_with.update(defaults)
        return self

    # ── Eager loading ────────────────────────────────────────────────

    def includes(self, *names: str) -> QueryBuilder:
        """
        Eager load associations in the same query (LEFT JOIN + demultiplex).

        Polymorphic associations cannot be joined and are preloaded instead.
        """
        for name in names:
            descriptor = self._registry.association(self._model, name)
            if descriptor.is_polymorphic:
                if name not in self._preloads:
                    self._preloads.append(name)
                continue
            if name not in self._includes:
                self._includes.append(name)
                for clause in self._registry.join_clauses(self._model, name, "LEFT"):
                    if not any(c.table == clause.table and c.on == clause.on for c in self._joins):
                        self._joins.append(clause)
                        self._eager_joins.append(clause)
        return self

    def preload(self, *names: str) -> QueryBuilder:
        """Eager load associations with one extra ``IN`` query each."""
        for name in names:
            self._registry.association(self._model, name)
            if name not in self._preloads:
                self._preloads.append(name)
        return self

    # ── Composition ──────────────────────────────────────────────────

    def merge(self, other: Any) -> QueryBuilder:
        """
        Merge another builder, or apply a Scope (anything with ``apply``).

        Predicates, joins, includes, ordering and grouping accumulate; the
        other builder's select, limit, offset and lock win when set.
        """
        if isinstance(other, QueryBuilder):
            for fragment in other._where.fragments:
                self._where.append(fragment)
            for fragment in other._having.fragments:
                self._having.append(fragment)
            for clause in other._joins:
                if clause in other._eager_joins:
                    continue
                self._add_join(clause.table, clause.on, clause.join_type)
            self.includes(*other._includes)
            for name in other._preloads:
                if name not in self._preloads:
                    self._preloads.append(name)
            self._order.extend(other._order)
            self._group.extend(c for c in other._group if c not in self._group)
            if other._select is not None:
                self._select = list(other._select)
            if other._limit is not None:
                self._limit = other._limit
            if other._offset is not None:
                self._offset = other._offset
            if other._lock is not None:
                self._lock = other._lock
            self._distinct = self._distinct or other._distinct
            self._none = self._none or other._none
            self._readonly = self._readonly or other._readonly
            self._strict_loading = self._strict_loading or other._strict_loading
            self._create_with.update(other._create_with)
            return self

        if hasattr(other, "apply"):
            result = other.apply(self)
            if isinstance(result, QueryBuilder) and result is not self:
                self.merge(result)
            return self

        raise InvalidConditionError(other, "merge expects a QueryBuilder or a Scope")

    def scoped(self, name: str, *args: Any, **kwargs: Any) -> QueryBuilder:
        """Apply the model's named scope ``name``."""
        named = self._model._scopes.get(name)
        if named is None:
            raise InvalidConditionError(name, f"no scope named '{name}' on {self._model.__name__}")
        result = named.apply(self, *args, **kwargs)
        if isinstance(result, QueryBuilder) and result is not self:
            self.merge(result)
        return self

    # ── SQL assembly (pure) ──────────────────────────────────────────

    def _qualified(self, column: str) -> str:
        if self._joins and "." not in column:
            return f"{self._table}.{column}"
        return column

    def _filtering_joins(self) -> List[JoinClause]:
        """
        Joins that shape the result set.

        Joins added by ``includes`` only carry eager-loaded columns; they are
        dropped unless a condition, ordering, grouping or selection names
        their table, or a kept join's ON clause depends on them.
        """
        if not self._eager_joins:
            return list(self._joins)
        text = " ".join([
            self._where.sql(),
            self._having.sql(),
            *self._group,
            *(column for column, _ in self._order),
            *(self._select or []),
        ])
        kept = [c for c in self._joins if c not in self._eager_joins or _mentions(text, c.table)]
        changed = True
        while changed:
            changed = False
            on_text = " ".join(c.on for c in kept)
            for clause in self._joins:
                if clause not in kept and _mentions(on_text, clause.table):
                    kept.append(clause)
                    changed = True
        return [c for c in self._joins if c in kept]

    def _without_eager_loading(self) -> QueryBuilder:
        query = self._clone()
        query._joins = self._filtering_joins()
        query._eager_joins = [c for c in self._eager_joins if c in query._joins]
        query._includes = []
        query._preloads = []
        return query

    def _owner_paged(self) -> QueryBuilder:
        """
        Move LIMIT / OFFSET onto owner rows when a collection is joined in.

        Joined collections repeat the owner once per child, so paging the
        joined rows would cut owners and their children short. Owner keys are
        paged in a subquery and the outer query loads every child row.
        """
        pk = f"{self._table}.{self._model._pk_name}"
        keys = self._without_eager_loading()
        keys._select = [pk]
        keys._distinct = bool(keys._joins)
        keys._lock = None
        sub_sql, sub_params = keys._assemble(with_lock=False)

        query = self._clone()
        query._limit = None
        query._offset = None
        where = self._where_list()
        query._where = PredicateList()
        if where:
            query._where.append(Fragment(where.sql(), tuple(where.params)))
        query._where.append(Fragment(f"{pk} IN ({sub_sql})", tuple(sub_params)))
        return query

    def _pages_joined_collection(self) -> bool:
        if self._limit is None and self._offset is None:
            return False
        if self._select is not None:
            return False
        return any(self._registry.association(self._model, name).is_collection for name in self._includes)

    def _where_list(self) -> PredicateList:
        predicates = self._where
        if self._none:
            predicates = predicates.copy()
            predicates.append(Fragment("1 = 0"))
        return predicates

    def _columns_sql(self, alias_map: Dict[str, Tuple[Optional[str], str]]) -> str:
        if self._select is not None:
            return ", ".join(self._select)
        if not self._joins:
            return "*"

        sources: List[Tuple[Optional[str], Type[Model]]] = [(None, self._model)]
        for name in self._includes:
            sources.append((name, self._registry.target_model(self._model, name)))

        columns: List[str] = []
        for name, model in sources:
            table = model._table_name
            for column in model._column_names:
                alias = f"{table}_{column}"
                if alias in alias_map:
                    alias = f"{table}__{column}"
                alias_map[alias] = (name, column)
                columns.append(f"{table}.{column} AS {alias}")
        return ", ".join(columns)

    def _assemble(self, *, with_lock: bool = True) -> Tuple[str, List[Any]]:
        alias_map: Dict[str, Tuple[Optional[str], str]] = {}
        params: List[Any] = []

        sql = "SELECT "
        if self._distinct:
            sql += "DISTINCT "
        sql += f"{self._columns_sql(alias_map)} FROM {self._table}"

        for clause in self._joins:
            sql += f" {clause.sql()}"

        where = self._where_list()
        if where:
            sql += f" WHERE {where.sql()}"
            params.extend(where.params)

        if self._group:
            sql += f" GROUP BY {', '.join(self._group)}"

        if self._having:
            sql += f" HAVING {self._having.sql()}"
            params.extend(self._having.params)

        if self._order:
            sql += " ORDER BY " + ", ".join(f"{column} {direction}" for column, direction in self._order)

        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        if self._offset is not None:
            if self._limit is None:
                # SQLite needs LIMIT before OFFSET
                sql += " LIMIT -1"
            sql += f" OFFSET {self._offset}"

        if self._lock and with_lock:
            sql += f" {self._lock}"

        self._alias_map = alias_map
        return sql, params

    def build(self) -> Tuple[str, List[Any]]:
        """Return ``(sql, params)``; params follow placeholder order."""
        return self._assemble()

    def to_sql(self) -> str:
        return self._assemble()[0]

    def _executable(self) -> Tuple[str, List[Any]]:
        return self._assemble(with_lock=self.db.capabilities.supports_row_locks)

    # ── Materialization ──────────────────────────────────────────────

    async def all(self) -> List[Model]:
        """Execute and load records, eager loading included associations."""
        if self._none:
            return []

        query = self._owner_paged() if self._pages_joined_collection() else self
        sql, params = query._executable()
        rows = await self.db.query(sql, params)

        if query._alias_map:
            records = query._demultiplex(rows)
        else:
            records = [self._model._from_row(row) for row in rows]

        for record in records:
            if self._readonly:
                record._readonly = True
            if self._strict_loading:
                record._strict_loading = True

        for name in self._preloads:
            await self._preload(records, name)

        return records

    def __aiter__(self) -> AsyncIterator[Model]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Model]:
        for record in await self.all():
            yield record

    def _demultiplex(self, rows: Sequence[Any]) -> List[Model]:
        model = self._model
        descriptors = {name: self._registry.association(model, name) for name in self._includes}
        targets = {name: self._registry.target_model(model, name) for name in self._includes}
        group_rows = any(d.is_collection for d in descriptors.values())

        records: List[Model] = []
        by_pk: Dict[Any, Model] = {}

        for row in rows:
            parts: Dict[Optional[str], Dict[str, Any]] = {}
            for alias, (source, column) in self._alias_map.items():
                parts.setdefault(source, {})[column] = row[alias]

            primary = parts.get(None, {})
            pk = primary.get(model._pk_name)
            record = by_pk.get(pk) if group_rows else None
            if record is None:
                record = model._from_row(primary)
                records.append(record)
                if group_rows:
                    by_pk[pk] = record
                for name, descriptor in descriptors.items():
                    record._association_cache[name] = [] if descriptor.is_collection else None

            for name, descriptor in descriptors.items():
                target_model = targets[name]
                attrs = parts.get(name, {})
                if attrs.get(target_model._pk_name) is None:
                    continue
                target = target_model._from_row(attrs)
                if descriptor.is_collection:
                    loaded = record._association_cache[name]
                    if target not in loaded:
                        loaded.append(target)
                else:
                    record._association_cache[name] = target

        return records

    async def _preload(self, records: List[Model], name: str) -> None:
        if not records:
            return
        model = self._model
        descriptor = self._registry.association(model, name)
        await _preload_association(self._registry, model, records, descriptor)

    # ── Finders ──────────────────────────────────────────────────────

    async def first(self, limit: Optional[int] = None) -> Union[Model, None, List[Model]]:
        """First record by the current order, or by primary key ascending."""
        query = self._clone()
        if not query._order:
            query._order = [(query._qualified(self._model._pk_name), "ASC")]
        query._limit = limit if limit is not None else 1
        records = await query.all()
        if limit is not None:
            return records
        return records[0] if records else None

    async def last(self, limit: Optional[int] = None) -> Union[Model, None, List[Model]]:
        """Last record: every order term reversed, or primary key descending."""
        query = self._clone()
        if query._order:
            query._order = [
                (column, "DESC" if direction == "ASC" else "ASC")
                for column, direction in query._order
            ]
        else:
            query._order = [(query._qualified(self._model._pk_name), "DESC")]
        query._limit = limit if limit is not None else 1
        records = await query.all()
        if limit is not None:
            return list(reversed(records))
        return records[0] if records else None

    async def take(self, limit: Optional[int] = None) -> Union[Model, None, List[Model]]:
        """Any record(s), no implied order."""
        query = self._clone()
        query._limit = limit if limit is not None else 1
        records = await query.all()
        if limit is not None:
            return records
        return records[0] if records else None

    async def first_or_raise(self) -> Model:
        record = await self.first()
        if record is None:
            raise RecordNotFoundError(self._model.__name__, self._where.sql() or None)
        return record

    async def last_or_raise(self) -> Model:
        record = await self.last()
        if record is None:
            raise RecordNotFoundError(self._model.__name__, self._where.sql() or None)
        return record

    async def take_or_raise(self) -> Model:
        record = await self.take()
        if record is None:
            raise RecordNotFoundError(self._model.__name__, self._where.sql() or None)
        return record

    async def find(self, pk: Any) -> Union[Model, List[Model]]:
        """
        Find by primary key; a list of keys returns a list.

        Raises:
            RecordNotFoundError: When any key has no row
        """
        column = self._qualified(self._model._pk_name)
        if isinstance(pk, (list, tuple, set)):
            keys = list(dict.fromkeys(pk))
            records = await self._clone().where({column: keys}).all()
            if len(records) != len(keys):
                raise RecordNotFoundError(self._model.__name__, {self._model._pk_name: keys})
            return records

        record = await self._clone().where({column: pk}).take()
        if record is None:
            raise RecordNotFoundError(self._model.__name__, {self._model._pk_name: pk})
        return record

    async def find_by(self, condition: Any = None, *params: Any, **conditions: Any) -> Optional[Model]:
        return await self._clone().where(condition, *params, **conditions).take()

    async def find_by_or_raise(self, condition: Any = None, *params: Any, **conditions: Any) -> Model:
        record = await self.find_by(condition, *params, **conditions)
        if record is None:
            raise RecordNotFoundError(self._model.__name__, conditions or condition)
        return record

    async def find_or_initialize_by(self, **conditions: Any) -> Model:
        record = await self.find_by(**conditions)
        if record is None:
            record = self._model(**{**self._create_with, **conditions})
        return record

    async def find_or_create_by(self, **conditions: Any) -> Model:
        """Find a match or create one; the new record may be invalid and unsaved."""
        record = await self.find_by(**conditions)
        if record is None:
            record = await self._model.create(**{**self._create_with, **conditions})
        return record

    async def find_or_create_by_or_raise(self, **conditions: Any) -> Model:
        record = await self.find_by(**conditions)
        if record is None:
            record = await self._model.create_or_raise(**{**self._create_with, **conditions})
        return record

    # ── Batches ──────────────────────────────────────────────────────

    async def find_in_batches(
        self,
        batch_size: int = 1000,
        *,
        start: Any = None,
        finish: Any = None,
        cursor: Optional[str] = None,
        order: str = "ASC",
    ) -> AsyncIterator[List[Model]]:
        """
        Yield lists of at most ``batch_size`` records ordered by ``cursor``.

        ``start`` / ``finish`` bound the cursor column (inclusive). The
        builder's own limit caps the total and its offset is where the first
        batch starts.
        """
        if not isinstance(batch_size, int) or batch_size < 1:
            raise InvalidConditionError(batch_size, "batch_size must be a positive integer")
        direction = str(order).upper()
        if direction not in _DIRECTIONS:
            raise InvalidConditionError(order, "order direction must be ASC or DESC")

        column = self._qualified(check_identifier(cursor or self._model._pk_name))
        query = self._clone()
        query._order = [(column, direction)]
        low, high = (">=", "<=") if direction == "ASC" else ("<=", ">=")
        if start is not None:
            query.where(f"{column} {low} ?", start)
        if finish is not None:
            query.where(f"{column} {high} ?", finish)

        # Batches run on a clone, so this builder keeps its own limit and offset
        cap = self._limit
        offset = self._offset or 0
        loaded = 0
        while True:
            size = batch_size if cap is None else min(batch_size, cap - loaded)
            if size <= 0:
                break
            query._limit = size
            query._offset = offset
            batch = await query.all()
            if not batch:
                break
            loaded += len(batch)
            yield batch
            if len(batch) < size:
                break
            offset += size

    async def find_each(
        self,
        batch_size: int = 1000,
        *,
        start: Any = None,
        finish: Any = None,
        cursor: Optional[str] = None,
        order: str = "ASC",
    ) -> AsyncIterator[Model]:
        """Yield records one at a time, loading ``batch_size`` per query."""
        async for batch in self.find_in_batches(
            batch_size, start=start, finish=finish, cursor=cursor, order=order
        ):
            for record in batch:
                yield record

    # ── Calculations ─────────────────────────────────────────────────

    async def _calculate(self, function: str, column: str) -> Any:
        if column != "*":
            check_identifier(column)
        query = self._without_eager_loading()
        if function == "COUNT" and column == "*" and query._eager_joins:
            # Joined collections repeat owner rows
            column = f"{self._table}.{self._model._pk_name}"
            expression = f"COUNT(DISTINCT {column})"
        else:
            expression = f"{function}({'DISTINCT ' if self._distinct and column != '*' else ''}{column})"
        query._distinct = False

        if query._group:
            query._select = [*query._group, expression]
            sql, params = query._executable()
            rows = await self.db.query(sql, params)
            width = len(query._group)
            result: Dict[Any, Any] = {}
            for row in rows:
                key = row[0] if width == 1 else tuple(row[i] for i in range(width))
                result[key] = row[width]
            return result

        query._select = [expression]
        query._order = []
        sql, params = query._executable()
        return await self.db.scalar(sql, params)

    async def count(self, column: str = "*") -> Union[int, Dict[Any, int]]:
        """Row count; with ``group()`` a dict of group value -> count."""
        if self._none:
            return {} if self._group else 0
        value = await self._calculate("COUNT", column)
        if isinstance(value, dict):
            return {key: int(n) for key, n in value.items()}
        return int(value or 0)

    async def sum(self, column: str) -> Any:
        if self._none:
            return {} if self._group else 0
        value = await self._calculate("SUM", column)
        return value if value is not None else 0

    async def average(self, column: str) -> Any:
        if self._none:
            return {} if self._group else None
        return await self._calculate("AVG", column)

    async def minimum(self, column: str) -> Any:
        if self._none:
            return {} if self._group else None
        return await self._calculate("MIN", column)

    async def maximum(self, column: str) -> Any:
        if self._none:
            return {} if self._group else None
        return await self._calculate("MAX", column)

    # ── Values ───────────────────────────────────────────────────────

    def _caster(self, column: str) -> Callable[[Any], Any]:
        name = column
        if "." in column:
            table, name = column.split(".", 1)
            if table != self._table:
                return lambda value: value
        field = self._model._fields_by_column.get(name)
        return field.to_python if field is not None else (lambda value: value)

    async def pluck(self, *columns: str) -> List[Any]:
        """Column values without building records; several columns give tuples."""
        if not columns:
            raise InvalidConditionError(columns, "pluck needs at least one column")
        if self._none:
            return []
        query = self._without_eager_loading()
        query._select = list(columns)
        sql, params = query._executable()
        rows = await self.db.query(sql, params)
        casters = [self._caster(c) for c in columns]
        if len(columns) == 1:
            return [casters[0](row[0]) for row in rows]
        return [tuple(cast(row[i]) for i, cast in enumerate(casters)) for row in rows]

    async def pick(self, *columns: str) -> Any:
        values = await self._clone().limit(1).pluck(*columns)
        return values[0] if values else None

    async def ids(self) -> List[Any]:
        return await self.pluck(self._qualified(self._model._pk_name))

    async def exists(self, condition: Any = None, *params: Any, **conditions: Any) -> bool:
        if self._none:
            return False
        query = self._clone()
        if condition is not None or conditions:
            query.where(condition, *params, **conditions)
        query = query._without_eager_loading()
        query._select = ["1"]
        query._order = []
        query._limit = 1
        sql, params_ = query._executable()
        return bool(await self.db.query(sql, params_))

    async def is_empty(self) -> bool:
        return not await self.exists()

    async def many(self) -> bool:
        """More than one matching row."""
        if self._none:
            return False
        query = self._without_eager_loading()
        query._select = ["1"]
        query._order = []
        query._limit = 2
        sql, params = query._executable()
        return len(await self.db.query(sql, params)) > 1

    async def explain(self) -> str:
        sql, params = self._executable()
        rows = await self.db.query(f"EXPLAIN QUERY PLAN {sql}", params)
        return "\n".join(" | ".join(str(v) for v in row.values()) for row in rows)

    # ── Bulk operations ──────────────────────────────────────────────

    def _scope_sql(self) -> Tuple[str, List[Any]]:
        """WHERE clause for bulk UPDATE / DELETE on the primary table."""
        where = self._where_list()
        if not (self._filtering_joins() or self._limit is not None or self._offset is not None):
            if not where:
                return "", []
            return f" WHERE {where.sql()}", where.params

        pk = f"{self._table}.{self._model._pk_name}"
        subquery = self._without_eager_loading()
        subquery._select = [pk]
        subquery._lock = None
        sql, params = subquery._assemble(with_lock=False)
        return f" WHERE {self._model._pk_name} IN ({sql})", params

    async def update_all(self, values: Union[Dict[str, Any], str, None] = None, **kwargs: Any) -> int:
        """
        Bulk UPDATE with the accumulated predicate; no callbacks, no validation.

        Returns:
            Number of affected rows
        """
        if self._none:
            return 0
        params: List[Any] = []
        if isinstance(values, str):
            if kwargs:
                raise InvalidConditionError(values, "raw SET fragment takes no keyword values")
            assignments = values
        else:
            values = {**(values or {}), **kwargs}
            if not values:
                raise InvalidConditionError(values, "update_all needs at least one value")
            parts = []
            for column, value in values.items():
                parts.append(f"{check_identifier(column)} = ?")
                field = self._model._fields_by_column.get(column)
                params.append(field.to_db(value) if field is not None else bind_value(value))
            assignments = ", ".join(parts)

        where_sql, where_params = self._scope_sql()
        sql = f"UPDATE {self._table} SET {assignments}{where_sql}"
        result = await self.db.execute(sql, params + where_params)
        logger.debug(f"update_all on {self._table}: {result.affected_rows} row(s)")
        return result.affected_rows

    async def delete_all(self) -> int:
        """Bulk DELETE with the accumulated predicate; no callbacks."""
        if self._none:
            return 0
        where_sql, params = self._scope_sql()
        result = await self.db.execute(f"DELETE FROM {self._table}{where_sql}", params)
        logger.debug(f"delete_all on {self._table}: {result.affected_rows} row(s)")
        return result.affected_rows

    async def destroy_all(self) -> int:
        """Load every match and destroy it through the record lifecycle."""
        destroyed = 0
        for record in await self.all():
            if await record.destroy():
                destroyed += 1
        return destroyed


# ── Preloading ───────────────────────────────────────────────────────────────


def _unique(values: Sequence[Any]) -> List[Any]:
    return [v for v in dict.fromkeys(values) if v is not None]


async def _preload_association(
    registry: SchemaRegistry,
    model: Type[Model],
    records: List[Model],
    descriptor: AssociationDescriptor,
) -> None:
    """Load ``descriptor`` for every record with one query per target class."""
    name = descriptor.name
    kind = descriptor.kind

    if kind is AssociationKind.BELONGS_TO:
        target = registry.target_model(model, name)
        keys = _unique(r.get_attribute(descriptor.foreign_key) for r in records)
        found = await target.query().where({descriptor.primary_key: keys}).all() if keys else []
        by_key = {t.get_attribute(descriptor.primary_key): t for t in found}
        for record in records:
            record._association_cache[name] = by_key.get(record.get_attribute(descriptor.foreign_key))
        return

    if kind is AssociationKind.BELONGS_TO_POLYMORPHIC:
        type_column = descriptor.polymorphic_type_column
        by_type: Dict[str, List[Any]] = {}
        for record in records:
            discriminator = record.get_attribute(type_column)
            if discriminator is not None:
                by_type.setdefault(discriminator, []).append(record.get_attribute(descriptor.foreign_key))
        loaded: Dict[Tuple[str, Any], Model] = {}
        for discriminator, keys in by_type.items():
            target = registry.polymorphic_class(discriminator)
            for t in await target.query().where({descriptor.primary_key: _unique(keys)}).all():
                loaded[(discriminator, t.get_attribute(descriptor.primary_key))] = t
        for record in records:
            key = (record.get_attribute(type_column), record.get_attribute(descriptor.foreign_key))
            record._association_cache[name] = loaded.get(key)
        return

    if kind in (AssociationKind.HAS_MANY, AssociationKind.HAS_ONE, AssociationKind.HAS_MANY_POLYMORPHIC):
        target = registry.target_model(model, name)
        keys = _unique(r.get_attribute(descriptor.primary_key) for r in records)
        query = target.query().where({descriptor.foreign_key: keys})
        if kind is AssociationKind.HAS_MANY_POLYMORPHIC:
            query.where({descriptor.polymorphic_type_column: model._meta.polymorphic_name})
        grouped: Dict[Any, List[Model]] = {}
        for t in (await query.all() if keys else []):
            grouped.setdefault(t.get_attribute(descriptor.foreign_key), []).append(t)
        for record in records:
            found = grouped.get(record.get_attribute(descriptor.primary_key), [])
            if kind is AssociationKind.HAS_ONE:
                record._association_cache[name] = found[0] if found else None
            else:
                record._association_cache[name] = found
        return

    if kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
        target = registry.target_model(model, name)
        keys = _unique(r.get_attribute(descriptor.primary_key) for r in records)
        links: Dict[Any, List[Any]] = {}
        if keys:
            placeholders = ", ".join("?" for _ in keys)
            rows = await registry.database.query(
                f"SELECT {descriptor.foreign_key}, {descriptor.association_foreign_key} "
                f"FROM {descriptor.join_table} WHERE {descriptor.foreign_key} IN ({placeholders})",
                keys,
            )
            for row in rows:
                links.setdefault(row[0], []).append(row[1])
        target_keys = _unique(k for ks in links.values() for k in ks)
        found = await target.query().where({target._pk_name: target_keys}).all() if target_keys else []
        by_key = {t.pk: t for t in found}
        for record in records:
            linked = links.get(record.get_attribute(descriptor.primary_key), [])
            record._association_cache[name] = [by_key[k] for k in linked if k in by_key]
        return

    if kind is AssociationKind.HAS_MANY_THROUGH:
        through = registry.association(model, descriptor.through)
        through_model = registry.target_model(model, through.name)
        source = registry._source_association(through_model, descriptor)
        await _preload_association(registry, model, records, through)

        intermediates: List[Model] = []
        for record in records:
            cached = record._association_cache.get(through.name)
            if isinstance(cached, list):
                intermediates.extend(cached)
            elif cached is not None:
                intermediates.append(cached)
        await _preload_association(registry, through_model, intermediates, source)

        for record in records:
            cached = record._association_cache.get(through.name)
            middle = cached if isinstance(cached, list) else ([cached] if cached is not None else [])
            result: List[Model] = []
            for item in middle:
                value = item._association_cache.get(source.name)
                for t in (value if isinstance(value, list) else [value]):
                    if t is not None and t not in result:
                        result.append(t)
            record._association_cache[name] = result
        return
