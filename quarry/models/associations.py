"""
Quarry Associations: relationship declarations and join resolution.

Declarations are plain class attributes collected by the model metaclass:

    class Post(Model):
        table = "posts"

        author = BelongsTo("User")
        comments = HasMany("Comment", dependent=Dependent.DESTROY)
        tags = HasAndBelongsToMany("Tag")
        pictures = HasMany("Picture", as_="imageable")

Each declaration becomes an immutable ``AssociationDescriptor`` stored in the
``SchemaRegistry``. Resolving a descriptor to JOIN clauses is pure string
work over the registered tables; nothing here touches the database.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Type, Union, TYPE_CHECKING

import inflection

from ..faults.domains import ModelRegistrationFault

if TYPE_CHECKING:
    from .base import Model

__all__ = [
    "AssociationKind",
    "Dependent",
    "JoinType",
    "AssociationDescriptor",
    "JoinClause",
    "Association",
    "BelongsTo",
    "HasMany",
    "HasOne",
    "HasAndBelongsToMany",
    "join_table_name",
    "smart_join_type",
    "join_condition",
    "normalize_join_type",
]


class AssociationKind(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_MANY = "has_many"
    HAS_ONE = "has_one"
    HAS_MANY_THROUGH = "has_many_through"
    HAS_AND_BELONGS_TO_MANY = "has_and_belongs_to_many"
    BELONGS_TO_POLYMORPHIC = "belongs_to_polymorphic"
    HAS_MANY_POLYMORPHIC = "has_many_polymorphic"


class Dependent(str, Enum):
    """What happens to associated rows when the owner is destroyed."""

    DESTROY = "destroy"
    DELETE_ALL = "delete_all"
    NULLIFY = "nullify"


class JoinType(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"


@dataclass(frozen=True)
class AssociationDescriptor:
    """Static metadata for one relationship, read-only once registered."""

    name: str
    kind: AssociationKind
    owner: str
    target_type: Optional[str]
    foreign_key: str
    primary_key: str = "id"
    dependent: Optional[Dependent] = None
    optional: bool = False
    through: Optional[str] = None
    join_table: Optional[str] = None
    association_foreign_key: Optional[str] = None
    polymorphic_type_column: Optional[str] = None

    @property
    def is_polymorphic(self) -> bool:
        return self.kind in (
            AssociationKind.BELONGS_TO_POLYMORPHIC,
            AssociationKind.HAS_MANY_POLYMORPHIC,
        )

    @property
    def is_collection(self) -> bool:
        return self.kind in (
            AssociationKind.HAS_MANY,
            AssociationKind.HAS_MANY_THROUGH,
            AssociationKind.HAS_AND_BELONGS_TO_MANY,
            AssociationKind.HAS_MANY_POLYMORPHIC,
        )

    @property
    def is_singular(self) -> bool:
        return not self.is_collection


@dataclass(frozen=True)
class JoinClause:
    join_type: str
    table: str
    on: str

    def sql(self) -> str:
        return f"{self.join_type} JOIN {self.table} ON {self.on}"


# ── Naming helpers ───────────────────────────────────────────────────────────


def _type_name(target: Union[str, Type[Model], None]) -> Optional[str]:
    if target is None or isinstance(target, str):
        return target
    return target.__name__


def join_table_name(owner: str, target: str) -> str:
    """``Course`` + ``Student`` -> ``courses_students``."""
    names = sorted(inflection.pluralize(inflection.underscore(n)) for n in (owner, target))
    return "_".join(names)


def _owner_key(owner: str) -> str:
    return f"{inflection.underscore(owner)}_id"


# ── Declarations ─────────────────────────────────────────────────────────────


class Association:
    """Base declaration; ``describe`` produces the registered descriptor."""

    kind: AssociationKind

    def __init__(self, target: Union[str, Type[Model], None] = None):
        self.target = _type_name(target)
        self.name: str = ""

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def describe(self, name: str, owner: str, owner_pk: str) -> AssociationDescriptor:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.name} -> {self.target}>"


class BelongsTo(Association):
    """
    The owner holds the foreign key.

    Non-optional belongs-to adds a presence check on the foreign key.
    ``polymorphic=True`` adds a ``{name}_type`` discriminator column and
    resolves the target per row through the polymorphic class registry.
    """

    def __init__(
        self,
        target: Union[str, Type[Model], None] = None,
        *,
        foreign_key: Optional[str] = None,
        primary_key: str = "id",
        optional: bool = False,
        polymorphic: bool = False,
    ):
        super().__init__(target)
        self.foreign_key = foreign_key
        self.primary_key = primary_key
        self.optional = optional
        self.polymorphic = polymorphic

    def describe(self, name: str, owner: str, owner_pk: str) -> AssociationDescriptor:
        if self.polymorphic:
            return AssociationDescriptor(
                name=name,
                kind=AssociationKind.BELONGS_TO_POLYMORPHIC,
                owner=owner,
                target_type=None,
                foreign_key=self.foreign_key or f"{name}_id",
                primary_key=self.primary_key,
                optional=self.optional,
                polymorphic_type_column=f"{name}_type",
            )
        return AssociationDescriptor(
            name=name,
            kind=AssociationKind.BELONGS_TO,
            owner=owner,
            target_type=self.target or inflection.camelize(name),
            foreign_key=self.foreign_key or f"{name}_id",
            primary_key=self.primary_key,
            optional=self.optional,
        )


class HasMany(Association):
    """
    The target holds the foreign key back to the owner.

    ``through="other_association"`` resolves via an intermediate model;
    ``as_="imageable"`` targets a polymorphic belongs-to on the other side.
    """

    kind = AssociationKind.HAS_MANY

    def __init__(
        self,
        target: Union[str, Type[Model], None] = None,
        *,
        foreign_key: Optional[str] = None,
        primary_key: Optional[str] = None,
        dependent: Optional[Union[Dependent, str]] = None,
        through: Optional[str] = None,
        as_: Optional[str] = None,
    ):
        super().__init__(target)
        self.foreign_key = foreign_key
        self.primary_key = primary_key
        self.dependent = Dependent(dependent) if dependent is not None else None
        self.through = through
        self.as_ = as_

    def _default_target(self, name: str) -> str:
        if self.kind is AssociationKind.HAS_ONE:
            return inflection.camelize(name)
        return inflection.camelize(inflection.singularize(name))

    def describe(self, name: str, owner: str, owner_pk: str) -> AssociationDescriptor:
        target = self.target or self._default_target(name)
        kind = self.kind
        foreign_key = self.foreign_key or _owner_key(owner)
        type_column = None

        if kind is AssociationKind.HAS_ONE and (self.through or self.as_):
            raise ModelRegistrationFault(owner, f"has-one '{name}' cannot use through= or as_=")
        if self.through:
            kind = AssociationKind.HAS_MANY_THROUGH
        elif self.as_:
            kind = AssociationKind.HAS_MANY_POLYMORPHIC
            foreign_key = self.foreign_key or f"{self.as_}_id"
            type_column = f"{self.as_}_type"

        return AssociationDescriptor(
            name=name,
            kind=kind,
            owner=owner,
            target_type=target,
            foreign_key=foreign_key,
            primary_key=self.primary_key or owner_pk,
            dependent=self.dependent,
            optional=True,
            through=self.through,
            polymorphic_type_column=type_column,
        )


class HasOne(HasMany):
    """Like ``HasMany`` but materializes a single record."""

    kind = AssociationKind.HAS_ONE


class HasAndBelongsToMany(Association):
    """Many-to-many through a bare join table with two foreign keys."""

    def __init__(
        self,
        target: Union[str, Type[Model], None] = None,
        *,
        join_table: Optional[str] = None,
        foreign_key: Optional[str] = None,
        association_foreign_key: Optional[str] = None,
    ):
        super().__init__(target)
        self.join_table = join_table
        self.foreign_key = foreign_key
        self.association_foreign_key = association_foreign_key

    def describe(self, name: str, owner: str, owner_pk: str) -> AssociationDescriptor:
        target = self.target or inflection.camelize(inflection.singularize(name))
        return AssociationDescriptor(
            name=name,
            kind=AssociationKind.HAS_AND_BELONGS_TO_MANY,
            owner=owner,
            target_type=target,
            foreign_key=self.foreign_key or _owner_key(owner),
            primary_key=owner_pk,
            optional=True,
            join_table=self.join_table or join_table_name(owner, target),
            association_foreign_key=self.association_foreign_key or _owner_key(target),
        )


# ── Join resolution (pure) ───────────────────────────────────────────────────


def smart_join_type(descriptor: AssociationDescriptor) -> str:
    """belongs-to is INNER unless optional; everything else may have no match."""
    if descriptor.kind is AssociationKind.BELONGS_TO and not descriptor.optional:
        return JoinType.INNER.value
    return JoinType.LEFT.value


def join_condition(descriptor: AssociationDescriptor, owner_table: str, target_table: str) -> str:
    """ON condition for a direct (single hop) association."""
    if descriptor.kind is AssociationKind.BELONGS_TO:
        return f"{owner_table}.{descriptor.foreign_key} = {target_table}.{descriptor.primary_key}"
    return f"{owner_table}.{descriptor.primary_key} = {target_table}.{descriptor.foreign_key}"


def normalize_join_type(join_type: Any) -> str:
    value = getattr(join_type, "value", join_type)
    value = str(value).upper()
    if value not in {t.value for t in JoinType}:
        raise ValueError(f"Unknown join type {join_type!r}")
    return value
