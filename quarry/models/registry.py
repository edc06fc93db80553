"""
Quarry Schema Registry: the one place model and association metadata live.

A ``SchemaRegistry`` is created once (``default_registry`` unless a model's
``Meta.registry`` names another one) and filled by the model metaclass at
class-definition time. It holds:

- the model table (class name -> model class)
- the association table (model -> association name -> descriptor)
- the association target registry ((model, association) -> target type name)
- the polymorphic class registry (discriminator -> model class)
- the bound ``Database``

Query builders and the lifecycle engine receive the registry by reference.
Registration writes are serialized by a single lock; reads take no lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple, Type, TYPE_CHECKING

import inflection

from ..faults.domains import (
    AssociationNotFoundError,
    DatabaseConnectionFault,
    ModelRegistrationFault,
    UnsupportedJoinError,
)
from .associations import (
    AssociationDescriptor,
    AssociationKind,
    JoinClause,
    join_condition,
    normalize_join_type,
    smart_join_type,
)

if TYPE_CHECKING:
    from ..db.engine import Database
    from .base import Model
    from .lifecycle import Lifecycle

logger = logging.getLogger("quarry.models.registry")

__all__ = ["SchemaRegistry", "default_registry"]


class SchemaRegistry:
    """Explicit registry of models, associations and polymorphic names."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._models: Dict[str, Type[Model]] = {}
        self._associations: Dict[str, Dict[str, AssociationDescriptor]] = {}
        self._targets: Dict[Tuple[str, str], str] = {}
        self._polymorphic: Dict[str, Type[Model]] = {}
        self._write_lock = threading.Lock()
        self._db: Optional[Database] = None
        self._lifecycle: Optional[Lifecycle] = None

    def __repr__(self) -> str:
        return f"<SchemaRegistry {self.name!r} models={len(self._models)}>"

    # ── Registration ─────────────────────────────────────────────────

    def register(
        self,
        model_cls: Type[Model],
        associations: Iterable[AssociationDescriptor] = (),
    ) -> None:
        """Register a model class and its association descriptors."""
        name = model_cls.__name__
        discriminator = model_cls._meta.polymorphic_name
        descriptors = list(associations)

        with self._write_lock:
            if name in self._models:
                raise ModelRegistrationFault(name, f"already registered in {self.name!r}")
            if discriminator in self._polymorphic:
                raise ModelRegistrationFault(
                    name, f"polymorphic name {discriminator!r} already taken"
                )

            table: Dict[str, AssociationDescriptor] = {}
            for descriptor in descriptors:
                if descriptor.name in table:
                    raise ModelRegistrationFault(
                        name, f"association {descriptor.name!r} declared twice"
                    )
                table[descriptor.name] = descriptor

            self._models[name] = model_cls
            self._associations[name] = table
            for descriptor in descriptors:
                if descriptor.target_type is not None:
                    self._targets[(name, descriptor.name)] = descriptor.target_type
            self._polymorphic[discriminator] = model_cls

        logger.debug(f"Registered model {name} ({len(descriptors)} associations)")

    # ── Lookups ──────────────────────────────────────────────────────

    def get(self, name: str) -> Optional[Type[Model]]:
        """Get model class by name."""
        return self._models.get(name)

    def model(self, name: str) -> Type[Model]:
        """Get model class by name, failing loudly."""
        model_cls = self._models.get(name)
        if model_cls is None:
            raise ModelRegistrationFault(name, f"not registered in {self.name!r}")
        return model_cls

    def all_models(self) -> Dict[str, Type[Model]]:
        return dict(self._models)

    def associations(self, model_cls: Type[Model]) -> Dict[str, AssociationDescriptor]:
        return dict(self._associations.get(model_cls.__name__, {}))

    def association(self, model_cls: Type[Model], name: str) -> AssociationDescriptor:
        descriptor = self._associations.get(model_cls.__name__, {}).get(name)
        if descriptor is None:
            raise AssociationNotFoundError(model_cls.__name__, name)
        return descriptor

    def has_association(self, model_cls: Type[Model], name: str) -> bool:
        return name in self._associations.get(model_cls.__name__, {})

    def target_model(self, model_cls: Type[Model], name: str) -> Type[Model]:
        """Resolve the target class of a non-polymorphic association."""
        self.association(model_cls, name)
        target = self._targets.get((model_cls.__name__, name))
        if target is None:
            raise UnsupportedJoinError(
                model_cls.__name__, name,
                "polymorphic target is resolved per record",
            )
        return self.model(target)

    def polymorphic_class(self, discriminator: str) -> Type[Model]:
        model_cls = self._polymorphic.get(discriminator)
        if model_cls is None:
            raise ModelRegistrationFault(discriminator, "unknown polymorphic type")
        return model_cls

    # ── Join resolution ──────────────────────────────────────────────

    def join_clauses(
        self,
        model_cls: Type[Model],
        name: str,
        join_type: Optional[str] = None,
    ) -> List[JoinClause]:
        """
        Resolve an association name into JOIN clauses.

        Direct associations give one clause, through and many-to-many
        associations give two. ``join_type`` overrides the smart choice.
        """
        descriptor = self.association(model_cls, name)
        forced = normalize_join_type(join_type) if join_type else None
        owner_table = model_cls._table_name

        if descriptor.is_polymorphic:
            raise UnsupportedJoinError(
                model_cls.__name__, name,
                "polymorphic associations need a two-step lookup",
            )

        if descriptor.kind is AssociationKind.HAS_MANY_THROUGH:
            through = self.association(model_cls, descriptor.through)
            through_model = self.target_model(model_cls, through.name)
            source = self._source_association(through_model, descriptor)
            return (
                self.join_clauses(model_cls, through.name, forced or "LEFT")
                + self.join_clauses(through_model, source.name, forced or "LEFT")
            )

        target_model = self.target_model(model_cls, name)
        target_table = target_model._table_name
        kind = forced or smart_join_type(descriptor)

        if descriptor.kind is AssociationKind.HAS_AND_BELONGS_TO_MANY:
            join_table = descriptor.join_table
            return [
                JoinClause(
                    kind, join_table,
                    f"{owner_table}.{descriptor.primary_key} = {join_table}.{descriptor.foreign_key}",
                ),
                JoinClause(
                    kind, target_table,
                    f"{join_table}.{descriptor.association_foreign_key} = "
                    f"{target_table}.{target_model._pk_name}",
                ),
            ]

        return [JoinClause(kind, target_table, join_condition(descriptor, owner_table, target_table))]

    def _source_association(
        self, through_model: Type[Model], descriptor: AssociationDescriptor
    ) -> AssociationDescriptor:
        for candidate in (inflection.singularize(descriptor.name), descriptor.name):
            if self.has_association(through_model, candidate):
                return self.association(through_model, candidate)
        raise AssociationNotFoundError(
            through_model.__name__, inflection.singularize(descriptor.name),
            metadata={"through": descriptor.through, "owner": descriptor.owner},
        )

    # ── Database binding ─────────────────────────────────────────────

    def bind(self, db: Database) -> None:
        """Set the database used by every model in this registry."""
        self._db = db

    @property
    def database(self) -> Database:
        if self._db is None:
            raise DatabaseConnectionFault(
                url="<not configured>",
                reason=f"No database bound to registry {self.name!r}. Call registry.bind(db) first.",
            )
        return self._db

    @property
    def lifecycle(self) -> Lifecycle:
        if self._lifecycle is None:
            from .lifecycle import Lifecycle
            self._lifecycle = Lifecycle(self)
        return self._lifecycle

    # ── Diagnostics ──────────────────────────────────────────────────

    def check_constraints(self) -> List[str]:
        """
        Validate registered metadata and return a list of issues.

        Checks:
        - association targets exist
        - through associations point at a declared association
        - no duplicate table names
        """
        issues: List[str] = []
        table_names: Dict[str, str] = {}

        for name, model_cls in self._models.items():
            table = model_cls._table_name
            if table in table_names:
                issues.append(f"Duplicate table '{table}': {name} and {table_names[table]}")
            table_names[table] = name

            for assoc_name, descriptor in self._associations[name].items():
                if descriptor.target_type and descriptor.target_type not in self._models:
                    issues.append(
                        f"{name}.{assoc_name}: target '{descriptor.target_type}' not registered"
                    )
                if descriptor.through and descriptor.through not in self._associations[name]:
                    issues.append(
                        f"{name}.{assoc_name}: through association '{descriptor.through}' not declared"
                    )

        return issues


default_registry = SchemaRegistry()
