"""
Quarry Model Metaclass: field collection, auto-PK, Meta parsing, registration.

Separates the metaclass logic from the Model base class for cleaner architecture.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple, TYPE_CHECKING

from ..faults.domains import ModelRegistrationFault
from .associations import Association, BelongsTo
from .callbacks import CALLBACK_MARKER, CallbackChain
from .fields import AutoField, CharField, DateTimeField, Field, IntegerField
from .options import Options

if TYPE_CHECKING:
    from .base import Model

__all__ = ["ModelMeta"]


class ModelMeta(type):
    """
    Metaclass for quarry models.

    Handles:
    - Field collection and ordering
    - Auto-PK injection (AutoField)
    - Meta class parsing → Options
    - Timestamp and locking columns
    - Association declarations → registry descriptors (plus foreign key columns)
    - Callback and scope collection
    - Model registration in the SchemaRegistry
    """

    def __new__(
        mcs,
        name: str,
        bases: Tuple[type, ...],
        namespace: Dict[str, Any],
        **kwargs,
    ) -> ModelMeta:
        # Don't process the base Model class itself
        parents = [b for b in bases if isinstance(b, ModelMeta)]
        if not parents:
            return super().__new__(mcs, name, bases, namespace)

        from .query import NamedScope

        parent = next((p for p in parents if hasattr(p, "_meta")), None)

        # Extract Meta class
        meta_class = namespace.pop("Meta", None)

        # Extract `table = "..."` attribute
        table_attr = namespace.pop("table", None)

        opts = Options(name, meta_class, table_attr, parent._meta if parent else None)

        # Inherit fields, declarations and scopes from parents
        fields: Dict[str, Field] = {}
        declarations: Dict[str, Association] = {}
        scopes: Dict[str, NamedScope] = {}
        validations: List[Any] = []
        for base in reversed(parents):
            fields.update(getattr(base, "_fields", {}))
            declarations.update(getattr(base, "_association_declarations", {}))
            scopes.update(getattr(base, "_scopes", {}))
            validations.extend(getattr(base, "_validations", []))
        validations.extend(opts.validations)

        # Collect new fields, associations and scopes
        new_fields: Dict[str, Field] = {}
        for key, value in list(namespace.items()):
            if isinstance(value, Field):
                fields[key] = value
                new_fields[key] = value
            elif isinstance(value, Association):
                declarations[key] = namespace.pop(key)
            elif isinstance(value, NamedScope):
                scopes[key] = value

        def inject(attr: str, field: Field) -> None:
            field.__set_name__(None, attr)
            fields[attr] = field
            new_fields[attr] = field
            namespace[attr] = field

        # Foreign key (and discriminator) columns for belongs-to declarations
        for assoc_name, declaration in declarations.items():
            if not isinstance(declaration, BelongsTo):
                continue
            fk = declaration.foreign_key or f"{assoc_name}_id"
            if fk not in fields and not any(f.column_name == fk for f in fields.values()):
                inject(fk, IntegerField(null=True))
            if declaration.polymorphic and f"{assoc_name}_type" not in fields:
                inject(f"{assoc_name}_type", CharField(null=True))

        if opts.timestamps:
            if "created_at" not in fields:
                inject("created_at", DateTimeField(auto_now_add=True))
            if "updated_at" not in fields:
                inject("updated_at", DateTimeField(auto_now=True))

        if opts.locking_column and opts.locking_column not in fields:
            inject(opts.locking_column, IntegerField(default=0))

        # Auto-inject PK if no primary key defined (and not abstract)
        if not opts.abstract:
            has_pk = any(f.primary_key for f in fields.values())
            if not has_pk:
                pk_name = opts.primary_key or "id"
                if pk_name in fields:
                    fields[pk_name].primary_key = True
                else:
                    pk_field = AutoField()
                    pk_field.__set_name__(None, pk_name)
                    # pk leads the column list
                    fields = {pk_name: pk_field, **fields}
                    new_fields[pk_name] = pk_field
                    namespace[pk_name] = pk_field

        # Create class
        cls = super().__new__(mcs, name, bases, namespace)

        # Attach metadata
        cls._fields = fields
        cls._meta = opts
        cls._table_name = opts.table_name
        cls._registry = opts.registry
        cls._association_declarations = declarations
        cls._scopes = scopes
        cls._validations = validations
        cls._lock_column = opts.locking_column

        # Determine PK
        cls._pk_name = "id"
        cls._pk_attr = "id"
        for fname, field in fields.items():
            if field.primary_key:
                cls._pk_name = field.column_name
                cls._pk_attr = fname
                break

        # Set name on all fields
        for fname, field in new_fields.items():
            field.__set_name__(cls, fname)
            field.model = cls

        cls._column_names = [f.column_name for f in fields.values()]
        cls._attr_names = list(fields)
        cls._fields_by_column = {f.column_name: f for f in fields.values()}

        # Callbacks: inherited chain plus decorated methods in definition order
        cls._callbacks = CallbackChain(getattr(parent, "_callbacks", None))
        for value in namespace.values():
            for callback in getattr(value, CALLBACK_MARKER, ()):
                cls._callbacks.add(callback)

        # Register in the schema registry (skip abstract)
        if not opts.abstract:
            _check_unique_columns(cls)
            descriptors = [
                declaration.describe(assoc_name, name, cls._pk_name)
                for assoc_name, declaration in declarations.items()
            ]
            cls._registry.register(cls, descriptors)

        return cls


def _check_unique_columns(cls: Model) -> None:
    seen: Dict[str, str] = {}
    for attr, field in cls._fields.items():
        if field.column_name in seen:
            raise ModelRegistrationFault(
                cls.__name__,
                f"column '{field.column_name}' used by both '{seen[field.column_name]}' and '{attr}'",
            )
        seen[field.column_name] = attr
