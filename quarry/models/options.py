"""
Quarry Model Options: parsed from inner Meta class.

Contains the Options class which stores model metadata like
table_name, primary_key, locking_column, timestamps, default_scope, etc.
"""

from __future__ import annotations

from typing import Any, List, Optional, TYPE_CHECKING

import inflection

if TYPE_CHECKING:
    from .registry import SchemaRegistry
    from .validation import Validator


__all__ = ["Options"]

DEFAULT_LOCKING_COLUMN = "lock_version"

# Options a subclass picks up from its parent's Meta when it does not set them
_INHERITED = ("registry", "timestamps", "locking_column", "default_scope")


class Options:
    """
    Parsed model options from inner Meta class.

    Attributes:
        table_name: Database table name (default: tableized class name)
        primary_key: Primary key column when no field declares one
        locking_column: Optimistic locking column, ``None`` when disabled
        timestamps: Maintain ``created_at`` / ``updated_at``
        default_scope: Callable, Scope or condition mapping applied by ``query()``
        registry: SchemaRegistry the model registers in
        polymorphic_name: Discriminator written to polymorphic type columns
        abstract: Whether model is abstract (not registered, no table)
        validations: Declarative validators
    """

    __slots__ = (
        "table_name",
        "primary_key",
        "locking_column",
        "timestamps",
        "default_scope",
        "registry",
        "polymorphic_name",
        "abstract",
        "validations",
    )

    def __init__(
        self,
        model_name: str,
        meta: Optional[type] = None,
        table_attr: Optional[str] = None,
        parent: Optional[Options] = None,
    ):
        self.table_name: str = table_attr or (
            getattr(meta, "table", None) or getattr(meta, "table_name", None)
            if meta else None
        ) or inflection.tableize(model_name)
        self.primary_key: Optional[str] = getattr(meta, "primary_key", None) if meta else None
        self.abstract: bool = getattr(meta, "abstract", False) if meta else False
        self.polymorphic_name: str = (
            getattr(meta, "polymorphic_name", None) if meta else None
        ) or model_name

        inherited = {name: getattr(parent, name) if parent else None for name in _INHERITED}

        from .registry import default_registry
        self.registry: SchemaRegistry = (
            getattr(meta, "registry", None) if meta else None
        ) or inherited["registry"] or default_registry
        self.timestamps: bool = bool(
            getattr(meta, "timestamps", inherited["timestamps"] or False)
            if meta else inherited["timestamps"] or False
        )
        self.default_scope: Any = (
            getattr(meta, "default_scope", inherited["default_scope"])
            if meta else inherited["default_scope"]
        )

        locking = (
            getattr(meta, "locking_column", inherited["locking_column"])
            if meta else inherited["locking_column"]
        )
        if locking is True:
            locking = DEFAULT_LOCKING_COLUMN
        self.locking_column: Optional[str] = locking or None

        self.validations: List[Validator] = list(getattr(meta, "validations", []) if meta else [])

    def __repr__(self) -> str:
        return f"<Options table={self.table_name!r} abstract={self.abstract}>"
