"""
Quarry Model System: async active-record models over a relational database.

Usage:
    from quarry.models import Model, BelongsTo, HasMany, scope
    from quarry.models.fields import CharField, IntegerField

    class User(Model):
        table = "users"

        name = CharField(max_length=150)
        posts = HasMany("Post", dependent="destroy")

    class Post(Model):
        table = "posts"

        title = CharField(max_length=200)
        author = BelongsTo("User")

        @scope
        def titled(q, title):
            return q.where(title=title)

Public API:
    - Model, scope: Base class and named scopes
    - Fields: Auto, Integer, Float, Char, Text, Boolean, Date, DateTime, Binary
    - Associations: BelongsTo, HasMany, HasOne, HasAndBelongsToMany
    - QueryBuilder, Scope, P, Range: Query construction
    - SchemaRegistry: Models and association descriptors
    - Callbacks, validators and transactions
"""

from .associations import (
    AssociationDescriptor,
    AssociationKind,
    BelongsTo,
    Dependent,
    HasAndBelongsToMany,
    HasMany,
    HasOne,
    JoinClause,
    JoinType,
)
from .base import Model, scope
from .callbacks import (
    Callback,
    CallbackChain,
    after_commit,
    after_create,
    after_destroy,
    after_rollback,
    after_save,
    after_update,
    after_validation,
    before_create,
    before_destroy,
    before_save,
    before_update,
    before_validation,
)
from .fields import (
    UNSET,
    AutoField,
    BinaryField,
    BooleanField,
    CharField,
    DateField,
    DateTimeField,
    Field,
    FieldValidationError,
    FloatField,
    IntegerField,
    TextField,
)
from .lifecycle import Lifecycle
from .metaclass import ModelMeta
from .options import Options
from .predicates import P, PredicateList, Range
from .query import NamedScope, QueryBuilder, Scope
from .registry import SchemaRegistry, default_registry
from .transactions import Atomic, atomic
from .validation import (
    Errors,
    Format,
    Length,
    Numericality,
    Presence,
    Uniqueness,
    Validator,
    validates,
)

__all__ = [
    # Core
    "Model",
    "ModelMeta",
    "Options",
    "scope",
    # Fields
    "Field",
    "FieldValidationError",
    "UNSET",
    "AutoField",
    "IntegerField",
    "FloatField",
    "CharField",
    "TextField",
    "BooleanField",
    "DateField",
    "DateTimeField",
    "BinaryField",
    # Associations
    "AssociationDescriptor",
    "AssociationKind",
    "BelongsTo",
    "HasMany",
    "HasOne",
    "HasAndBelongsToMany",
    "Dependent",
    "JoinClause",
    "JoinType",
    # Registry
    "SchemaRegistry",
    "default_registry",
    # Query
    "QueryBuilder",
    "Scope",
    "NamedScope",
    "P",
    "PredicateList",
    "Range",
    # Lifecycle
    "Lifecycle",
    "Callback",
    "CallbackChain",
    "before_validation",
    "after_validation",
    "before_save",
    "after_save",
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_destroy",
    "after_destroy",
    "after_commit",
    "after_rollback",
    # Validation
    "Errors",
    "Validator",
    "Presence",
    "Length",
    "Format",
    "Numericality",
    "Uniqueness",
    "validates",
    # Transactions
    "Atomic",
    "atomic",
]
