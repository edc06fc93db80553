"""
Quarry - Async relational data access layer

- Models: declarative records with tracked attributes and callbacks
- Associations: belongs-to, has-many, has-one, through, many-to-many, polymorphic
- Queries: chainable builder, eager loading, batches, calculations
- Transactions: nested reuse with commit / rollback hooks
- Faults: typed errors with codes, domains and retry semantics
"""

__version__ = "0.1.0"

from .config import ConfigLoader, DatabaseConfig, connect
from .db import Database
from .faults import (
    AssociationNotFoundError,
    ConfigError,
    DatabaseConnectionFault,
    DataFault,
    Fault,
    InvalidConditionError,
    ModelRegistrationFault,
    QueryFault,
    ReadOnlyRecordError,
    RecordNotFoundError,
    RecordNotSavedError,
    StaleObjectError,
    StrictLoadingViolationError,
    UnsupportedJoinError,
    ValidationError,
)
from .models import (
    BelongsTo,
    Dependent,
    HasAndBelongsToMany,
    HasMany,
    HasOne,
    Model,
    P,
    QueryBuilder,
    Range,
    SchemaRegistry,
    Scope,
    atomic,
    default_registry,
    scope,
)

__all__ = [
    "__version__",
    # Config
    "ConfigLoader",
    "DatabaseConfig",
    "connect",
    # Database
    "Database",
    # Models
    "Model",
    "scope",
    "BelongsTo",
    "HasMany",
    "HasOne",
    "HasAndBelongsToMany",
    "Dependent",
    "SchemaRegistry",
    "default_registry",
    "QueryBuilder",
    "Scope",
    "P",
    "Range",
    "atomic",
    # Faults
    "Fault",
    "DataFault",
    "ConfigError",
    "InvalidConditionError",
    "AssociationNotFoundError",
    "UnsupportedJoinError",
    "RecordNotFoundError",
    "ReadOnlyRecordError",
    "StrictLoadingViolationError",
    "ValidationError",
    "StaleObjectError",
    "RecordNotSavedError",
    "ModelRegistrationFault",
    "QueryFault",
    "DatabaseConnectionFault",
]
