"""
Quarry Faults - typed fault signals for the data layer.

Every error raised by quarry is a ``Fault``: it carries a stable code,
a domain, a severity and retry semantics, so callers can tell caller bugs
(``InvalidConditionError``) from lock conflicts (``StaleObjectError``)
and transient I/O problems (``QueryFault``).
"""

from .core import (
    Fault,
    FaultDomain,
    Severity,
)
from .domains import (
    ConfigError,
    DataFault,
    InvalidConditionError,
    AssociationNotFoundError,
    UnsupportedJoinError,
    RecordNotFoundError,
    ReadOnlyRecordError,
    StrictLoadingViolationError,
    ValidationError,
    StaleObjectError,
    RecordNotSavedError,
    ModelRegistrationFault,
    QueryFault,
    DatabaseConnectionFault,
)

__all__ = [
    "Fault",
    "FaultDomain",
    "Severity",
    "ConfigError",
    "DataFault",
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
