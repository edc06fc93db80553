"""
Quarry Faults - Domain-specific fault types.

Provides concrete fault classes for:
- CONFIG faults
- DATA faults (predicates, associations, records, locking)
- IO faults (connection and query execution)
"""

from typing import Any, Dict, List, Optional
from .core import Fault, FaultDomain, Severity


# ============================================================================
# CONFIG Faults
# ============================================================================

class ConfigError(Fault):
    """Configuration could not be loaded or validated."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            code="CONFIG_INVALID",
            message=reason,
            domain=FaultDomain.CONFIG,
            metadata={"reason": reason, **kwargs.get("metadata", {})},
        )


# ============================================================================
# DATA Faults
# ============================================================================

class DataFault(Fault):
    """Base class for query, association and persistence faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        severity: Severity = Severity.ERROR,
        retryable: bool = False,
        public: bool = False,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.DATA,
            severity=severity,
            retryable=retryable,
            public=public,
            metadata=metadata,
        )


class InvalidConditionError(DataFault):
    """A predicate input could not be turned into SQL."""

    def __init__(self, condition: Any, reason: str, **kwargs):
        super().__init__(
            code="INVALID_CONDITION",
            message=f"Invalid condition {condition!r}: {reason}",
            metadata={"condition": repr(condition), "reason": reason, **kwargs.get("metadata", {})},
        )


class AssociationNotFoundError(DataFault):
    """Association name is not declared on the model."""

    def __init__(self, model: str, association: str, **kwargs):
        super().__init__(
            code="ASSOCIATION_NOT_FOUND",
            message=f"Association '{association}' not found on '{model}'",
            metadata={"model": model, "association": association, **kwargs.get("metadata", {})},
        )


class UnsupportedJoinError(DataFault):
    """Association cannot be expressed as a SQL JOIN."""

    def __init__(self, model: str, association: str, reason: str, **kwargs):
        super().__init__(
            code="UNSUPPORTED_JOIN",
            message=f"Cannot join '{association}' on '{model}': {reason}",
            metadata={
                "model": model,
                "association": association,
                "reason": reason,
                **kwargs.get("metadata", {}),
            },
        )


class RecordNotFoundError(DataFault):
    """A finder returned no rows where at least one was required."""

    def __init__(self, model: str, conditions: Any = None, **kwargs):
        detail = f" matching {conditions!r}" if conditions is not None else ""
        super().__init__(
            code="RECORD_NOT_FOUND",
            message=f"Couldn't find {model}{detail}",
            public=True,
            metadata={"model": model, "conditions": conditions, **kwargs.get("metadata", {})},
        )


class ReadOnlyRecordError(DataFault):
    """Mutation attempted on a read-only (or destroyed) record."""

    def __init__(self, model: str, reason: str = "record is marked as read-only", **kwargs):
        super().__init__(
            code="READ_ONLY_RECORD",
            message=f"{model}: {reason}",
            metadata={"model": model, "reason": reason, **kwargs.get("metadata", {})},
        )


class StrictLoadingViolationError(DataFault):
    """Lazy association access on a strict-loading record."""

    def __init__(self, model: str, association: str, **kwargs):
        super().__init__(
            code="STRICT_LOADING_VIOLATION",
            message=(
                f"{model} is marked for strict loading; "
                f"'{association}' must be eager loaded"
            ),
            metadata={"model": model, "association": association, **kwargs.get("metadata", {})},
        )


class ValidationError(DataFault):
    """Record failed validation; carries the full field -> messages map."""

    def __init__(self, model: str, errors: Dict[str, List[str]], **kwargs):
        self.errors = {field: list(messages) for field, messages in errors.items()}
        summary = "; ".join(
            f"{field} {message}"
            for field, messages in self.errors.items()
            for message in messages
        )
        super().__init__(
            code="VALIDATION_FAILED",
            message=f"Validation failed for {model}: {summary}",
            public=True,
            metadata={"model": model, "errors": self.errors, **kwargs.get("metadata", {})},
        )


class StaleObjectError(DataFault):
    """Optimistic locking conflict. Reload the record and retry."""

    def __init__(self, model: str, pk: Any, **kwargs):
        super().__init__(
            code="STALE_OBJECT",
            message=f"Attempted to update a stale object: {model} pk={pk}",
            metadata={"model": model, "pk": pk, **kwargs.get("metadata", {})},
        )


class RecordNotSavedError(DataFault):
    """A strict save wrote no rows."""

    def __init__(self, model: str, reason: str = "no rows affected", **kwargs):
        super().__init__(
            code="RECORD_NOT_SAVED",
            message=f"Failed to save {model}: {reason}",
            metadata={"model": model, "reason": reason, **kwargs.get("metadata", {})},
        )


class ModelRegistrationFault(DataFault):
    """Model registration failed."""

    def __init__(self, model_name: str, reason: str, **kwargs):
        super().__init__(
            code="MODEL_REGISTRATION_FAILED",
            message=f"Failed to register model '{model_name}': {reason}",
            severity=Severity.FATAL,
            metadata={"model": model_name, "reason": reason, **kwargs.get("metadata", {})},
        )


# ============================================================================
# IO Faults
# ============================================================================

class QueryFault(Fault):
    """Query execution failed."""

    def __init__(self, model: str, operation: str, reason: str, **kwargs):
        super().__init__(
            code="QUERY_FAILED",
            message=f"Query on '{model}' ({operation}) failed: {reason}",
            domain=FaultDomain.IO,
            severity=Severity.ERROR,
            retryable=True,
            metadata={"model": model, "operation": operation, "reason": reason, **kwargs.get("metadata", {})},
        )


class DatabaseConnectionFault(Fault):
    """Database connection failed."""

    def __init__(self, url: str, reason: str, **kwargs):
        super().__init__(
            code="DB_CONNECTION_FAILED",
            message=f"Database connection failed ({url}): {reason}",
            domain=FaultDomain.IO,
            severity=Severity.FATAL,
            retryable=True,
            metadata={"url": url, "reason": reason, **kwargs.get("metadata", {})},
        )
