"""
Quarry Model Fields: typed columns over the record's attribute map.

Each field is a descriptor: reading ``record.name`` returns the value held
in the record's attribute map, and assigning it goes through the tracked
setter so the column lands in the changed set.

    class User(Model):
        table = "users"

        name = CharField(max_length=150)
        age = IntegerField(null=True)
        active = BooleanField(default=True)
        joined = DateTimeField(auto_now_add=True)
"""

from __future__ import annotations

import copy
import datetime
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TYPE_CHECKING,
)

if TYPE_CHECKING:
    from .base import Model

__all__ = [
    "FieldValidationError",
    "UNSET",
    "Field",
    "AutoField",
    "IntegerField",
    "FloatField",
    "CharField",
    "TextField",
    "BooleanField",
    "DateField",
    "DateTimeField",
    "BinaryField",
]


# ── Field Errors ─────────────────────────────────────────────────────────────


class FieldValidationError(ValueError):
    """Raised when field validation fails."""

    def __init__(self, field_name: str, message: str, value: Any = None):
        self.field_name = field_name
        self.message = message
        self.value = value
        super().__init__(f"Field '{field_name}': {message}")


# ── Sentinel ─────────────────────────────────────────────────────────────────

class _Unset:
    """Sentinel for distinguishing 'not set' from None."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<UNSET>"

    def __bool__(self):
        return False

UNSET = _Unset()


# ── Base Field ───────────────────────────────────────────────────────────────


class Field:
    """
    Base field descriptor: all quarry fields inherit from this.

    Core parameters (shared by every field):
        null        – Allow NULL (default False); a missing value fails validation
        default     – Default value or callable
        primary_key – Mark as primary key
        db_column   – Override column name
        choices     – Restrict to enumerated values
        validators  – Callables raising ValueError for invalid values
    """

    _field_type: str = "FIELD"
    _python_type: type = object

    def __init__(
        self,
        *,
        null: bool = False,
        default: Any = UNSET,
        primary_key: bool = False,
        db_column: Optional[str] = None,
        choices: Optional[Sequence[Tuple[Any, str]]] = None,
        validators: Optional[List[Callable]] = None,
    ):
        self.null = null
        self.default = default
        self.primary_key = primary_key
        self.db_column = db_column
        self.choices = choices
        self.validators = validators or []

        # Set by metaclass
        self.name: str = ""
        self.attr_name: str = ""
        self.model: Optional[Type[Model]] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = self.db_column or name
        self.attr_name = name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.name}>"

    # ── Descriptor protocol ──────────────────────────────────────────

    def __get__(self, instance: Any, owner: type) -> Any:
        if instance is None:
            return self
        return instance.get_attribute(self.column_name)

    def __set__(self, instance: Any, value: Any) -> None:
        instance.set_attribute(self.column_name, value)

    @property
    def column_name(self) -> str:
        """Database column name."""
        return self.db_column or self.name

    def has_default(self) -> bool:
        return self.default is not UNSET

    def get_default(self) -> Any:
        """Get default value, calling it if callable."""
        if self.default is UNSET:
            return None
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)

    def validate(self, value: Any) -> Any:
        """
        Validate and coerce value. Returns cleaned value.
        Override in subclasses for type-specific validation.
        """
        if value is None:
            if not self.null:
                raise FieldValidationError(self.name, "can't be blank")
            return None

        if self.choices:
            valid_values = [c[0] for c in self.choices]
            if value not in valid_values:
                raise FieldValidationError(
                    self.name,
                    f"is not included in the list {valid_values}",
                    value,
                )

        for validator in self.validators:
            try:
                validator(value)
            except FieldValidationError:
                raise
            except ValueError as exc:
                raise FieldValidationError(self.name, str(exc), value) from exc

        return value

    def to_python(self, value: Any) -> Any:
        """Convert database value to Python object."""
        return value

    def to_db(self, value: Any) -> Any:
        """Convert Python value to database-ready value."""
        return value

    def pre_save(self, instance: Any, is_create: bool) -> Any:
        """Value to write before save; ``UNSET`` leaves the attribute alone."""
        return UNSET


# ═══════════════════════════════════════════════════════════════════════════════
# NUMERIC FIELDS
# ═══════════════════════════════════════════════════════════════════════════════


class AutoField(Field):
    """Auto-incrementing integer primary key, assigned by the database."""

    _field_type = "AUTO"
    _python_type = int

    def __init__(self, *, db_column: Optional[str] = None):
        super().__init__(null=True, primary_key=True, db_column=db_column)

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        return int(value)


class IntegerField(Field):
    """Integer column."""

    _field_type = "INTEGER"
    _python_type = int

    def validate(self, value: Any) -> Any:
        value = super().validate(value)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            try:
                return int(value)
            except (TypeError, ValueError):
                raise FieldValidationError(self.name, f"Expected integer, got {type(value).__name__}", value)
        return value

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        return int(value)


class FloatField(Field):
    """Floating point column."""

    _field_type = "FLOAT"
    _python_type = float

    def validate(self, value: Any) -> Any:
        value = super().validate(value)
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            raise FieldValidationError(self.name, f"Expected float, got {type(value).__name__}", value)

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        return float(value)


# ═══════════════════════════════════════════════════════════════════════════════
# TEXT FIELDS
# ═══════════════════════════════════════════════════════════════════════════════


class CharField(Field):
    """Bounded string column."""

    _field_type = "CHAR"
    _python_type = str

    def __init__(self, *, max_length: int = 255, **kwargs: Any):
        self.max_length = max_length
        super().__init__(**kwargs)

    def validate(self, value: Any) -> Any:
        value = super().validate(value)
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        if len(value) > self.max_length:
            raise FieldValidationError(
                self.name,
                f"is too long (maximum is {self.max_length} characters)",
                value,
            )
        return value


class TextField(Field):
    """Unbounded string column."""

    _field_type = "TEXT"
    _python_type = str


# ═══════════════════════════════════════════════════════════════════════════════
# BOOLEAN / TEMPORAL / BINARY
# ═══════════════════════════════════════════════════════════════════════════════


class BooleanField(Field):
    """Boolean field: stored as INTEGER 0/1 in SQLite."""

    _field_type = "BOOL"
    _python_type = bool

    def validate(self, value: Any) -> Any:
        value = super().validate(value)
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str):
            if value.lower() in ("true", "1", "yes", "t"):
                return True
            if value.lower() in ("false", "0", "no", "f"):
                return False
        raise FieldValidationError(self.name, f"Expected boolean, got {type(value).__name__}", value)

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "t")
        return bool(value)

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        return 1 if value else 0


class DateField(Field):
    """Date column, stored as ISO text."""

    _field_type = "DATE"
    _python_type = datetime.date

    def to_python(self, value: Any) -> Any:
        if value is None or isinstance(value, datetime.date):
            return value
        return datetime.date.fromisoformat(str(value))

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, datetime.date):
            return value.isoformat()
        return str(value)


class DateTimeField(Field):
    """Timestamp column, stored as ISO text."""

    _field_type = "DATETIME"
    _python_type = datetime.datetime

    def __init__(self, *, auto_now: bool = False, auto_now_add: bool = False, **kwargs: Any):
        self.auto_now = auto_now
        self.auto_now_add = auto_now_add
        # auto-populated columns are filled in before validation matters
        if auto_now or auto_now_add:
            kwargs.setdefault("null", True)
        super().__init__(**kwargs)

    def validate(self, value: Any) -> Any:
        value = super().validate(value)
        if value is None or isinstance(value, datetime.datetime):
            return value
        if isinstance(value, str):
            try:
                return datetime.datetime.fromisoformat(value)
            except ValueError:
                raise FieldValidationError(self.name, f"Invalid datetime format: '{value}'", value)
        raise FieldValidationError(self.name, f"Expected datetime, got {type(value).__name__}", value)

    def to_python(self, value: Any) -> Any:
        if value is None or isinstance(value, datetime.datetime):
            return value
        return datetime.datetime.fromisoformat(str(value))

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, datetime.datetime):
            return value.isoformat()
        return str(value)

    def pre_save(self, instance: Any, is_create: bool) -> Any:
        """Auto-set value before save."""
        if self.auto_now:
            return datetime.datetime.now(datetime.timezone.utc)
        if self.auto_now_add and is_create and instance.get_attribute(self.column_name) is None:
            return datetime.datetime.now(datetime.timezone.utc)
        return UNSET


class BinaryField(Field):
    """Binary data field: stored as BLOB."""

    _field_type = "BINARY"
    _python_type = bytes

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        return bytes(value)
