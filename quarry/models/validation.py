"""
Quarry Validation: error collection and declarative validators.

``Errors`` is the per-record field -> messages map filled during validation.
Declarative validators go in the model's ``Meta.validations`` list, next to
column-level ``validators=`` on fields and the ``validate(self, errors)`` hook:

    class User(Model):
        table = "users"
        name = CharField(null=True)
        email = CharField()
        age = IntegerField(null=True)

        class Meta:
            validations = [
                *validates("name", presence=True, length={"maximum": 50}),
                Format("email", r"^[^@]+@[^@]+$"),
                Numericality("age", greater_than_or_equal_to=0, only_integer=True),
                Uniqueness("email"),
            ]

        def validate(self, errors):
            if self.name == "root":
                errors.add("name", "is reserved")
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Dict, Iterator, List, Optional, Pattern, Union

__all__ = [
    "Errors",
    "Validator",
    "Presence",
    "Length",
    "Format",
    "Numericality",
    "Uniqueness",
    "validates",
]


class Errors(Mapping):
    """
    Field -> list of messages.

    Missing fields read as an empty list, so ``errors["name"]`` is always safe.
    A truthy ``Errors`` means the record is invalid.
    """

    def __init__(self) -> None:
        self._messages: Dict[str, List[str]] = {}

    def add(self, field: str, message: str) -> None:
        self._messages.setdefault(field, []).append(message)

    def clear(self) -> None:
        self._messages.clear()

    def __getitem__(self, field: str) -> List[str]:
        return list(self._messages.get(field, []))

    def __contains__(self, field: object) -> bool:
        return field in self._messages

    def __iter__(self) -> Iterator[str]:
        return iter(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def count(self) -> int:
        """Total number of messages across all fields."""
        return sum(len(messages) for messages in self._messages.values())

    def full_messages(self) -> List[str]:
        """``["Name can't be blank", ...]``"""
        return [
            f"{field.replace('_', ' ').capitalize()} {message}"
            for field, messages in self._messages.items()
            for message in messages
        ]

    def to_dict(self) -> Dict[str, List[str]]:
        return {field: list(messages) for field, messages in self._messages.items()}

    def __repr__(self) -> str:
        return f"<Errors {self._messages!r}>"


# ── Declarative validators ───────────────────────────────────────────────────


class Validator:
    """Base validator bound to one attribute."""

    def __init__(self, field: str, *, message: Optional[str] = None):
        self.field = field
        self.message = message

    async def validate(self, record: Any, errors: Errors) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.field}>"


class Presence(Validator):
    """Value must not be None or a blank string."""

    async def validate(self, record: Any, errors: Errors) -> None:
        value = record.get_attribute(self.field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.add(self.field, self.message or "can't be blank")


class Length(Validator):
    """String length bounds; ``None`` values are skipped."""

    def __init__(
        self,
        field: str,
        *,
        minimum: Optional[int] = None,
        maximum: Optional[int] = None,
        is_: Optional[int] = None,
        within: Optional[range] = None,
        message: Optional[str] = None,
    ):
        super().__init__(field, message=message)
        self.minimum = minimum
        self.maximum = maximum
        self.is_ = is_
        self.within = within

    async def validate(self, record: Any, errors: Errors) -> None:
        value = record.get_attribute(self.field)
        if not isinstance(value, str):
            return
        size = len(value)
        if self.minimum is not None and size < self.minimum:
            errors.add(self.field, self.message or f"is too short (minimum is {self.minimum} characters)")
        if self.maximum is not None and size > self.maximum:
            errors.add(self.field, self.message or f"is too long (maximum is {self.maximum} characters)")
        if self.is_ is not None and size != self.is_:
            errors.add(self.field, self.message or f"is the wrong length (should be {self.is_} characters)")
        if self.within is not None and size not in self.within:
            errors.add(
                self.field,
                self.message
                or f"is the wrong length (should be within {self.within.start}..{self.within.stop - 1})",
            )


class Format(Validator):
    """String must match a regular expression."""

    def __init__(self, field: str, with_: Union[str, Pattern], *, message: Optional[str] = None):
        super().__init__(field, message=message)
        self.pattern = re.compile(with_) if isinstance(with_, str) else with_

    async def validate(self, record: Any, errors: Errors) -> None:
        value = record.get_attribute(self.field)
        if isinstance(value, str) and not self.pattern.search(value):
            errors.add(self.field, self.message or "is invalid")


class Numericality(Validator):
    """Value must be numeric, optionally bounded."""

    def __init__(
        self,
        field: str,
        *,
        greater_than: Optional[float] = None,
        greater_than_or_equal_to: Optional[float] = None,
        less_than: Optional[float] = None,
        less_than_or_equal_to: Optional[float] = None,
        equal_to: Optional[float] = None,
        only_integer: bool = False,
        odd: bool = False,
        even: bool = False,
        message: Optional[str] = None,
    ):
        super().__init__(field, message=message)
        self.greater_than = greater_than
        self.greater_than_or_equal_to = greater_than_or_equal_to
        self.less_than = less_than
        self.less_than_or_equal_to = less_than_or_equal_to
        self.equal_to = equal_to
        self.only_integer = only_integer
        self.odd = odd
        self.even = even

    async def validate(self, record: Any, errors: Errors) -> None:
        value = record.get_attribute(self.field)
        if value is None:
            return
        if isinstance(value, bool):
            errors.add(self.field, self.message or "is not a number")
            return
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.add(self.field, self.message or "is not a number")
            return

        checks = (
            (self.greater_than, lambda bound: number > bound, "must be greater than {}"),
            (self.greater_than_or_equal_to, lambda bound: number >= bound,
             "must be greater than or equal to {}"),
            (self.less_than, lambda bound: number < bound, "must be less than {}"),
            (self.less_than_or_equal_to, lambda bound: number <= bound,
             "must be less than or equal to {}"),
            (self.equal_to, lambda bound: number == bound, "must be equal to {}"),
        )
        for bound, ok, template in checks:
            if bound is not None and not ok(bound):
                errors.add(self.field, self.message or template.format(bound))

        if self.only_integer and number != int(number):
            errors.add(self.field, self.message or "must be an integer")
        if self.odd and int(number) % 2 != 1:
            errors.add(self.field, self.message or "must be odd")
        if self.even and int(number) % 2 != 0:
            errors.add(self.field, self.message or "must be even")


class Uniqueness(Validator):
    """No other row may hold the same value (one COUNT query)."""

    async def validate(self, record: Any, errors: Errors) -> None:
        value = record.get_attribute(self.field)
        if value is None:
            return
        query = type(record).unscoped().where({self.field: value})
        pk = record.pk
        if record.is_persisted and pk is not None:
            query = query.where_not({type(record)._pk_name: pk})
        if await query.exists():
            errors.add(self.field, self.message or "has already been taken")


def validates(
    *fields: str,
    presence: bool = False,
    length: Optional[Mapping] = None,
    format: Optional[Union[str, Pattern, Mapping]] = None,
    numericality: Union[bool, Mapping, None] = None,
    uniqueness: bool = False,
) -> List[Validator]:
    """Expand keyword options into validator instances for each field."""
    validators: List[Validator] = []
    for field in fields:
        if presence:
            validators.append(Presence(field))
        if length:
            validators.append(Length(field, **length))
        if format is not None:
            if isinstance(format, Mapping):
                validators.append(Format(field, format["with"], message=format.get("message")))
            else:
                validators.append(Format(field, format))
        if numericality:
            options = numericality if isinstance(numericality, Mapping) else {}
            validators.append(Numericality(field, **options))
        if uniqueness:
            validators.append(Uniqueness(field))
    return validators
