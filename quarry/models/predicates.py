"""
Quarry Predicates: condition inputs to SQL fragments.

Turns key-value maps, raw SQL fragments with positional (or named)
parameters, ranges, membership lists and null checks into one
WHERE/HAVING clause plus a parameter list in placeholder order.

    preds = PredicateList()
    preds.add({"status": "active", "deleted_at": None})
    preds.add("age > ?", [18], connector="OR")
    preds.sql()      # '(status = ? AND deleted_at IS NULL) OR (age > ?)'
    preds.params     # ['active', 18]

Composable trees go through ``P``:

    P(role="admin") | (P(role="editor") & ~P(banned_at=None))
"""

from __future__ import annotations

import datetime
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence, Tuple

from ..faults.domains import InvalidConditionError

__all__ = [
    "Range",
    "P",
    "Fragment",
    "PredicateList",
    "build_condition",
    "check_identifier",
]

AND = "AND"
OR = "OR"

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_NAMED_PARAM_RE = re.compile(r"(?<!:):([A-Za-z_][A-Za-z0-9_]*)")

_MEMBERSHIP_TYPES = (list, tuple, set, frozenset)


@dataclass(frozen=True)
class Range:
    """Value range; ``exclusive`` drops the upper bound."""

    start: Any
    end: Any
    exclusive: bool = False


@dataclass(frozen=True)
class Fragment:
    """One SQL condition, its parameters and the connector placed before it."""

    sql: str
    params: Tuple[Any, ...] = ()
    connector: str = AND


def check_identifier(column: Any) -> str:
    """Return ``column`` if it is a plain or table-qualified identifier."""
    if not isinstance(column, str) or not _IDENT_RE.match(column):
        raise InvalidConditionError(column, "column names must be identifiers like 'col' or 'table.col'")
    return column


def bind_value(value: Any) -> Any:
    """Convert a Python value to what the driver binds."""
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    return value


def _pair(column: str, value: Any, negate: bool) -> Tuple[str, List[Any]]:
    column = check_identifier(column)

    if value is None:
        return (f"{column} IS NOT NULL" if negate else f"{column} IS NULL"), []

    if isinstance(value, range):
        if value.step == 1:
            value = Range(value.start, value.stop, exclusive=True)
        else:
            value = list(value)

    if isinstance(value, Range):
        params = [bind_value(value.start), bind_value(value.end)]
        if value.exclusive:
            sql = f"{column} >= ? AND {column} < ?"
            return (f"NOT ({sql})" if negate else sql), params
        op = "NOT BETWEEN" if negate else "BETWEEN"
        return f"{column} {op} ? AND ?", params

    if isinstance(value, _MEMBERSHIP_TYPES):
        values = [bind_value(v) for v in value]
        if not values:
            # Nothing is a member of the empty set
            return ("1 = 1" if negate else "1 = 0"), []
        placeholders = ", ".join("?" for _ in values)
        op = "NOT IN" if negate else "IN"
        return f"{column} {op} ({placeholders})", values

    if isinstance(value, Mapping):
        raise InvalidConditionError({column: value}, "nested mappings are not a valid value")

    return (f"{column} != ?" if negate else f"{column} = ?"), [bind_value(value)]


def _from_mapping(condition: Mapping, negate: bool) -> Tuple[str, List[Any]]:
    if not condition:
        raise InvalidConditionError(condition, "empty condition mapping")

    if len(condition) == 1:
        ((column, value),) = condition.items()
        return _pair(column, value, negate)

    parts: List[str] = []
    params: List[Any] = []
    for column, value in condition.items():
        sql, values = _pair(column, value, False)
        parts.append(sql)
        params.extend(values)
    sql = " AND ".join(parts)
    return (f"NOT ({sql})" if negate else sql), params


def _from_string(condition: str, params: Sequence[Any], named: Mapping) -> Tuple[str, List[Any]]:
    if not condition.strip():
        raise InvalidConditionError(condition, "empty SQL fragment")

    if named:
        if params:
            raise InvalidConditionError(condition, "mix of positional and named parameters")
        values: List[Any] = []

        def _substitute(match: re.Match) -> str:
            key = match.group(1)
            if key not in named:
                raise InvalidConditionError(condition, f"missing value for :{key}")
            values.append(bind_value(named[key]))
            return "?"

        return _NAMED_PARAM_RE.sub(_substitute, condition), values

    expected = condition.count("?")
    if expected != len(params):
        raise InvalidConditionError(
            condition,
            f"{expected} placeholder(s) but {len(params)} parameter(s)",
        )
    return condition, [bind_value(p) for p in params]


def build_condition(
    condition: Any,
    params: Sequence[Any] = (),
    *,
    named: Mapping | None = None,
    negate: bool = False,
) -> Tuple[str, List[Any]]:
    """
    Build ``(sql, params)`` from a single condition input.

    Accepted inputs: a mapping of column to value, a SQL string with ``?``
    (or ``:name``) placeholders, or a ``P`` tree. Anything else raises
    ``InvalidConditionError``.
    """
    if isinstance(condition, P):
        if params or named:
            raise InvalidConditionError(condition, "P nodes carry their own parameters")
        sql, values = condition.build()
        return (f"NOT ({sql})" if negate else sql), values

    if isinstance(condition, str):
        sql, values = _from_string(condition, params, named or {})
        return (f"NOT ({sql})" if negate else sql), values

    if isinstance(condition, Mapping):
        if params:
            raise InvalidConditionError(condition, "positional parameters given with a mapping")
        return _from_mapping(condition, negate)

    raise InvalidConditionError(condition, f"unsupported condition type {type(condition).__name__}")


class P:
    """
    Composable predicate node (AND / OR / NOT).

        P(active=True) & P("age > ?", 18)
        P(role="admin") | P(role="owner")
        ~P(deleted_at=None)
    """

    __slots__ = ("children", "connector", "negated")

    def __init__(self, *args: Any, **kwargs: Any):
        self.children: List[Any] = []
        self.connector = AND
        self.negated = False
        if args:
            self.children.append((args[0], tuple(args[1:])))
        if kwargs:
            self.children.append((dict(kwargs), ()))

    def _combine(self, other: Any, connector: str) -> P:
        if not isinstance(other, P):
            return NotImplemented
        node = P()
        node.connector = connector
        node.children = [self, other]
        return node

    def __and__(self, other: Any) -> P:
        return self._combine(other, AND)

    def __or__(self, other: Any) -> P:
        return self._combine(other, OR)

    def __invert__(self) -> P:
        node = P()
        node.children = list(self.children)
        node.connector = self.connector
        node.negated = not self.negated
        return node

    def build(self) -> Tuple[str, List[Any]]:
        if not self.children:
            raise InvalidConditionError(self, "empty predicate")

        parts: List[str] = []
        params: List[Any] = []
        for child in self.children:
            if isinstance(child, P):
                sql, values = child.build()
            else:
                condition, args = child
                sql, values = build_condition(condition, args)
            parts.append(sql)
            params.extend(values)

        if len(parts) == 1:
            sql = parts[0]
        else:
            sql = f" {self.connector} ".join(f"({part})" for part in parts)
        if self.negated:
            sql = f"NOT ({sql})"
        return sql, params

    def __repr__(self) -> str:
        prefix = "~" if self.negated else ""
        return f"{prefix}P<{self.connector}: {self.children!r}>"


class PredicateList:
    """
    Ordered predicate fragments with OR tagging.

    A single plain fragment renders bare. As soon as there is more than one
    fragment, or any fragment is OR-tagged, every fragment is parenthesized
    and joined in insertion order by its connector.
    """

    __slots__ = ("_fragments",)

    def __init__(self, fragments: Iterable[Fragment] = ()):
        self._fragments: List[Fragment] = list(fragments)

    def add(
        self,
        condition: Any,
        params: Sequence[Any] = (),
        *,
        named: Mapping | None = None,
        connector: str = AND,
        negate: bool = False,
    ) -> Fragment:
        sql, values = build_condition(condition, params, named=named, negate=negate)
        fragment = Fragment(sql, tuple(values), connector)
        self._fragments.append(fragment)
        return fragment

    def append(self, fragment: Fragment) -> None:
        self._fragments.append(fragment)

    def extend(self, other: PredicateList) -> None:
        self._fragments.extend(other._fragments)

    def clear(self) -> None:
        self._fragments.clear()

    def copy(self) -> PredicateList:
        return PredicateList(self._fragments)

    @property
    def fragments(self) -> List[Fragment]:
        return list(self._fragments)

    @property
    def params(self) -> List[Any]:
        return [p for fragment in self._fragments for p in fragment.params]

    def sql(self) -> str:
        if not self._fragments:
            return ""
        grouped = len(self._fragments) > 1 or any(f.connector == OR for f in self._fragments)
        if not grouped:
            return self._fragments[0].sql

        out = f"({self._fragments[0].sql})"
        for fragment in self._fragments[1:]:
            out += f" {fragment.connector} ({fragment.sql})"
        return out

    def __bool__(self) -> bool:
        return bool(self._fragments)

    def __len__(self) -> int:
        return len(self._fragments)

    def __repr__(self) -> str:
        return f"PredicateList({self.sql()!r}, {self.params!r})"
