"""
Quarry Callbacks: per-model lifecycle hooks with conditions.

Callbacks are declared with decorators on model methods, or registered
afterwards with ``Model.register_callback``. Each phase keeps its callbacks
in registration order; subclasses inherit their parents' chains.

Usage:
    class Order(Model):
        table = "orders"

        @before_save
        def normalize(self):
            self.code = self.code.upper()

        @after_create(if_="is_priority")
        async def notify(self):
            await queue.push(self.id)

        @after_commit(on=("create", "update"))
        def bust_cache(self):
            cache.delete(f"order:{self.id}")
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

logger = logging.getLogger("quarry.models.callbacks")

__all__ = [
    "PHASES",
    "ACTIONS",
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
]

PHASES = (
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
)

ACTIONS = ("create", "update", "destroy")

Condition = Union[str, Callable[..., Any]]

# Attribute set on decorated methods; the metaclass collects it.
CALLBACK_MARKER = "__quarry_callbacks__"


def _as_list(value: Union[None, Condition, Sequence[Condition]]) -> List[Condition]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


async def _call(fn: Callable, *args: Any) -> Any:
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Callback:
    """One registered hook: a method (or method name) plus its conditions."""

    __slots__ = ("phase", "fn", "if_", "unless", "on")

    def __init__(
        self,
        phase: str,
        fn: Union[str, Callable],
        *,
        if_: Union[None, Condition, Sequence[Condition]] = None,
        unless: Union[None, Condition, Sequence[Condition]] = None,
        on: Union[None, str, Iterable[str]] = None,
    ):
        if phase not in PHASES:
            raise ValueError(f"Unknown callback phase '{phase}'")
        self.phase = phase
        self.fn = fn
        self.if_ = _as_list(if_)
        self.unless = _as_list(unless)
        if isinstance(on, str):
            on = (on,)
        self.on = frozenset(on) if on else None
        if self.on is not None and not self.on <= set(ACTIONS):
            raise ValueError(f"on= must be a subset of {ACTIONS}, got {sorted(self.on)}")

    @property
    def name(self) -> str:
        if isinstance(self.fn, str):
            return self.fn
        return getattr(self.fn, "__name__", repr(self.fn))

    async def _check(self, record: Any, condition: Condition) -> bool:
        if isinstance(condition, str):
            attr = getattr(record, condition)
            value = await _call(attr) if callable(attr) else attr
        else:
            value = await _call(condition, record)
        return bool(value)

    async def applies(self, record: Any, action: str) -> bool:
        if self.on is not None and action not in self.on:
            return False
        for condition in self.if_:
            if not await self._check(record, condition):
                return False
        for condition in self.unless:
            if await self._check(record, condition):
                return False
        return True

    async def invoke(self, record: Any) -> Any:
        if isinstance(self.fn, str):
            return await _call(getattr(record, self.fn))
        return await _call(self.fn, record)

    def __repr__(self) -> str:
        return f"<Callback {self.phase}: {self.name}>"


class CallbackChain:
    """Ordered callbacks per phase for one model class."""

    def __init__(self, parent: Optional[CallbackChain] = None):
        self._chains: Dict[str, List[Callback]] = {phase: [] for phase in PHASES}
        if parent is not None:
            for phase, callbacks in parent._chains.items():
                self._chains[phase].extend(callbacks)

    def add(self, callback: Callback) -> None:
        self._chains[callback.phase].append(callback)

    def get(self, phase: str) -> List[Callback]:
        return list(self._chains[phase])

    async def run(self, phase: str, record: Any, action: str) -> None:
        """Run every applicable callback of ``phase``; errors propagate."""
        for callback in self._chains[phase]:
            if await callback.applies(record, action):
                await callback.invoke(record)

    async def run_quietly(self, phase: str, record: Any, action: str) -> None:
        """Run ``phase`` after the outcome is final; errors are logged."""
        for callback in self._chains[phase]:
            try:
                if await callback.applies(record, action):
                    await callback.invoke(record)
            except Exception as exc:
                logger.error(
                    f"{phase} callback {callback.name} on {type(record).__name__} "
                    f"raised {exc.__class__.__name__}: {exc}"
                )

    def __len__(self) -> int:
        return sum(len(callbacks) for callbacks in self._chains.values())


def _phase_decorator(phase: str):
    def decorator(
        fn: Optional[Callable] = None,
        *,
        if_: Union[None, Condition, Sequence[Condition]] = None,
        unless: Union[None, Condition, Sequence[Condition]] = None,
        on: Union[None, str, Iterable[str]] = None,
    ):
        def _mark(method: Callable) -> Callable:
            callback = Callback(phase, method, if_=if_, unless=unless, on=on)
            marks = list(getattr(method, CALLBACK_MARKER, []))
            marks.append(callback)
            setattr(method, CALLBACK_MARKER, marks)
            return method

        # Bare @before_save
        if fn is not None:
            return _mark(fn)
        return _mark

    decorator.__name__ = phase
    decorator.__doc__ = f"Register the decorated method as a ``{phase}`` callback."
    return decorator


before_validation = _phase_decorator("before_validation")
after_validation = _phase_decorator("after_validation")
before_save = _phase_decorator("before_save")
after_save = _phase_decorator("after_save")
before_create = _phase_decorator("before_create")
after_create = _phase_decorator("after_create")
before_update = _phase_decorator("before_update")
after_update = _phase_decorator("after_update")
before_destroy = _phase_decorator("before_destroy")
after_destroy = _phase_decorator("after_destroy")
after_commit = _phase_decorator("after_commit")
after_rollback = _phase_decorator("after_rollback")
