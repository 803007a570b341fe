"""Operator registry: named binary predicates used by leaf conditions."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from numbers import Real
from typing import Any, Callable

from factrules.core.errors import DuplicateOperatorError, UnknownOperatorError

Predicate = Callable[[Any, Any], bool]


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def _is_collection(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, dict))


@dataclass(frozen=True)
class Operator:
    """A named predicate, optionally guarded by a fact-value validator.

    When ``validator`` rejects the fact value the operator evaluates to
    ``False`` without calling ``predicate``.
    """

    name: str
    predicate: Predicate
    validator: Callable[[Any], bool] | None = None

    def evaluate(self, fact_value: Any, compare_to: Any) -> bool:
        if self.validator is not None and not self.validator(fact_value):
            return False
        return bool(self.predicate(fact_value, compare_to))

    __call__ = evaluate


def _numeric(predicate: Predicate) -> Predicate:
    def guarded(fact_value: Any, compare_to: Any) -> bool:
        if not (_is_number(fact_value) and _is_number(compare_to)):
            return False
        return predicate(fact_value, compare_to)

    return guarded


def _equal(fact_value: Any, compare_to: Any) -> bool:
    # bool is not a number here either: True does not equal 1.
    if isinstance(fact_value, bool) != isinstance(compare_to, bool) and (
        _is_number(fact_value) or _is_number(compare_to)
    ):
        return False
    return fact_value == compare_to


def _membership(fact_value: Any, compare_to: Any) -> bool:
    if not _is_collection(compare_to):
        return False
    return any(_equal(fact_value, item) for item in compare_to)


def _not_membership(fact_value: Any, compare_to: Any) -> bool:
    if not _is_collection(compare_to):
        return False
    return not any(_equal(fact_value, item) for item in compare_to)


def _contains(fact_value: Any, compare_to: Any) -> bool:
    return any(_equal(item, compare_to) for item in fact_value)


def _does_not_contain(fact_value: Any, compare_to: Any) -> bool:
    return not any(_equal(item, compare_to) for item in fact_value)


DEFAULT_OPERATORS: list[Operator] = [
    Operator("equal", _equal),
    Operator("notEqual", lambda a, b: not _equal(a, b)),
    Operator("in", _membership),
    Operator("notIn", _not_membership),
    Operator("contains", _contains, validator=_is_collection),
    Operator("doesNotContain", _does_not_contain, validator=_is_collection),
    Operator("lessThan", _numeric(lambda a, b: a < b)),
    Operator("lessThanInclusive", _numeric(lambda a, b: a <= b)),
    Operator("greaterThan", _numeric(lambda a, b: a > b)),
    Operator("greaterThanInclusive", _numeric(lambda a, b: a >= b)),
]


class OperatorRegistry:
    """Maps operator names to predicates. Read-only while a run is in progress."""

    def __init__(self, operators: Iterable[Operator] | None = None, strict: bool = False) -> None:
        self.strict = strict
        self._operators: dict[str, Operator] = {}
        for op in DEFAULT_OPERATORS if operators is None else operators:
            self._operators[op.name] = op

    def register(
        self,
        name: str | Operator,
        predicate: Predicate | None = None,
        strict: bool | None = None,
        validator: Callable[[Any], bool] | None = None,
    ) -> Operator:
        """Add or override an operator.

        Accepts either an ``Operator`` or a name plus predicate. Overwriting an
        existing name raises ``DuplicateOperatorError`` in strict mode and is
        silent otherwise.
        """
        if isinstance(name, Operator):
            op = name
        else:
            if predicate is None:
                raise ValueError(f"Operator '{name}' needs a predicate")
            op = Operator(name, predicate, validator)

        strict = self.strict if strict is None else strict
        if strict and op.name in self._operators:
            raise DuplicateOperatorError(op.name)
        self._operators[op.name] = op
        return op

    def remove(self, name: str) -> bool:
        return self._operators.pop(name, None) is not None

    def resolve(self, name: str) -> Operator:
        op = self._operators.get(name)
        if op is None:
            raise UnknownOperatorError(name)
        return op

    def names(self) -> list[str]:
        return sorted(self._operators)

    def copy(self) -> OperatorRegistry:
        return OperatorRegistry(self._operators.values(), strict=self.strict)

    def __contains__(self, name: object) -> bool:
        return name in self._operators

    def __len__(self) -> int:
        return len(self._operators)
