"""Condition evaluator: walks a condition tree against an almanac."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

from factrules.core.concurrency import first_error, settle_all
from factrules.core.errors import MalformedConditionError
from factrules.core.models import (
    All,
    AnyOf,
    Condition,
    ConditionReference,
    ConditionTrace,
    FactReference,
    Leaf,
    Not,
)
from factrules.core.operators import OperatorRegistry

if TYPE_CHECKING:
    from factrules.core.almanac import Almanac


class ConditionEvaluator:
    """Evaluates condition nodes using an operator registry.

    ``all`` / ``any`` start every child before awaiting any of them and
    decide only once all children have settled, so each fact referenced in
    the subtree is resolved exactly once through the almanac whatever the
    outcome of sibling branches.
    """

    def __init__(
        self,
        operators: OperatorRegistry | None = None,
        conditions: Mapping[str, Condition] | None = None,
        allow_undefined_conditions: bool = False,
    ) -> None:
        self.operators = operators if operators is not None else OperatorRegistry()
        self.conditions = conditions if conditions is not None else {}
        self.allow_undefined_conditions = allow_undefined_conditions

    async def evaluate(self, node: Condition, almanac: Almanac) -> bool:
        return (await self.trace(node, almanac)).result

    async def trace(
        self, node: Condition, almanac: Almanac, _references: tuple[str, ...] = ()
    ) -> ConditionTrace:
        """Evaluate ``node`` and return the annotated tree."""
        match node:
            case Leaf():
                return await self._leaf(node, almanac)
            case All():
                children = await self._children("all", node.children, almanac, _references)
                return ConditionTrace(
                    kind="all", result=all(c.result for c in children), children=children
                )
            case AnyOf():
                children = await self._children("any", node.children, almanac, _references)
                return ConditionTrace(
                    kind="any", result=any(c.result for c in children), children=children
                )
            case Not():
                child = await self.trace(node.child, almanac, _references)
                return ConditionTrace(kind="not", result=not child.result, children=[child])
            case ConditionReference():
                return await self._reference(node, almanac, _references)
        raise MalformedConditionError(f"Not a condition node: {node!r}")

    async def _leaf(self, node: Leaf, almanac: Almanac) -> ConditionTrace:
        op = self.operators.resolve(node.operator)
        fact_value = await almanac.fact_value(node.fact, node.params, node.path)
        compare_to = node.value
        if isinstance(compare_to, FactReference):
            compare_to = await almanac.fact_value(
                compare_to.fact, compare_to.params, compare_to.path
            )
        return ConditionTrace(
            kind="leaf",
            result=op.evaluate(fact_value, compare_to),
            fact=node.fact,
            operator=node.operator,
            value=compare_to,
            params=node.params,
            path=node.path,
            fact_value=fact_value,
        )

    async def _children(
        self,
        kind: str,
        children: Sequence[Condition],
        almanac: Almanac,
        references: tuple[str, ...],
    ) -> list[ConditionTrace]:
        if not children:
            raise MalformedConditionError(f"'{kind}' needs at least one child")
        results = await settle_all(self.trace(child, almanac, references) for child in children)
        error = first_error(results)
        if error is not None:
            raise error
        return results  # type: ignore[return-value]

    async def _reference(
        self, node: ConditionReference, almanac: Almanac, references: tuple[str, ...]
    ) -> ConditionTrace:
        if node.name in references:
            raise MalformedConditionError(
                f"Circular condition reference: {' -> '.join(references + (node.name,))}"
            )
        target = self.conditions.get(node.name)
        if target is None:
            if self.allow_undefined_conditions:
                return ConditionTrace(kind="reference", name=node.name, result=False)
            raise MalformedConditionError(f"Undefined condition reference: {node.name}")
        child = await self.trace(target, almanac, references + (node.name,))
        return ConditionTrace(kind="reference", name=node.name, result=child.result, children=[child])
