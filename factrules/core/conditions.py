"""Condition documents: parsing, structural validation, and traversal.

A condition document is either a leaf::

    {"fact": "age", "operator": "lessThan", "value": 65, "params": {...}, "path": "$.x"}

or exactly one of ``{"all": [...]}``, ``{"any": [...]}``, ``{"not": {...}}``,
or a reference to a shared condition, ``{"condition": "name"}``. A leaf value
of the form ``{"fact": ..., "params"?: ..., "path"?: ...}`` is read from the
almanac instead of compared literally.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from factrules.core.errors import MalformedConditionError
from factrules.core.models import (
    All,
    AnyOf,
    Condition,
    ConditionReference,
    FactReference,
    Leaf,
    Not,
)

COMBINATOR_KEYS = ("all", "any", "not", "condition")
_FACT_REFERENCE_KEYS = {"fact", "params", "path"}
_NODE_TYPES = (Leaf, All, AnyOf, Not, ConditionReference)


def parse_condition(document: Any, location: str = "conditions") -> Condition:
    """Convert a condition document into a condition node.

    Raises ``MalformedConditionError`` naming the offending location for any
    structural violation. Already-parsed nodes are returned unchanged.
    """
    if isinstance(document, _NODE_TYPES):
        return document
    if not isinstance(document, Mapping):
        raise MalformedConditionError(
            f"{location}: expected a mapping, got {type(document).__name__}"
        )

    present = [key for key in COMBINATOR_KEYS if key in document]
    if len(present) > 1:
        raise MalformedConditionError(
            f"{location}: node has more than one of {present}"
        )
    if present and "fact" in document:
        raise MalformedConditionError(
            f"{location}: node mixes '{present[0]}' with a leaf 'fact'"
        )

    if not present:
        return _parse_leaf(document, location)

    kind = present[0]
    body = document[kind]

    if kind == "condition":
        if not isinstance(body, str) or not body:
            raise MalformedConditionError(
                f"{location}: 'condition' must be a non-empty string"
            )
        return ConditionReference(name=body)

    if kind == "not":
        if isinstance(body, list):
            if len(body) != 1:
                raise MalformedConditionError(
                    f"{location}.not: expected exactly one child, got {len(body)}"
                )
            body = body[0]
        return Not(child=parse_condition(body, f"{location}.not"))

    if not isinstance(body, list):
        raise MalformedConditionError(
            f"{location}.{kind}: expected a list, got {type(body).__name__}"
        )
    if not body:
        raise MalformedConditionError(f"{location}.{kind}: needs at least one child")
    children = [
        parse_condition(child, f"{location}.{kind}[{i}]") for i, child in enumerate(body)
    ]
    if kind == "all":
        return All(children=children)
    return AnyOf(children=children)


def _parse_leaf(document: Mapping[str, Any], location: str) -> Leaf:
    for key in ("fact", "operator", "value"):
        if key not in document:
            raise MalformedConditionError(f"{location}: leaf is missing '{key}'")

    fact = document["fact"]
    operator = document["operator"]
    if not isinstance(fact, str) or not fact:
        raise MalformedConditionError(f"{location}: 'fact' must be a non-empty string")
    if not isinstance(operator, str) or not operator:
        raise MalformedConditionError(f"{location}: 'operator' must be a non-empty string")

    params = document.get("params")
    if params is not None and not isinstance(params, Mapping):
        raise MalformedConditionError(f"{location}: 'params' must be a mapping")
    path = document.get("path")
    if path is not None and not isinstance(path, str):
        raise MalformedConditionError(f"{location}: 'path' must be a string")

    return Leaf(
        fact=fact,
        operator=operator,
        value=_parse_value(document["value"], location),
        params=dict(params) if params is not None else None,
        path=path,
    )


def _parse_value(value: Any, location: str) -> Any:
    if isinstance(value, Mapping) and "fact" in value and set(value) <= _FACT_REFERENCE_KEYS:
        try:
            return FactReference.model_validate(dict(value))
        except ValidationError as exc:
            raise MalformedConditionError(f"{location}.value: {exc}") from exc
    return value


def to_document(node: Condition) -> dict[str, Any]:
    """Inverse of ``parse_condition``."""
    match node:
        case Leaf():
            doc: dict[str, Any] = {"fact": node.fact, "operator": node.operator}
            value = node.value
            if isinstance(value, FactReference):
                value = value.model_dump(exclude_none=True)
            doc["value"] = value
            if node.params is not None:
                doc["params"] = dict(node.params)
            if node.path is not None:
                doc["path"] = node.path
            return doc
        case All():
            return {"all": [to_document(child) for child in node.children]}
        case AnyOf():
            return {"any": [to_document(child) for child in node.children]}
        case Not():
            return {"not": to_document(node.child)}
        case ConditionReference():
            return {"condition": node.name}
    raise MalformedConditionError(f"Not a condition node: {node!r}")


def walk(node: Condition) -> Iterator[BaseModel]:
    """Yield every node of the tree, depth first. References are not followed."""
    yield node
    match node:
        case All() | AnyOf():
            for child in node.children:
                yield from walk(child)
        case Not():
            yield from walk(node.child)


def operators_in(node: Condition) -> set[str]:
    return {n.operator for n in walk(node) if isinstance(n, Leaf)}


def references_in(node: Condition) -> set[str]:
    return {n.name for n in walk(node) if isinstance(n, ConditionReference)}
