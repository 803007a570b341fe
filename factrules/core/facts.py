"""Fact: a named value provider consulted by leaf conditions."""

from __future__ import annotations

import inspect
import json
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable, Union

if TYPE_CHECKING:
    from factrules.core.almanac import Almanac

Provider = Callable[[dict[str, Any], "Almanac"], Any]
CacheKey = Union[str, tuple[str, str]]


def _stringify_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _stringify_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_stringify_keys(v) for v in value]
    return value


def cache_key(name: str, params: Mapping[str, Any] | None = None) -> CacheKey:
    """Build the memoization key for ``name`` with order-independent params.

    Unparameterized facts are keyed by their name; parameterized ones by a
    ``(name, encoded_params)`` pair, so no fact name can collide with another
    fact's parameterized key.
    """
    if not params:
        return name
    encoded = json.dumps(
        _stringify_keys(params), sort_keys=True, separators=(",", ":"), default=repr
    )
    return (name, encoded)


def describe_key(key: CacheKey) -> str:
    return key if isinstance(key, str) else f"{key[0]}{key[1]}"


class Fact:
    """Either a constant value or a ``(params, almanac) -> value`` provider.

    Providers may be plain functions or coroutine functions; a plain function
    returning an awaitable is awaited as well.
    """

    def __init__(self, name: str, value_or_provider: Any, cache: bool = True) -> None:
        if not name:
            raise ValueError("Fact name is required")
        self.name = name
        self.cache = cache
        if callable(value_or_provider):
            self.provider: Provider | None = value_or_provider
            self.value = None
        else:
            self.provider = None
            self.value = value_or_provider

    @classmethod
    def constant(cls, name: str, value: Any) -> Fact:
        """Build a constant fact even when ``value`` is itself callable."""
        fact = cls(name, None)
        fact.value = value
        return fact

    @property
    def is_constant(self) -> bool:
        return self.provider is None

    async def calculate(self, params: dict[str, Any], almanac: Almanac) -> Any:
        if self.provider is None:
            return self.value
        result = self.provider(params, almanac)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        kind = "constant" if self.is_constant else "provider"
        return f"Fact(name={self.name!r}, {kind}, cache={self.cache})"
