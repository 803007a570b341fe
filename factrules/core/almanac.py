"""Almanac: per-run fact resolution with memoization and in-flight joining."""

from __future__ import annotations

import asyncio
import contextvars
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from factrules.core.errors import (
    FactResolutionError,
    FactRulesError,
    FactTimeoutError,
    UndefinedFactError,
)
from factrules.core.facts import CacheKey, Fact, cache_key, describe_key

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()

# Keys being computed along the current resolution path, used to turn a
# self-referencing provider into an error instead of a deadlock.
_resolving: contextvars.ContextVar[tuple[CacheKey, ...]] = contextvars.ContextVar(
    "factrules_resolving", default=()
)

_PATH_TOKEN = re.compile(r"\.([^.\[\]]+)|\[(-?\d+)\]|\[['\"]([^'\"]*)['\"]\]")


def select_path(value: Any, path: str | None) -> Any:
    """Select into ``value`` with a JSONPath-like selector.

    Supports ``$.a.b``, ``a.b``, ``$.items[0]`` and ``$['odd key']``. Any
    segment that does not exist selects ``None``.
    """
    if not path or path == "$":
        return value
    selector = path[1:] if path.startswith("$") else path
    if selector and selector[0] not in ".[":
        selector = "." + selector

    current = value
    pos = 0
    while pos < len(selector):
        match = _PATH_TOKEN.match(selector, pos)
        if match is None:
            raise ValueError(f"Invalid path selector: {path!r}")
        pos = match.end()
        attr, index, quoted = match.groups()
        key = attr if attr is not None else quoted
        if current is None:
            return None
        if index is not None:
            if isinstance(current, (list, tuple)) and -len(current) <= int(index) < len(current):
                current = current[int(index)]
            else:
                return None
        elif isinstance(current, Mapping):
            current = current.get(key)
        else:
            current = getattr(current, key, None)
    return current


class Almanac:
    """Owns the fact set and value cache for exactly one engine run.

    Every ``(name, params)`` key resolves to at most one in-flight
    computation; concurrent callers join it. Settled values of cacheable
    facts are returned unchanged for the rest of the run unless the fact is
    replaced through ``add_runtime_fact`` / ``add_fact``.
    """

    def __init__(
        self,
        facts: Iterable[Fact] = (),
        allow_undefined_facts: bool = False,
        fact_timeout: float | None = None,
    ) -> None:
        self.allow_undefined_facts = allow_undefined_facts
        self.fact_timeout = fact_timeout
        self._facts: dict[str, Fact] = {}
        self._slots: dict[CacheKey, asyncio.Future[Any]] = {}
        self._keys_by_fact: dict[str, set[CacheKey]] = {}
        for fact in facts:
            self._facts[fact.name] = fact

    # --- Registration ---

    def add_fact(self, fact: Fact | str, value_or_provider: Any = None, cache: bool = True) -> Fact:
        """Register or replace a fact, invalidating its cached values."""
        if not isinstance(fact, Fact):
            fact = Fact(fact, value_or_provider, cache=cache)
        self._invalidate(fact.name)
        self._facts[fact.name] = fact
        return fact

    def add_runtime_fact(self, name: str, value: Any) -> Fact:
        """Register a constant fact, overriding any existing provider."""
        logger.debug("Runtime fact %s set", name)
        return self.add_fact(Fact.constant(name, value))

    def remove_fact(self, name: str) -> bool:
        self._invalidate(name)
        return self._facts.pop(name, None) is not None

    def get_fact(self, name: str) -> Fact | None:
        return self._facts.get(name)

    def facts(self) -> dict[str, Fact]:
        return dict(self._facts)

    def _invalidate(self, name: str) -> None:
        for key in self._keys_by_fact.pop(name, set()):
            self._slots.pop(key, None)

    # --- Resolution ---

    async def resolve(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        default: Any = MISSING,
    ) -> Any:
        fact = self._facts.get(name)
        if fact is None:
            if default is not MISSING:
                return default
            if self.allow_undefined_facts:
                return None
            raise UndefinedFactError(name)

        if fact.is_constant:
            return fact.value

        key = cache_key(name, params)
        chain = _resolving.get()
        if key in chain:
            path = " -> ".join(describe_key(k) for k in chain + (key,))
            raise FactResolutionError(name, message=f"Cyclic fact dependency: {path}")

        slot = self._slots.get(key)
        if slot is None:
            slot = asyncio.ensure_future(self._compute(fact, dict(params or {}), key))
            self._slots[key] = slot
            self._keys_by_fact.setdefault(name, set()).add(key)
            slot.add_done_callback(lambda done: self._settled(fact, key, done))
        return await asyncio.shield(slot)

    async def fact_value(
        self,
        name: str,
        params: dict[str, Any] | None = None,
        path: str | None = None,
        default: Any = MISSING,
    ) -> Any:
        """Resolve a fact and apply an optional path selector to its value."""
        value = await self.resolve(name, params, default=default)
        return select_path(value, path)

    async def _compute(self, fact: Fact, params: dict[str, Any], key: CacheKey) -> Any:
        _resolving.set(_resolving.get() + (key,))
        try:
            if self.fact_timeout is None:
                return await fact.calculate(params, self)
            try:
                return await asyncio.wait_for(fact.calculate(params, self), self.fact_timeout)
            except asyncio.TimeoutError as exc:
                raise FactTimeoutError(fact.name, self.fact_timeout) from exc
        except FactRulesError:
            raise
        except Exception as exc:
            raise FactResolutionError(fact.name, exc) from exc

    def _settled(self, fact: Fact, key: CacheKey, done: asyncio.Future[Any]) -> None:
        if self._slots.get(key) is not done:
            return
        failed = done.cancelled() or done.exception() is not None
        if failed or not fact.cache:
            self._slots.pop(key, None)
            keys = self._keys_by_fact.get(fact.name)
            if keys is not None:
                keys.discard(key)

    # --- Inspection ---

    def cached_values(self) -> dict[CacheKey, Any]:
        """Settled values by cache key. Pending and failed slots are omitted."""
        values: dict[CacheKey, Any] = {}
        for key, slot in self._slots.items():
            if slot.done() and not slot.cancelled() and slot.exception() is None:
                values[key] = slot.result()
        for name, fact in self._facts.items():
            if fact.is_constant:
                values[name] = fact.value
        return values

