"""Main factrules engine: priority-segmented scheduler over a rule set."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from factrules.core.almanac import Almanac
from factrules.core.concurrency import first_error, settle_all
from factrules.core.conditions import operators_in, parse_condition, references_in
from factrules.core.errors import (
    EngineStateError,
    MalformedConditionError,
    RuleEvaluationError,
    UnknownOperatorError,
)
from factrules.core.evaluator import ConditionEvaluator
from factrules.core.events import EventBus, Handler
from factrules.core.facts import Fact
from factrules.core.models import (
    Condition,
    EngineOptions,
    Event,
    Outcome,
    RuleResult,
    RunSummary,
)
from factrules.core.operators import Operator, OperatorRegistry, Predicate
from factrules.core.packs import RulePack, get_pack
from factrules.core.rule import Callback, Rule

logger = logging.getLogger(__name__)

LIFECYCLE_EVENTS = frozenset({"success", "failure", "error", "end"})
_FACT_REFERENCE_KEYS = {"fact", "params", "path"}


class EngineStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    FINISHED = "finished"


class Engine:
    """Entry point: register rules, facts and operators, then ``run()``.

    Each run gets a fresh ``Almanac`` seeded with the engine's facts plus the
    facts passed to ``run``. Rules are grouped by priority; segments run
    strictly in descending priority order and the rules inside a segment run
    concurrently. A segment, including every rule callback and listener, has
    settled before the next one starts. Rules, shared conditions and
    operators cannot change while any run is in progress.
    """

    def __init__(
        self,
        rules: Iterable[Rule | Mapping[str, Any]] | None = None,
        operators: Iterable[Operator] | None = None,
        **options: Any,
    ):
        self.options = EngineOptions(**options)
        self.operators = OperatorRegistry(strict=self.options.strict_operators)
        for op in operators or []:
            self.operators.register(op)
        self.event_bus = EventBus()
        self.rules: list[Rule] = []
        self.conditions: dict[str, Condition] = {}
        self.facts: dict[str, Fact] = {}
        self.evaluator = ConditionEvaluator(
            self.operators,
            self.conditions,
            allow_undefined_conditions=self.options.allow_undefined_conditions,
        )
        self.status = EngineStatus.READY
        # Almanac of the most recently finished run.
        self.almanac: Almanac | None = None
        self._active_runs = 0

        for rule in rules or []:
            self.add_rule(rule)

    # --- Rules ---

    def add_rule(self, rule: Rule | Mapping[str, Any], **callbacks: Callback) -> Rule:
        """Register a rule, validating it before it can take part in a run."""
        self._ensure_idle("add a rule")
        if not isinstance(rule, Rule):
            rule = Rule.from_dict(rule, **callbacks)
        self._validate(rule.conditions, f"rule '{rule.name}'")
        self.rules.append(rule)
        return rule

    def remove_rule(self, rule: Rule | str) -> bool:
        self._ensure_idle("remove a rule")
        before = len(self.rules)
        if isinstance(rule, Rule):
            self.rules = [r for r in self.rules if r is not rule]
        else:
            self.rules = [r for r in self.rules if r.name != rule]
        return len(self.rules) != before

    def get_rule(self, name: str) -> Rule | None:
        for rule in self.rules:
            if rule.name == name:
                return rule
        return None

    # --- Shared conditions ---

    def set_condition(self, name: str, conditions: Mapping[str, Any] | Condition) -> Condition:
        """Register a named condition usable as ``{"condition": name}``."""
        return self.set_conditions({name: conditions})[name]

    def set_conditions(
        self, conditions: Mapping[str, Mapping[str, Any] | Condition]
    ) -> dict[str, Condition]:
        """Register several named conditions at once.

        References are checked against the existing conditions plus the whole
        batch, so a condition may refer to one declared after it. Nothing is
        registered if any of them is invalid or the batch closes a cycle.
        """
        self._ensure_idle("set a condition")
        parsed = {
            name: parse_condition(document, location=f"condition '{name}'")
            for name, document in conditions.items()
        }
        known = {**self.conditions, **parsed}
        for name, node in parsed.items():
            self._validate(node, f"condition '{name}'", self_name=name, known=known)
        for name in parsed:
            _check_cycles(name, known)
        self.conditions.update(parsed)
        return parsed

    def remove_condition(self, name: str) -> bool:
        self._ensure_idle("remove a condition")
        return self.conditions.pop(name, None) is not None

    # --- Facts ---

    def add_fact(self, fact: Fact | str, value_or_provider: Any = None, cache: bool = True) -> Fact:
        """Register a fact available to every run of this engine."""
        if not isinstance(fact, Fact):
            fact = Fact(fact, value_or_provider, cache=cache)
        self.facts[fact.name] = fact
        return fact

    def remove_fact(self, name: str) -> bool:
        return self.facts.pop(name, None) is not None

    # --- Operators ---

    def add_operator(
        self,
        name: str | Operator,
        predicate: Predicate | None = None,
        validator: Any = None,
    ) -> Operator:
        self._ensure_idle("add an operator")
        return self.operators.register(name, predicate, validator=validator)

    def remove_operator(self, name: str) -> bool:
        self._ensure_idle("remove an operator")
        return self.operators.remove(name)

    # --- Packs ---

    def load_pack(self, pack: str | RulePack) -> None:
        if isinstance(pack, str):
            pack = get_pack(pack)
        for name, value in pack.facts.items():
            self.add_fact(value if isinstance(value, Fact) else Fact(name, value))
        if pack.conditions:
            self.set_conditions(pack.conditions)
        for rule in pack.build_rules():
            self.add_rule(rule)
        logger.debug("Loaded rule pack %s (%d rules)", pack.name, len(pack.rules))

    # --- Listeners ---

    def on(self, event_type: str, handler: Handler) -> Engine:
        self.event_bus.on(event_type, handler)
        return self

    def off(self, event_type: str, handler: Handler | None = None) -> bool:
        return self.event_bus.off(event_type, handler)

    # --- Running ---

    def segments(self) -> list[tuple[int, list[Rule]]]:
        """Rules grouped by priority, highest priority first."""
        by_priority: dict[int, list[Rule]] = {}
        for rule in self.rules:
            by_priority.setdefault(rule.priority, []).append(rule)
        return sorted(by_priority.items(), key=lambda item: item[0], reverse=True)

    async def run(self, facts: Mapping[str, Any] | None = None) -> RunSummary:
        """Evaluate every rule once and return the full outcome list.

        Per-rule failures never abort the run: they show up as ``ERRORED``
        results and are emitted on the ``error`` channel afterwards. Runs may
        overlap; each has its own almanac, returned on the summary.
        """
        self._active_runs += 1
        self.status = EngineStatus.RUNNING
        start = time.monotonic()
        try:
            almanac = self._create_almanac(facts or {})
            results: list[RuleResult] = []
            segments = self.segments()
            logger.debug("Run started: %d rules in %d segments", len(self.rules), len(segments))
            for priority, rules in segments:
                logger.debug("Segment priority=%d (%d rules)", priority, len(rules))
                results.extend(await self._run_segment(rules, almanac))
        finally:
            self._active_runs -= 1
            if self._active_runs == 0:
                self.status = EngineStatus.FINISHED

        self.almanac = almanac
        summary = RunSummary(
            results=results,
            almanac=almanac,
            duration_ms=(time.monotonic() - start) * 1000,
        )
        logger.debug(
            "Run finished: passed=%d failed=%d errored=%d",
            len(summary.passed),
            len(summary.failed),
            len(summary.errored),
        )
        await self._report_errors(summary)
        try:
            await self.event_bus.emit("end", summary)
        except Exception as exc:
            logger.error("end listener failed: %s", exc)
        return summary

    def run_sync(self, facts: Mapping[str, Any] | None = None) -> RunSummary:
        """Synchronous wrapper for run()."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop and loop.is_running():
            import concurrent.futures

            with concurrent.futures.ThreadPoolExecutor() as pool:
                future = pool.submit(asyncio.run, self.run(facts))
                return future.result()
        return asyncio.run(self.run(facts))

    def _create_almanac(self, facts: Mapping[str, Any]) -> Almanac:
        almanac = Almanac(
            self.facts.values(),
            allow_undefined_facts=self.options.allow_undefined_facts,
            fact_timeout=self.options.fact_timeout,
        )
        for name, value in facts.items():
            if isinstance(value, Fact):
                almanac.add_fact(value)
            else:
                almanac.add_runtime_fact(name, value)
        return almanac

    async def _run_segment(self, rules: list[Rule], almanac: Almanac) -> list[RuleResult]:
        settled = await settle_all(self._run_rule(rule, almanac) for rule in rules)
        defect = first_error(settled)
        if defect is not None:
            raise defect
        return settled  # type: ignore[return-value]

    async def _run_rule(self, rule: Rule, almanac: Almanac) -> RuleResult:
        result = await rule.evaluate(almanac, self.evaluator)
        if result.outcome is Outcome.ERRORED:
            return result
        try:
            if self.options.replace_facts_in_event_params:
                result.event = await self._resolve_event_params(result.event, almanac)
            await rule.run_callback(result, almanac)
            await self._dispatch(result, almanac)
        except Exception as exc:
            logger.warning("Rule %s callback errored: %s", rule.name, exc)
            result = result.model_copy(
                update={
                    "outcome": Outcome.ERRORED,
                    "error": RuleEvaluationError(rule.name, exc),
                }
            )
        return result

    async def _dispatch(self, result: RuleResult, almanac: Almanac) -> None:
        event = result.event
        if result.outcome is Outcome.PASSED:
            await self.event_bus.emit("success", event, almanac, result)
            if event.type not in LIFECYCLE_EVENTS:
                await self.event_bus.emit(event.type, event, almanac, result)
        else:
            await self.event_bus.emit("failure", event, almanac, result)

    async def _resolve_event_params(self, event: Event, almanac: Almanac) -> Event:
        params: dict[str, Any] = {}
        for key, value in event.params.items():
            if isinstance(value, Mapping) and "fact" in value and set(value) <= _FACT_REFERENCE_KEYS:
                params[key] = await almanac.fact_value(
                    value["fact"], value.get("params"), value.get("path")
                )
            else:
                params[key] = value
        return event.model_copy(update={"params": params})

    async def _report_errors(self, summary: RunSummary) -> None:
        errored = summary.errored
        if not errored:
            return
        if self.event_bus.has_listeners("error"):
            for result in errored:
                try:
                    await self.event_bus.emit("error", result.error, result)
                except Exception as exc:
                    logger.error(
                        "error listener failed for rule %s: %s", result.rule_name, exc
                    )
            return
        for result in errored:
            logger.error("Unhandled rule error: %s", result.error)

    # --- Validation ---

    def _validate(
        self,
        node: Condition,
        location: str,
        self_name: str | None = None,
        known: Mapping[str, Condition] | None = None,
    ) -> None:
        known = self.conditions if known is None else known
        for name in operators_in(node):
            if name not in self.operators:
                raise UnknownOperatorError(name)
        if self.options.allow_undefined_conditions:
            return
        for name in references_in(node):
            if name == self_name:
                raise MalformedConditionError(f"{location}: references itself")
            if name not in known:
                raise MalformedConditionError(
                    f"{location}: undefined condition reference '{name}'"
                )

    def _ensure_idle(self, action: str) -> None:
        if self.status is EngineStatus.RUNNING:
            raise EngineStateError(f"Cannot {action} while the engine is running")


def _check_cycles(start: str, conditions: Mapping[str, Condition]) -> None:
    """Raise if following references from ``start`` ever revisits a condition."""

    def visit(name: str, path: tuple[str, ...]) -> None:
        if name in path:
            chain = " -> ".join(path + (name,))
            raise MalformedConditionError(f"condition '{start}': circular reference {chain}")
        node = conditions.get(name)
        if node is None:
            return
        for ref in sorted(references_in(node)):
            visit(ref, path + (name,))

    visit(start, ())
