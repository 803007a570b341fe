"""Rule: a condition tree bound to a priority and an event."""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError

from factrules.core.conditions import parse_condition, to_document
from factrules.core.errors import MalformedConditionError, RuleEvaluationError
from factrules.core.evaluator import ConditionEvaluator
from factrules.core.models import Condition, Event, Outcome, RuleResult

if TYPE_CHECKING:
    from factrules.core.almanac import Almanac

logger = logging.getLogger(__name__)

Callback = Callable[[Event, "Almanac", RuleResult], Any]

_RULE_KEYS = {"conditions", "event", "priority", "name"}


class Rule:
    """A unit of evaluation.

    ``priority`` defaults to 1; higher priorities run in earlier segments.
    ``on_success`` / ``on_failure`` receive ``(event, almanac, rule_result)``
    and may be coroutine functions.
    """

    def __init__(
        self,
        conditions: Mapping[str, Any] | Condition,
        event: Mapping[str, Any] | Event,
        priority: int = 1,
        name: str | None = None,
        on_success: Callback | None = None,
        on_failure: Callback | None = None,
    ) -> None:
        if isinstance(priority, bool) or not isinstance(priority, int) or priority < 1:
            raise ValueError(f"Rule priority must be a positive integer, got {priority!r}")
        self.conditions: Condition = parse_condition(conditions)
        self.event = _parse_event(event)
        self.priority = priority
        self.name = name or self.event.type
        self.on_success = on_success
        self.on_failure = on_failure

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], **callbacks: Callback) -> Rule:
        """Build a rule from a wire rule definition."""
        if not isinstance(data, Mapping):
            raise ValueError(f"Rule definition must be a mapping, got {type(data).__name__}")
        if "conditions" not in data:
            raise MalformedConditionError("Rule definition is missing 'conditions'")
        if "event" not in data:
            raise ValueError("Rule definition is missing 'event'")
        unknown = set(data) - _RULE_KEYS
        if unknown:
            raise ValueError(f"Unknown rule keys: {sorted(unknown)}")
        return cls(
            conditions=data["conditions"],
            event=data["event"],
            priority=data.get("priority", 1),
            name=data.get("name"),
            **callbacks,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "priority": self.priority,
            "conditions": to_document(self.conditions),
            "event": self.event.model_dump(),
        }

    async def evaluate(
        self, almanac: Almanac, evaluator: ConditionEvaluator | None = None
    ) -> RuleResult:
        """Evaluate the condition tree. Never raises for runtime failures.

        Anything that aborts evaluation is recorded as an ``ERRORED`` result
        carrying a ``RuleEvaluationError``.
        """
        evaluator = evaluator or ConditionEvaluator()
        start = time.monotonic()
        try:
            trace = await evaluator.trace(self.conditions, almanac)
        except Exception as exc:
            logger.warning("Rule %s errored: %s", self.name, exc)
            return self._result(
                Outcome.ERRORED, start, error=RuleEvaluationError(self.name, exc)
            )
        outcome = Outcome.PASSED if trace.result else Outcome.FAILED
        return self._result(outcome, start, trace=trace)

    def _result(self, outcome: Outcome, start: float, **kwargs: Any) -> RuleResult:
        return RuleResult(
            rule_name=self.name,
            priority=self.priority,
            outcome=outcome,
            event=self.event.model_copy(deep=True),
            duration_ms=(time.monotonic() - start) * 1000,
            **kwargs,
        )

    async def run_callback(self, result: RuleResult, almanac: Almanac) -> None:
        """Invoke ``on_success`` or ``on_failure`` for a settled result."""
        match result.outcome:
            case Outcome.PASSED:
                callback = self.on_success
            case Outcome.FAILED:
                callback = self.on_failure
            case _:
                return
        if callback is None:
            return
        outcome = callback(result.event, almanac, result)
        if inspect.isawaitable(outcome):
            await outcome

    def __repr__(self) -> str:
        return f"Rule(name={self.name!r}, priority={self.priority})"


def _parse_event(event: Mapping[str, Any] | Event) -> Event:
    if isinstance(event, Event):
        return event
    try:
        return Event.model_validate(event)
    except ValidationError as exc:
        raise ValueError(f"Invalid rule event: {exc}") from exc
