"""Pydantic models for factrules."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from factrules.core.errors import RuleEvaluationError

# --- Condition nodes ---


class FactReference(BaseModel):
    """A comparison value that is itself read from the almanac."""

    model_config = ConfigDict(frozen=True)

    fact: str
    params: dict[str, Any] | None = None
    path: str | None = None


class Leaf(BaseModel):
    """Compare one fact value against a comparison value."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    fact: str
    operator: str
    value: Any = None
    params: dict[str, Any] | None = None
    path: str | None = None


class All(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["all"] = "all"
    children: list[Condition]


class AnyOf(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["any"] = "any"
    children: list[Condition]


class Not(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["not"] = "not"
    child: Condition


class ConditionReference(BaseModel):
    """Points at a shared condition registered on the engine by name."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["reference"] = "reference"
    name: str


Condition = Annotated[
    Union[Leaf, All, AnyOf, Not, ConditionReference],
    Field(discriminator="kind"),
]

All.model_rebuild()
AnyOf.model_rebuild()
Not.model_rebuild()


class ConditionTrace(BaseModel):
    """Evaluated condition tree, annotated with what each node observed."""

    kind: Literal["leaf", "all", "any", "not", "reference"]
    result: bool
    fact: str | None = None
    operator: str | None = None
    value: Any = None
    params: dict[str, Any] | None = None
    path: str | None = None
    fact_value: Any = None
    name: str | None = None
    children: list[ConditionTrace] = Field(default_factory=list)


# --- Rules and results ---


class Event(BaseModel):
    """Payload delivered to listeners when a rule settles."""

    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class Outcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"


class RuleResult(BaseModel):
    """Outcome of evaluating one rule during one run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    rule_name: str
    priority: int
    outcome: Outcome
    event: Event
    trace: ConditionTrace | None = None
    error: RuleEvaluationError | None = None
    duration_ms: float = 0.0

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED


class RunSummary(BaseModel):
    """Everything a run produced, in segment order."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    results: list[RuleResult] = Field(default_factory=list)
    almanac: Any = None
    duration_ms: float = 0.0

    def _with(self, outcome: Outcome) -> list[RuleResult]:
        return [r for r in self.results if r.outcome is outcome]

    @property
    def passed(self) -> list[RuleResult]:
        return self._with(Outcome.PASSED)

    @property
    def failed(self) -> list[RuleResult]:
        return self._with(Outcome.FAILED)

    @property
    def errored(self) -> list[RuleResult]:
        return self._with(Outcome.ERRORED)

    @property
    def events(self) -> list[Event]:
        return [r.event for r in self.passed]

    @property
    def failure_events(self) -> list[Event]:
        return [r.event for r in self.failed]

    @property
    def errors(self) -> list[RuleEvaluationError]:
        return [r.error for r in self.errored if r.error is not None]

    def result_for(self, rule_name: str) -> RuleResult | None:
        for result in self.results:
            if result.rule_name == rule_name:
                return result
        return None


# --- Configuration ---


class EngineOptions(BaseModel):
    """Keyword options accepted by ``Engine``."""

    model_config = ConfigDict(extra="forbid")

    allow_undefined_facts: bool = False
    allow_undefined_conditions: bool = False
    replace_facts_in_event_params: bool = False
    strict_operators: bool = False
    fact_timeout: float | None = Field(default=None, gt=0)

