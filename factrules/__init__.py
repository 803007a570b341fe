"""factrules: declarative rules engine over sync, async and runtime facts."""

from factrules.core.almanac import Almanac
from factrules.core.engine import Engine, EngineStatus
from factrules.core.errors import (
    DuplicateOperatorError,
    EngineStateError,
    FactResolutionError,
    FactRulesError,
    FactTimeoutError,
    MalformedConditionError,
    RuleEvaluationError,
    UndefinedFactError,
    UnknownOperatorError,
)
from factrules.core.facts import Fact
from factrules.core.models import Event, Outcome, RuleResult, RunSummary
from factrules.core.operators import Operator, OperatorRegistry
from factrules.core.packs import RulePack
from factrules.core.rule import Rule

__version__ = "0.1.0"

__all__ = [
    "Engine",
    "EngineStatus",
    "Rule",
    "Fact",
    "Almanac",
    "Operator",
    "OperatorRegistry",
    "RulePack",
    "Event",
    "Outcome",
    "RuleResult",
    "RunSummary",
    "FactRulesError",
    "DuplicateOperatorError",
    "UnknownOperatorError",
    "UndefinedFactError",
    "MalformedConditionError",
    "FactResolutionError",
    "FactTimeoutError",
    "RuleEvaluationError",
    "EngineStateError",
]
