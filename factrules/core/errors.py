"""Exception hierarchy for factrules."""

from __future__ import annotations


class FactRulesError(Exception):
    """Base class for every error raised by the engine."""


class DuplicateOperatorError(FactRulesError):
    def __init__(self, name: str):
        super().__init__(f"Operator already registered: {name}")
        self.name = name


class UnknownOperatorError(FactRulesError):
    def __init__(self, name: str):
        super().__init__(f"Unknown operator: {name}")
        self.name = name


class UndefinedFactError(FactRulesError):
    def __init__(self, name: str):
        super().__init__(f"Undefined fact: {name}")
        self.name = name


class MalformedConditionError(FactRulesError):
    """Structural violation of the condition document shape."""


class FactResolutionError(FactRulesError):
    """A fact provider raised while computing its value."""

    def __init__(self, name: str, cause: BaseException | None = None, message: str | None = None):
        super().__init__(message or f"Fact '{name}' failed to resolve: {cause!r}")
        self.name = name
        self.cause = cause


class FactTimeoutError(FactResolutionError):
    def __init__(self, name: str, timeout: float):
        super().__init__(name, message=f"Fact '{name}' did not resolve within {timeout}s")
        self.timeout = timeout


class RuleEvaluationError(FactRulesError):
    """Wraps whatever aborted a single rule's evaluation."""

    def __init__(self, rule_name: str, cause: BaseException):
        super().__init__(f"Rule '{rule_name}' could not be evaluated: {cause}")
        self.rule_name = rule_name
        self.cause = cause


class EngineStateError(FactRulesError):
    """Operation not allowed in the engine's current run state."""
