"""Rule packs: named bundles of rules, shared conditions and default facts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from factrules.core.rule import Rule


@dataclass
class RulePack:
    """Collection of related rules loadable into an engine in one call.

    ``rules`` holds ``Rule`` objects or wire rule definitions; ``facts`` maps
    fact names to constants or providers registered as engine facts.
    """

    name: str
    rules: list[Rule | dict[str, Any]] = field(default_factory=list)
    conditions: dict[str, Any] = field(default_factory=dict)
    facts: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def build_rules(self) -> list[Rule]:
        return [r if isinstance(r, Rule) else Rule.from_dict(r) for r in self.rules]


def get_pack(name: str) -> RulePack:
    """Resolve a built-in pack by name."""
    if name == "eligibility":
        from factrules.packs.eligibility import eligibility_pack

        return eligibility_pack
    raise ValueError(f"Unknown rule pack: {name}")
