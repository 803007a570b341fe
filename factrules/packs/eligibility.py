"""Eligibility rule pack: household benefit screening."""

from __future__ import annotations

from typing import Any

from factrules.core.packs import RulePack
from factrules.core.rule import Rule

INCOME_BANDS = [
    (30, "low"),
    (100, "middle"),
]


async def _income_band(params: dict[str, Any], almanac) -> str:
    income = await almanac.resolve("income")
    for ceiling, name in INCOME_BANDS:
        if isinstance(income, (int, float)) and income <= ceiling:
            return name
    return "high"


def _mark_assessed(event, almanac, result) -> None:
    almanac.add_runtime_fact("household-assessed", True)


eligibility_pack = RulePack(
    name="eligibility",
    description="Screens a household for age- and income-based support",
    facts={
        "income-band": _income_band,
    },
    conditions={
        "working-age": {
            "all": [
                {"fact": "age", "operator": "greaterThan", "value": 21},
                {"fact": "age", "operator": "lessThan", "value": 65},
            ]
        },
    },
    rules=[
        Rule(
            name="household-assessed",
            priority=10,
            conditions={"fact": "family-size", "operator": "greaterThanInclusive", "value": 1},
            event={"type": "household-assessed"},
            on_success=_mark_assessed,
        ),
        {
            "name": "middle-income-adult",
            "conditions": {
                "all": [
                    {"condition": "working-age"},
                    {
                        "any": [
                            {"fact": "income", "operator": "lessThanInclusive", "value": 100},
                            {"fact": "family-size", "operator": "lessThanInclusive", "value": 3},
                        ]
                    },
                ]
            },
            "event": {"type": "middle-income-adult"},
        },
        {
            "name": "family-support",
            "conditions": {
                "all": [
                    {"fact": "household-assessed", "operator": "equal", "value": True},
                    {"fact": "family-size", "operator": "greaterThanInclusive", "value": 4},
                    {"fact": "income-band", "operator": "in", "value": ["low", "middle"]},
                ]
            },
            "event": {
                "type": "family-support",
                "params": {"band": {"fact": "income-band"}},
            },
        },
        {
            "name": "senior-discount",
            "conditions": {
                "not": {"fact": "age", "operator": "lessThan", "value": 65},
            },
            "event": {"type": "senior-discount"},
        },
    ],
)
