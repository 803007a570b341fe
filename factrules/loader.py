"""Load rule and fact documents from JSON or YAML files.

A rules file holds either a list of rule definitions or a mapping::

    rules:
      - name: adult
        conditions: {fact: age, operator: greaterThanInclusive, value: 18}
        event: {type: adult}
    conditions:          # optional shared conditions
      working-age: {all: [...]}
    facts:               # optional constant facts
      country: DE

The loaded file becomes a ``RulePack`` named after the file stem.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from factrules.core.errors import FactRulesError
from factrules.core.packs import RulePack
from factrules.core.rule import Rule

_FILE_KEYS = {"rules", "conditions", "facts"}


def read_document(path: str | Path) -> Any:
    """Parse a JSON or YAML file. YAML is used for anything not ending in .json."""
    path = Path(path)
    try:
        with open(path) as f:
            if path.suffix.lower() == ".json":
                return json.load(f)
            return yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValueError(f"{path}: could not parse file: {exc}") from exc


def load_rules(path: str | Path) -> RulePack:
    """Load and validate a rules file.

    Raises:
        ValueError: If the file is malformed or any rule is invalid. The
            message names the file and the offending rule.
    """
    path = Path(path)
    document = read_document(path)

    if isinstance(document, list):
        document = {"rules": document}
    if not isinstance(document, Mapping):
        raise ValueError(f"{path}: expected a list of rules or a mapping, "
                         f"got {type(document).__name__}")

    unknown = set(document) - _FILE_KEYS
    if unknown:
        raise ValueError(f"{path}: unknown top-level keys {sorted(unknown)}")
    if "rules" not in document:
        raise ValueError(f"{path}: missing required key 'rules'")

    raw_rules = document["rules"]
    if not isinstance(raw_rules, list):
        raise ValueError(f"{path}: 'rules' must be a list, got {type(raw_rules).__name__}")
    conditions = document.get("conditions") or {}
    facts = document.get("facts") or {}
    for key, value in (("conditions", conditions), ("facts", facts)):
        if not isinstance(value, Mapping):
            raise ValueError(f"{path}: '{key}' must be a mapping, got {type(value).__name__}")

    rules: list[Rule | dict[str, Any]] = []
    for idx, raw in enumerate(raw_rules):
        rule_name = raw.get("name", f"<rules[{idx}]>") if isinstance(raw, Mapping) else f"<rules[{idx}]>"
        try:
            rules.append(Rule.from_dict(raw))
        except (ValueError, FactRulesError) as exc:
            raise ValueError(f"{path}: rule '{rule_name}': {exc}") from exc

    return RulePack(
        name=path.stem,
        rules=rules,
        conditions=dict(conditions),
        facts=dict(facts),
    )


def load_facts(path: str | Path) -> dict[str, Any]:
    """Load a mapping of fact name to value."""
    path = Path(path)
    document = read_document(path)
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ValueError(f"{path}: facts file must be a mapping, got {type(document).__name__}")
    return dict(document)
