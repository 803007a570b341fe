"""CLI entry point: `factrules run`, `factrules validate`, etc."""

from __future__ import annotations

import json
import logging
import sys

import click

from factrules import __version__
from factrules.core.engine import Engine
from factrules.core.errors import FactRulesError
from factrules.core.models import Outcome
from factrules.loader import load_facts, load_rules

LOG_LEVELS = ["debug", "info", "warning", "error"]


def _parse_fact_pairs(pairs: tuple[str, ...]) -> dict:
    facts = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"expected NAME=VALUE, got {pair!r}", param_hint="--fact")
        try:
            facts[name] = json.loads(raw)
        except json.JSONDecodeError:
            facts[name] = raw
    return facts


def _build_engine(rules_file: str, **options) -> Engine:
    try:
        pack = load_rules(rules_file)
        engine = Engine(**options)
        engine.load_pack(pack)
    except (ValueError, FactRulesError) as exc:
        raise click.ClickException(str(exc)) from exc
    return engine


@click.group()
def main():
    """factrules: evaluate declarative rules against facts."""
    pass


@main.command()
@click.argument("rules_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--facts", "facts_file", type=click.Path(exists=True, dir_okay=False),
              help="JSON or YAML mapping of fact values")
@click.option("--fact", "fact_pairs", multiple=True, metavar="NAME=VALUE",
              help="Fact value, parsed as JSON when possible. Repeatable.")
@click.option("--allow-undefined-facts", is_flag=True, help="Treat missing facts as null")
@click.option("--json", "as_json", is_flag=True, help="Print the run summary as JSON")
@click.option("--log-level", default="error", type=click.Choice(LOG_LEVELS, case_sensitive=False))
def run(
    rules_file: str,
    facts_file: str | None,
    fact_pairs: tuple[str, ...],
    allow_undefined_facts: bool,
    as_json: bool,
    log_level: str,
):
    """Run every rule in RULES_FILE once against the given facts."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = _build_engine(rules_file, allow_undefined_facts=allow_undefined_facts)
    # Errors are reported below, so consume the engine's error channel.
    engine.on("error", lambda error, result: None)

    try:
        facts = load_facts(facts_file) if facts_file else {}
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    facts.update(_parse_fact_pairs(fact_pairs))

    summary = engine.run_sync(facts)

    if as_json:
        payload = {
            "results": [
                {
                    "rule": r.rule_name,
                    "priority": r.priority,
                    "outcome": r.outcome.value,
                    "event": r.event.model_dump(),
                    "error": str(r.error) if r.error else None,
                }
                for r in summary.results
            ],
            "passed": len(summary.passed),
            "failed": len(summary.failed),
            "errored": len(summary.errored),
        }
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        for r in summary.results:
            line = f"{r.outcome.value.upper():<8} {r.rule_name} (priority {r.priority})"
            if r.outcome is Outcome.ERRORED:
                line += f": {r.error}"
            click.echo(line)
        click.echo(
            f"{len(summary.passed)} passed, {len(summary.failed)} failed, "
            f"{len(summary.errored)} errored"
        )

    if summary.errored:
        sys.exit(1)


@main.command()
@click.argument("rules_file", type=click.Path(exists=True, dir_okay=False))
def validate(rules_file: str):
    """Check RULES_FILE for structural errors without running it."""
    engine = _build_engine(rules_file)
    click.echo(f"OK: {len(engine.rules)} rules, {len(engine.conditions)} shared conditions")


@main.command()
def version():
    """Show factrules version."""
    click.echo(f"factrules {__version__}")


if __name__ == "__main__":
    main()
