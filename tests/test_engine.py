"""Tests for the engine scheduler: segments, outcomes, events and options."""

import asyncio
import gc
import weakref

import pytest
from pydantic import ValidationError

from factrules.core.engine import Engine, EngineStatus
from factrules.core.errors import (
    DuplicateOperatorError,
    EngineStateError,
    FactTimeoutError,
    MalformedConditionError,
    RuleEvaluationError,
    UndefinedFactError,
    UnknownOperatorError,
)
from factrules.core.facts import Fact
from factrules.core.models import Event, Outcome
from factrules.core.operators import Operator
from factrules.core.rule import Rule


def make_rule(name, conditions=None, priority=1, event_type=None, **kwargs) -> Rule:
    return Rule(
        conditions=conditions or {"fact": "age", "operator": "greaterThan", "value": 21},
        event={"type": event_type or name},
        priority=priority,
        name=name,
        **kwargs,
    )


def f_equals_one() -> dict:
    return {"fact": "F", "operator": "equal", "value": 1}


class TestRegistration:
    def test_add_rule_from_dict(self):
        engine = Engine()
        rule = engine.add_rule(
            {
                "name": "adult",
                "conditions": {"fact": "age", "operator": "greaterThan", "value": 17},
                "event": {"type": "adult"},
            }
        )
        assert engine.rules == [rule]
        assert engine.get_rule("adult") is rule

    def test_rules_in_constructor(self):
        engine = Engine(rules=[make_rule("a"), make_rule("b")])
        assert [r.name for r in engine.rules] == ["a", "b"]

    def test_unknown_operator_rejected_at_registration(self):
        engine = Engine()
        with pytest.raises(UnknownOperatorError):
            engine.add_rule(make_rule("x", {"fact": "age", "operator": "between", "value": 1}))
        assert engine.rules == []

    def test_malformed_rule_rejected(self):
        engine = Engine()
        with pytest.raises(MalformedConditionError):
            engine.add_rule({"conditions": {"all": []}, "event": {"type": "x"}})

    def test_undefined_reference_rejected(self):
        engine = Engine()
        with pytest.raises(MalformedConditionError, match="working-age"):
            engine.add_rule(make_rule("x", {"condition": "working-age"}))

    def test_undefined_reference_allowed_by_option(self):
        engine = Engine(allow_undefined_conditions=True)
        engine.add_rule(make_rule("x", {"condition": "working-age"}))
        assert len(engine.rules) == 1

    def test_self_referencing_condition_rejected(self):
        engine = Engine()
        with pytest.raises(MalformedConditionError, match="itself"):
            engine.set_condition("loop", {"not": {"condition": "loop"}})

    def test_conditions_may_reference_later_ones(self):
        engine = Engine()
        engine.set_conditions(
            {
                "eligible": {"all": [{"condition": "adult"}, {"condition": "resident"}]},
                "adult": {"fact": "age", "operator": "greaterThan", "value": 17},
                "resident": {"fact": "country", "operator": "equal", "value": "DE"},
            }
        )
        assert set(engine.conditions) == {"eligible", "adult", "resident"}

    def test_cycle_across_conditions_rejected(self):
        engine = Engine()
        with pytest.raises(MalformedConditionError, match="circular reference"):
            engine.set_conditions(
                {
                    "a": {"condition": "b"},
                    "b": {"not": {"condition": "c"}},
                    "c": {"any": [{"condition": "a"}]},
                }
            )
        assert engine.conditions == {}

    def test_redefinition_closing_a_cycle_rejected(self):
        engine = Engine()
        engine.set_condition("b", {"fact": "age", "operator": "equal", "value": 1})
        engine.set_condition("a", {"condition": "b"})
        with pytest.raises(MalformedConditionError, match="circular reference"):
            engine.set_condition("b", {"condition": "a"})
        assert engine.conditions["b"].kind == "leaf"

    def test_custom_operator_via_constructor(self):
        engine = Engine(operators=[Operator("startsWith", lambda a, b: a.startswith(b))])
        engine.add_rule(make_rule("x", {"fact": "name", "operator": "startsWith", "value": "A"}))
        assert "startsWith" in engine.operators

    def test_strict_operators(self):
        engine = Engine(strict_operators=True)
        with pytest.raises(DuplicateOperatorError):
            engine.add_operator("equal", lambda a, b: True)

    def test_remove_rule(self):
        engine = Engine(rules=[make_rule("a"), make_rule("b")])
        assert engine.remove_rule("a")
        assert not engine.remove_rule("a")
        rule = engine.rules[0]
        assert engine.remove_rule(rule)
        assert engine.rules == []

    def test_invalid_option(self):
        with pytest.raises(ValidationError):
            Engine(fact_timeout=-1)
        with pytest.raises(ValidationError):
            Engine(no_such_option=True)

    def test_segments_sorted_descending(self):
        engine = Engine(
            rules=[make_rule("low", priority=1), make_rule("high", priority=10), make_rule("mid", priority=5)]
        )
        assert [p for p, _ in engine.segments()] == [10, 5, 1]


class TestRun:
    @pytest.mark.asyncio
    async def test_outcomes(self):
        engine = Engine(
            rules=[
                make_rule("adult"),
                make_rule("minor", {"fact": "age", "operator": "lessThan", "value": 18}),
            ]
        )
        summary = await engine.run({"age": 30})
        assert summary.result_for("adult").outcome is Outcome.PASSED
        assert summary.result_for("minor").outcome is Outcome.FAILED
        assert [e.type for e in summary.events] == ["adult"]
        assert [e.type for e in summary.failure_events] == ["minor"]
        assert engine.status is EngineStatus.FINISHED

    @pytest.mark.asyncio
    async def test_engine_facts_and_run_facts(self):
        engine = Engine(rules=[make_rule("adult")])
        engine.add_fact("age", 10)
        assert (await engine.run()).passed == []
        assert len((await engine.run({"age": 40})).passed) == 1

    @pytest.mark.asyncio
    async def test_run_facts_may_be_fact_objects(self):
        engine = Engine(rules=[make_rule("adult")])
        summary = await engine.run({"age": Fact("age", lambda params, a: 30)})
        assert len(summary.passed) == 1

    @pytest.mark.asyncio
    async def test_each_run_uses_a_fresh_almanac(self):
        calls = []

        def age(params, almanac):
            calls.append(1)
            return 30

        engine = Engine(rules=[make_rule("adult")])
        engine.add_fact("age", age)
        first = await engine.run()
        second = await engine.run()
        assert first.almanac is not second.almanac
        assert len(calls) == 2
        assert engine.almanac is second.almanac

    @pytest.mark.asyncio
    async def test_fact_computed_once_across_rules(self):
        calls = []

        async def age(params, almanac):
            calls.append(1)
            await asyncio.sleep(0.01)
            return 30

        engine = Engine(
            rules=[
                make_rule("a"),
                make_rule("b", {"fact": "age", "operator": "lessThan", "value": 65}),
                make_rule("c", {"not": {"fact": "age", "operator": "equal", "value": 1}}, priority=2),
            ]
        )
        engine.add_fact("age", age)
        summary = await engine.run()
        assert len(summary.passed) == 3
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_results_follow_segment_order(self):
        engine = Engine(
            rules=[make_rule("low", priority=1), make_rule("high", priority=3), make_rule("mid", priority=2)]
        )
        summary = await engine.run({"age": 30})
        assert [r.rule_name for r in summary.results] == ["high", "mid", "low"]

    def test_run_sync(self):
        engine = Engine(rules=[make_rule("adult")])
        summary = engine.run_sync({"age": 30})
        assert len(summary.passed) == 1

    @pytest.mark.asyncio
    async def test_overlapping_runs_use_their_own_facts(self):
        started = []
        statuses = []
        both_started = asyncio.Event()

        async def gate(params, almanac):
            started.append(almanac)
            if len(started) == 2:
                statuses.append(engine.status)
                both_started.set()
            await asyncio.wait_for(both_started.wait(), 1)
            return True

        engine = Engine(
            rules=[
                make_rule("gate", {"fact": "gate", "operator": "equal", "value": True}, priority=2),
                make_rule("adult"),
            ]
        )
        engine.add_fact("gate", gate)
        older, younger = await asyncio.gather(engine.run({"age": 30}), engine.run({"age": 10}))

        assert older.result_for("gate").outcome is Outcome.PASSED
        assert younger.result_for("gate").outcome is Outcome.PASSED
        assert older.result_for("adult").outcome is Outcome.PASSED
        assert younger.result_for("adult").outcome is Outcome.FAILED
        assert older.almanac is not younger.almanac
        assert set(started) == {older.almanac, younger.almanac}
        assert statuses == [EngineStatus.RUNNING]
        assert engine.status is EngineStatus.FINISHED

    @pytest.mark.asyncio
    async def test_registration_refused_while_running(self):
        started = asyncio.Event()
        release = asyncio.Event()

        async def age(params, almanac):
            started.set()
            await release.wait()
            return 30

        engine = Engine(rules=[make_rule("adult")])
        engine.add_fact("age", age)
        task = asyncio.create_task(engine.run())
        await started.wait()
        assert engine.status is EngineStatus.RUNNING
        with pytest.raises(EngineStateError):
            engine.add_rule(make_rule("late"))
        with pytest.raises(EngineStateError):
            engine.set_condition("adult", {"fact": "age", "operator": "greaterThan", "value": 17})
        with pytest.raises(EngineStateError):
            engine.remove_operator("equal")
        release.set()
        summary = await task
        assert len(summary.passed) == 1
        assert engine.status is EngineStatus.FINISHED

    @pytest.mark.asyncio
    async def test_finished_runs_are_not_retained(self):
        engine = Engine(rules=[make_rule("adult")])
        engine.on("success", lambda event, almanac, result: None)
        engine.on("end", lambda summary: None)
        await engine.run({"age": 30})
        first = weakref.ref(engine.almanac)
        await engine.run({"age": 40})
        gc.collect()
        assert first() is None
        assert engine.almanac is not None

class TestPriority:
    @pytest.mark.asyncio
    async def test_higher_priority_callback_feeds_lower_priority_rule(self):
        def set_f(event, almanac, result):
            almanac.add_runtime_fact("F", 1)

        engine = Engine(
            rules=[
                make_rule("r1", priority=10, on_success=set_f),
                make_rule("r2", f_equals_one(), priority=1),
            ]
        )
        summary = await engine.run({"age": 30})
        assert summary.result_for("r2").outcome is Outcome.PASSED

    @pytest.mark.asyncio
    async def test_reversed_priority_errors_without_default(self):
        def set_f(event, almanac, result):
            almanac.add_runtime_fact("F", 1)

        engine = Engine(
            rules=[
                make_rule("r1", priority=1, on_success=set_f),
                make_rule("r2", f_equals_one(), priority=10),
            ]
        )
        summary = await engine.run({"age": 30})
        r2 = summary.result_for("r2")
        assert r2.outcome is Outcome.ERRORED
        assert isinstance(r2.error, RuleEvaluationError)
        assert isinstance(r2.error.cause, UndefinedFactError)
        assert summary.result_for("r1").outcome is Outcome.PASSED

    @pytest.mark.asyncio
    async def test_reversed_priority_fails_with_undefined_facts_allowed(self):
        def set_f(event, almanac, result):
            almanac.add_runtime_fact("F", 1)

        engine = Engine(
            rules=[
                make_rule("r1", priority=1, on_success=set_f),
                make_rule("r2", f_equals_one(), priority=10),
            ],
            allow_undefined_facts=True,
        )
        summary = await engine.run({"age": 30})
        assert summary.result_for("r2").outcome is Outcome.FAILED

    @pytest.mark.asyncio
    async def test_async_callbacks_settle_before_next_segment(self):
        async def set_f(event, almanac, result):
            await asyncio.sleep(0.01)
            almanac.add_runtime_fact("F", 1)

        engine = Engine(
            rules=[
                make_rule("r1", priority=5, on_success=set_f),
                make_rule("r2", f_equals_one(), priority=4),
            ]
        )
        summary = await engine.run({"age": 30})
        assert summary.result_for("r2").outcome is Outcome.PASSED

    @pytest.mark.asyncio
    async def test_failure_callback(self):
        seen = []
        engine = Engine(
            rules=[
                make_rule("minor", {"fact": "age", "operator": "lessThan", "value": 18},
                          on_failure=lambda event, almanac, result: seen.append(event.type)),
            ]
        )
        await engine.run({"age": 30})
        assert seen == ["minor"]

    @pytest.mark.asyncio
    async def test_success_listener_mutations_visible_to_later_segments(self):
        engine = Engine(
            rules=[
                make_rule("r1", priority=2),
                make_rule("r2", f_equals_one(), priority=1),
            ]
        )

        def on_success(event, almanac, result):
            if event.type == "r1":
                almanac.add_runtime_fact("F", 1)

        engine.on("success", on_success)
        summary = await engine.run({"age": 30})
        assert summary.result_for("r2").outcome is Outcome.PASSED


class TestFailures:
    @pytest.mark.asyncio
    async def test_one_broken_rule_does_not_affect_others(self):
        def broken(params, almanac):
            raise RuntimeError("database down")

        engine = Engine(
            rules=[
                make_rule("ok"),
                make_rule("broken", {"fact": "broken", "operator": "equal", "value": 1}),
                make_rule("missing", {"fact": "nope", "operator": "equal", "value": 1}),
                make_rule("later"),
            ]
        )
        engine.add_fact("broken", broken)
        summary = await engine.run({"age": 30})
        outcomes = {r.rule_name: r.outcome for r in summary.results}
        assert outcomes == {
            "ok": Outcome.PASSED,
            "broken": Outcome.ERRORED,
            "missing": Outcome.ERRORED,
            "later": Outcome.PASSED,
        }
        assert len(summary.errors) == 2

    @pytest.mark.asyncio
    async def test_unknown_operator_at_runtime_errors_the_rule(self):
        engine = Engine(
            rules=[
                make_rule("custom", {"fact": "age", "operator": "isOdd", "value": None}),
                make_rule("plain"),
            ],
            operators=[Operator("isOdd", lambda a, b: a % 2 == 1)],
        )
        engine.remove_operator("isOdd")
        summary = await engine.run({"age": 30})
        custom = summary.result_for("custom")
        assert custom.outcome is Outcome.ERRORED
        assert isinstance(custom.error.cause, UnknownOperatorError)
        assert summary.result_for("plain").outcome is Outcome.PASSED

    @pytest.mark.asyncio
    async def test_timed_out_fact_errors_the_rule(self):
        async def slow(params, almanac):
            await asyncio.sleep(1)
            return 30

        engine = Engine(rules=[make_rule("adult")], fact_timeout=0.01)
        engine.add_fact("age", slow)
        summary = await engine.run()
        result = summary.result_for("adult")
        assert result.outcome is Outcome.ERRORED
        assert isinstance(result.error.cause, FactTimeoutError)

    @pytest.mark.asyncio
    async def test_callback_error_errors_the_rule(self):
        def explode(event, almanac, result):
            raise ValueError("callback bug")

        engine = Engine(rules=[make_rule("adult", on_success=explode), make_rule("other")])
        summary = await engine.run({"age": 30})
        assert summary.result_for("adult").outcome is Outcome.ERRORED
        assert summary.result_for("other").outcome is Outcome.PASSED

    @pytest.mark.asyncio
    async def test_errors_emitted_after_run(self):
        seen = []
        engine = Engine(rules=[make_rule("missing", {"fact": "nope", "operator": "equal", "value": 1})])
        engine.on("error", lambda error, result: seen.append((error, result.rule_name)))
        summary = await engine.run()
        assert len(seen) == 1
        assert isinstance(seen[0][0], RuleEvaluationError)
        assert seen[0][1] == "missing"
        assert summary.errored[0].error is seen[0][0]

    @pytest.mark.asyncio
    async def test_unhandled_errors_are_logged(self, caplog):
        engine = Engine(rules=[make_rule("missing", {"fact": "nope", "operator": "equal", "value": 1})])
        with caplog.at_level("ERROR", logger="factrules.core.engine"):
            await engine.run()
        assert any("Unhandled rule error" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_raising_end_listener_still_returns_summary(self, caplog):
        def broken(summary):
            raise RuntimeError("observer bug")

        engine = Engine(rules=[make_rule("adult")])
        engine.on("end", broken)
        with caplog.at_level("ERROR", logger="factrules.core.engine"):
            summary = await engine.run({"age": 30})
        assert summary.result_for("adult").outcome is Outcome.PASSED
        assert engine.status is EngineStatus.FINISHED
        assert any("observer bug" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_raising_error_listener_still_returns_summary(self, caplog):
        seen = []

        def broken(error, result):
            seen.append(result.rule_name)
            raise RuntimeError("error sink down")

        engine = Engine(
            rules=[
                make_rule("missing", {"fact": "nope", "operator": "equal", "value": 1}),
                make_rule("also-missing", {"fact": "gone", "operator": "equal", "value": 1}),
            ]
        )
        engine.on("error", broken)
        engine.on("end", lambda summary: seen.append("end"))
        with caplog.at_level("ERROR", logger="factrules.core.engine"):
            summary = await engine.run()
        assert len(summary.errored) == 2
        assert seen == ["missing", "also-missing", "end"]
        assert sum("error sink down" in r.message for r in caplog.records) == 2


class TestEvents:
    @pytest.mark.asyncio
    async def test_success_failure_and_end(self):
        seen = []
        engine = Engine(
            rules=[
                make_rule("adult"),
                make_rule("minor", {"fact": "age", "operator": "lessThan", "value": 18}),
            ]
        )
        engine.on("success", lambda event, almanac, result: seen.append(("success", event.type)))
        engine.on("failure", lambda event, almanac, result: seen.append(("failure", event.type)))
        engine.on("end", lambda summary: seen.append(("end", len(summary.results))))
        await engine.run({"age": 30})
        assert sorted(seen[:2]) == [("failure", "minor"), ("success", "adult")]
        assert seen[-1] == ("end", 2)

    @pytest.mark.asyncio
    async def test_event_type_listener(self):
        seen = []
        engine = Engine(rules=[make_rule("adult", event_type="grant-access")])
        engine.on("grant-access", lambda event, almanac, result: seen.append(result.rule_name))
        await engine.run({"age": 30})
        assert seen == ["adult"]

    @pytest.mark.asyncio
    async def test_listener_receives_almanac_of_the_run(self):
        seen = []
        engine = Engine(rules=[make_rule("adult")])
        engine.on("success", lambda event, almanac, result: seen.append(almanac))
        summary = await engine.run({"age": 30})
        assert seen == [summary.almanac]

    @pytest.mark.asyncio
    async def test_off(self):
        seen = []
        handler = lambda event, almanac, result: seen.append(event)  # noqa: E731
        engine = Engine(rules=[make_rule("adult")])
        engine.on("success", handler)
        assert engine.off("success", handler)
        await engine.run({"age": 30})
        assert seen == []

    @pytest.mark.asyncio
    async def test_event_params_replaced_from_facts(self):
        engine = Engine(
            rules=[
                Rule(
                    conditions={"fact": "age", "operator": "greaterThan", "value": 21},
                    event={
                        "type": "adult",
                        "params": {
                            "age": {"fact": "age"},
                            "city": {"fact": "profile", "path": "$.city"},
                            "label": "static",
                        },
                    },
                )
            ],
            replace_facts_in_event_params=True,
        )
        summary = await engine.run({"age": 30, "profile": {"city": "Berlin"}})
        assert summary.events == [
            Event(type="adult", params={"age": 30, "city": "Berlin", "label": "static"})
        ]

    @pytest.mark.asyncio
    async def test_event_params_left_alone_by_default(self):
        engine = Engine(
            rules=[make_rule("adult")],
        )
        engine.rules[0].event.params["age"] = {"fact": "age"}
        summary = await engine.run({"age": 30})
        assert summary.events[0].params == {"age": {"fact": "age"}}

    @pytest.mark.asyncio
    async def test_trace_attached_to_result(self):
        engine = Engine(rules=[make_rule("adult")])
        summary = await engine.run({"age": 30})
        trace = summary.results[0].trace
        assert trace.kind == "leaf"
        assert trace.fact_value == 30
