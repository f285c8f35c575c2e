"""Tests for branch, merge and loop coordination.

Tests cover:
- Deterministic A/B split bucketing
- Merge firing exactly once regardless of arrival order
- ``first`` merges dropping late arrivals
- Loop fan-out bounded by max_iterations, empty arrays, item scoping
- Runs stalled at a merge that can never fire
- Edge data mapping into the target's ``input``
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError

from layerflow.core.coordinator import item_scope, parse_scope, split_branch, split_bucket
from layerflow.core.graph_schema import (
    DefinitionStatus,
    Edge,
    RunStatus,
    StepOutcome,
    StepState,
    WorkflowGraph,
)
from layerflow.core.state import EventType

from conftest import FORM_TRIGGER, ORG, deploy, drain, step_states


def run_step(engine, run_id, node_id, scope=""):
    step = next(s for s in engine.db.get_steps(run_id, node_id) if s.scope == scope)
    return asyncio.run(engine.executor.execute(step.id))


def emit(engine, payload=None):
    return engine.emit("formSubmitted", payload or {}).created[0]


# =============================================================================
# Scope Helpers
# =============================================================================


class TestScopes:
    def test_item_scope_nesting(self):
        outer = item_scope("", "orders", 2)
        inner = item_scope(outer, "lines", 0)
        assert outer == "/orders[2]"
        assert inner == "/orders[2]/lines[0]"

        segments = parse_scope(inner)
        assert [(s.loop_node_id, s.index) for s in segments] == [("orders", 2), ("lines", 0)]
        assert segments[1].parent_scope == outer

    def test_root_scope_has_no_segments(self):
        assert parse_scope("") == []

    def test_malformed_scope(self):
        with pytest.raises(ValueError):
            parse_scope("/orders")


# =============================================================================
# Split Tests
# =============================================================================


class TestSplit:
    def test_bucket_is_stable(self):
        assert split_bucket("run-123") == split_bucket("run-123")
        assert 0 <= split_bucket("run-123") < 100

    def test_percentage_bounds(self):
        assert split_branch("any-run", 100) == "branch_a"
        assert split_branch("any-run", 0) == "branch_b"

    def test_distribution_roughly_matches_percentage(self):
        share = sum(split_branch(f"run-{i}", 30) == "branch_a" for i in range(2000)) / 2000
        assert 0.25 < share < 0.35

    def test_split_routes_one_branch(self, engine, spies):
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "split", "kind": "split_ab", "config": {"split_percentage": 100}},
                {"id": "step_a", "kind": "step_a"},
                {"id": "step_b", "kind": "step_b"},
            ],
            [("trigger", "split"), ("split", "step_a", "branch_a"), ("split", "step_b", "branch_b")],
        )
        run_id = emit(engine)
        drain(engine)

        assert spies["step_a"].call_count == 1
        assert spies["step_b"].call_count == 0
        assert engine.get_run(run_id).context["split"]["branch"] == "branch_a"


# =============================================================================
# Merge Tests
# =============================================================================


def deploy_merge(engine, strategy="wait_all", **step_a_config):
    return deploy(
        engine,
        [
            FORM_TRIGGER,
            {"id": "step_a", "kind": "step_a", "config": step_a_config},
            {"id": "step_b", "kind": "step_b"},
            {"id": "join", "kind": "merge", "config": {"strategy": strategy}},
            {"id": "after", "kind": "after"},
        ],
        [
            ("trigger", "step_a"),
            ("trigger", "step_b"),
            ("step_a", "join", "output", "a"),
            ("step_b", "join", "output", "b"),
            ("join", "after"),
        ],
    )


class TestMerge:
    """A merge fires once per run and scope."""

    @pytest.mark.parametrize("order", [("step_a", "step_b"), ("step_b", "step_a")])
    def test_wait_all_fires_once_in_any_order(self, engine, spies, order):
        deploy_merge(engine)
        run_id = emit(engine)

        run_step(engine, run_id, order[0])
        assert engine.db.get_steps(run_id, "join") == []
        assert engine.get_run(run_id).status == RunStatus.RUNNING

        run_step(engine, run_id, order[1])
        drain(engine)

        join = engine.db.get_steps(run_id, "join")
        assert len(join) == 1
        assert join[0].state == StepState.DONE
        assert join[0].output["inputs"] == {"a": {"from": "a"}, "b": {"from": "b"}}
        assert join[0].output["sources"] == {"a": "step_a", "b": "step_b"}
        assert spies["after"].call_count == 1
        assert len(engine.db.get_events(run_id, [EventType.MERGE_FIRED])) == 1
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_first_strategy_drops_late_arrival(self, engine, spies):
        deploy_merge(engine, strategy="first")
        run_id = emit(engine)

        run_step(engine, run_id, "step_b")
        assert engine.db.get_steps(run_id, "join")[0].output["sources"] == {"b": "step_b"}
        run_step(engine, run_id, "step_a")
        drain(engine)

        assert spies["after"].call_count == 1
        dropped = engine.db.get_events(run_id, [EventType.MERGE_ARRIVAL_DROPPED])
        assert [e.payload["handle"] for e in dropped] == ["a"]
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_wait_all_drops_arrival_after_firing(self, engine, spies, clock):
        """A second edge into an input that already arrived cannot reopen the merge."""
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "step_a", "kind": "step_a"},
                {"id": "step_b", "kind": "step_b"},
                {"id": "notify", "kind": "notify"},
                {"id": "join", "kind": "merge"},
                {"id": "after", "kind": "after"},
            ],
            [
                ("trigger", "step_a"),
                ("trigger", "step_b"),
                ("step_a", "join", "output", "a"),
                ("step_b", "join", "output", "b"),
                ("step_b", "notify"),
                ("notify", "join", "output", "a"),
                ("join", "after"),
            ],
        )
        run_id = emit(engine)

        run_step(engine, run_id, "step_a")
        run_step(engine, run_id, "step_b")
        assert engine.db.get_steps(run_id, "join")[0].state == StepState.DONE
        drain(engine)

        assert spies["notify"].call_count == 1
        assert spies["after"].call_count == 1
        dropped = engine.db.get_events(run_id, [EventType.MERGE_ARRIVAL_DROPPED])
        assert [(e.payload["handle"], e.payload["source"]) for e in dropped] == [("a", "notify")]
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

        clock.advance(timedelta(seconds=engine.config.runs.stall_timeout_seconds + 1))
        drain(engine)
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_failed_branch_fails_run_without_firing(self, engine, spies):
        spies["step_a"].fail_times = 10
        deploy_merge(engine, max_attempts=1)
        run_id = emit(engine)
        drain(engine)

        assert engine.db.get_steps(run_id, "join") == []
        assert spies["after"].call_count == 0
        assert engine.get_run(run_id).status == RunStatus.FAILED

    def test_untaken_branch_stalls_until_timeout(self, engine, spies, clock):
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {
                    "id": "vip",
                    "kind": "if_then",
                    "config": {"conditions": [{"field": "trigger.vip", "operator": "exists"}]},
                },
                {"id": "step_b", "kind": "step_b"},
                {"id": "join", "kind": "merge"},
                {"id": "after", "kind": "after"},
            ],
            [
                ("trigger", "vip"),
                ("trigger", "step_b"),
                ("vip", "join", "true", "a"),
                ("step_b", "join", "output", "b"),
                ("join", "after"),
            ],
        )
        run_id = emit(engine, {"email": "plain@example.com"})
        drain(engine)

        assert engine.get_run(run_id).status == RunStatus.WAITING
        assert spies["after"].call_count == 0

        clock.advance(timedelta(seconds=engine.config.runs.stall_timeout_seconds + 1))
        drain(engine)

        run = engine.get_run(run_id)
        assert run.status == RunStatus.FAILED
        assert "stalled" in run.error


# =============================================================================
# Loop Tests
# =============================================================================


def deploy_loop(engine, max_iterations=100, per_item_params=None):
    return deploy(
        engine,
        [
            FORM_TRIGGER,
            {
                "id": "each",
                "kind": "loop_iterator",
                "config": {"array_field": "trigger.items", "max_iterations": max_iterations},
            },
            {"id": "per_item", "kind": "per_item", "config": {"params": per_item_params or {}}},
            {"id": "after", "kind": "after"},
        ],
        [("trigger", "each"), ("each", "per_item", "each_item"), ("each", "after", "completed")],
    )


class TestLoop:
    """Loop fan-out and completion."""

    def test_max_iterations_bounds_fan_out(self, engine, spies):
        deploy_loop(engine, max_iterations=10)
        run_id = emit(engine, {"items": list(range(1000))})
        drain(engine)

        assert spies["per_item"].call_count == 10
        assert sorted(c.context["item"] for c in spies["per_item"].calls) == list(range(10))
        assert spies["after"].call_count == 1

        loop = engine.db.get_steps(run_id, "each")[0]
        assert loop.output == {"length": 1000, "total": 10, "truncated": True}
        assert sorted(loop.fired_handles) == ["completed", "each_item"]
        assert len(engine.db.get_steps(run_id, "per_item")) == 10
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_empty_array_fires_completed_only(self, engine, spies):
        deploy_loop(engine)
        run_id = emit(engine, {"items": []})
        drain(engine)

        assert spies["per_item"].call_count == 0
        assert spies["after"].call_count == 1
        assert engine.db.get_steps(run_id, "each")[0].fired_handles == ["completed"]

    def test_missing_array_treated_as_empty(self, engine, spies):
        deploy_loop(engine)
        emit(engine, {})
        drain(engine)
        assert spies["after"].call_count == 1

    def test_non_list_fails_step(self, engine, spies):
        deploy_loop(engine)
        run_id = emit(engine, {"items": "not-a-list"})
        drain(engine)

        loop = engine.db.get_steps(run_id, "each")[0]
        assert loop.state == StepState.FAILED
        assert loop.outcome == StepOutcome.INVALID
        assert spies["after"].call_count == 0

    def test_item_params_rendered_per_branch(self, engine, spies):
        deploy_loop(engine, per_item_params={"sku": "{{ item.sku }}", "n": "{{ loop.index }}"})
        run_id = emit(engine, {"items": [{"sku": "A"}, {"sku": "B"}]})
        drain(engine)

        params = sorted((c.params["sku"], c.params["n"]) for c in spies["per_item"].calls)
        assert params == [("A", "0"), ("B", "1")]
        assert step_states(engine, run_id) == {
            "each": "done",
            "per_item@/each[0]": "done",
            "per_item@/each[1]": "done",
            "after": "done",
        }

    def test_item_outputs_stay_in_their_scope(self, engine, spies):
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "each", "kind": "loop_iterator", "config": {"array_field": "trigger.items"}},
                {
                    "id": "double",
                    "kind": "transform_data",
                    "config": {"mapping": {"value": "{{ item * 2 }}"}},
                },
                {"id": "per_item", "kind": "per_item", "config": {"params": {"v": "{{ double.value }}"}}},
                {"id": "after", "kind": "after"},
            ],
            [
                ("trigger", "each"),
                ("each", "double", "each_item"),
                ("double", "per_item"),
                ("each", "after", "completed"),
            ],
        )
        run_id = emit(engine, {"items": [1, 2, 3]})
        drain(engine)

        assert sorted(c.params["v"] for c in spies["per_item"].calls) == ["2", "4", "6"]
        context = engine.get_run(run_id).context
        assert "double" not in context
        assert "per_item" not in context
        assert spies["after"].call_count == 1

    def test_failed_item_does_not_block_completion(self, engine, spies):
        spies["per_item"].fail_times = 1
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "each", "kind": "loop_iterator", "config": {"array_field": "trigger.items"}},
                {"id": "per_item", "kind": "per_item", "config": {"max_attempts": 1}},
                {"id": "after", "kind": "after"},
            ],
            [("trigger", "each"), ("each", "per_item", "each_item"), ("each", "after", "completed")],
        )
        run_id = emit(engine, {"items": ["x", "y"]})
        drain(engine)

        assert spies["after"].call_count == 1
        states = sorted(s.state.value for s in engine.db.get_steps(run_id, "per_item"))
        assert states == ["done", "failed"]
        assert engine.get_run(run_id).status == RunStatus.FAILED


# =============================================================================
# Edge Data Mapping
# =============================================================================


def deploy_mapped(engine, data_mapping):
    graph = WorkflowGraph.model_validate(
        {
            "nodes": [
                FORM_TRIGGER,
                {"id": "notify", "kind": "notify"},
                {"id": "after", "kind": "after"},
            ],
            "edges": [
                {
                    "id": "e0",
                    "source_node_id": "trigger",
                    "target_node_id": "notify",
                    "data_mapping": data_mapping,
                },
                {"id": "e1", "source_node_id": "notify", "target_node_id": "after"},
            ],
        }
    )
    definition = engine.definitions.create("mapped", ORG, graph=graph)
    return engine.definitions.set_status(definition.id, DefinitionStatus.ACTIVE)


class TestEdgeDataMapping:
    """Fields picked from the source output are visible to the target as ``input``."""

    def test_mapped_fields_reach_target_only(self, engine, spies):
        deploy_mapped(engine, {"address": "email", "city": "profile.city", "zip": "profile.zip"})
        run_id = emit(engine, {"email": "a@x.com", "profile": {"city": "Berlin"}})
        drain(engine)

        assert spies["notify"].calls[0].context["input"] == {
            "address": "a@x.com",
            "city": "Berlin",
            "zip": None,
        }
        assert "input" not in spies["after"].calls[0].context
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_unmapped_edge_has_no_input(self, engine, spies):
        deploy_mapped(engine, {})
        emit(engine, {"email": "a@x.com"})
        drain(engine)
        assert "input" not in spies["notify"].calls[0].context

    def test_mapped_input_renders_into_params(self, engine):
        graph = WorkflowGraph.model_validate(
            {
                "nodes": [
                    FORM_TRIGGER,
                    {
                        "id": "create_contact",
                        "kind": "create_contact",
                        "config": {"params": {"email": "{{ input.address }}"}},
                    },
                ],
                "edges": [
                    {
                        "id": "e0",
                        "source_node_id": "trigger",
                        "target_node_id": "create_contact",
                        "data_mapping": {"address": "contact.email"},
                    }
                ],
            }
        )
        definition = engine.definitions.create("mapped", ORG, graph=graph)
        engine.definitions.set_status(definition.id, DefinitionStatus.ACTIVE)
        emit(engine, {"contact": {"email": "Ada@Example.com"}})
        drain(engine)

        assert engine.records.find("contacts", "ada@example.com") is not None

    def test_invalid_mapping_rejected(self):
        with pytest.raises(ValidationError):
            Edge(id="e0", source_node_id="a", target_node_id="b", data_mapping={"x": "bad path"})
