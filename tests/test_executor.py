"""Tests for step execution.

Tests cover:
- End-to-end formSubmitted scenario through create_contact and if_then
- Exactly-once behavior invocation under redelivery and lost completions
- Retries with exponential backoff, timeouts and terminal failures
- Branch failure isolation and run failure aggregation
- Cancellation before and during execution
- Metering gate: insufficient credit never invokes a handler
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from layerflow.core.engine import WorkflowEngine
from layerflow.core.errors import GraphValidationError
from layerflow.core.graph_schema import RunStatus, StepOutcome, StepState
from layerflow.core.state import EventType

from conftest import FORM_TRIGGER, ORG, deploy, drain, step_states


def emit(engine, payload=None, key=None):
    result = engine.emit("formSubmitted", payload or {"email": "Ada@Example.com"}, key)
    assert len(result.created) == 1
    return result.created[0]


# =============================================================================
# Scenario Tests
# =============================================================================


class TestContactScenario:
    """formSubmitted -> create_contact -> if_then(has phone) -> sms | email."""

    def test_no_phone_sends_one_email_and_no_sms(self, engine, contact_workflow, spies):
        run_id = emit(engine, {"email": "Ada@Example.com"})
        drain(engine)

        run = engine.get_run(run_id)
        assert run.status == RunStatus.COMPLETED
        assert spies["send_email"].call_count == 1
        assert spies["send_sms"].call_count == 0
        assert spies["send_email"].calls[0].params == {"to": "ada@example.com"}

        # Contact was upserted by the built-in behavior
        contact = engine.records.find("contacts", "ada@example.com")
        assert contact is not None
        assert run.context["create_contact"]["contact_id"] == contact.id
        assert run.context["has_phone"] == {"result": False}

    def test_phone_present_sends_sms_only(self, engine, contact_workflow, spies):
        run_id = emit(engine, {"email": "bob@example.com", "phone": "+4915112345"})
        drain(engine)

        assert engine.get_run(run_id).status == RunStatus.COMPLETED
        assert spies["send_sms"].call_count == 1
        assert spies["send_email"].call_count == 0
        assert spies["send_sms"].calls[0].params == {"to": "+4915112345"}

    def test_run_context_is_keyed_by_node_id(self, engine, contact_workflow):
        run_id = emit(engine, {"email": "c@example.com"})
        drain(engine)

        context = engine.get_run(run_id).context
        assert context["trigger"] == {"email": "c@example.com"}
        assert set(context) == {"trigger", "create_contact", "has_phone", "send_email"}

    def test_event_log_records_lifecycle(self, engine, contact_workflow):
        run_id = emit(engine)
        drain(engine)

        types = [e.event_type for e in engine.db.get_events(run_id)]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_COMPLETED
        assert types.count(EventType.STEP_COMPLETED) == 3


# =============================================================================
# Exactly-Once Tests
# =============================================================================


class TestRedelivery:
    """Re-executing a step never re-invokes its handler."""

    def _single_step(self, engine):
        return deploy(
            engine,
            [FORM_TRIGGER, {"id": "notify", "kind": "notify"}],
            [("trigger", "notify")],
        )

    def test_redelivering_done_step_is_noop(self, engine, spies):
        self._single_step(engine)
        run_id = emit(engine)
        drain(engine)
        step = engine.db.get_steps(run_id, "notify")[0]

        result = asyncio.run(engine.executor.execute(step.id))

        assert result.executed is False
        assert result.state == StepState.DONE
        assert spies["notify"].call_count == 1

    def test_lost_completion_does_not_reinvoke_handler(self, engine, spies):
        """Handler succeeded but the worker died before completing the step."""
        self._single_step(engine)
        run_id = emit(engine)
        step = engine.db.get_steps(run_id, "notify")[0]

        # Simulate: handler ran, side effect recorded, completion never committed
        with engine.db._connect() as conn:
            conn.execute(
                "INSERT INTO side_effects (run_id, node_id, scope, output, recorded_at) "
                "VALUES (?, 'notify', '', '{\"call\": 1}', '2026-01-01T00:00:00.000000+00:00')",
                (run_id,),
            )

        drain(engine)

        assert spies["notify"].call_count == 0
        step = engine.db.get_step(step.id)
        assert step.state == StepState.DONE
        assert step.output == {"call": 1}
        events = engine.db.get_events(run_id, [EventType.STEP_DEDUPLICATED])
        assert len(events) == 1

    def test_stale_executing_step_is_requeued_without_double_invoke(self, engine, spies, clock):
        self._single_step(engine)
        run_id = emit(engine)
        step = engine.db.get_steps(run_id, "notify")[0]
        # Worker claimed the step, then vanished
        with engine.db._connect() as conn:
            conn.execute(
                "UPDATE steps SET state = 'executing', claimed_at = ? WHERE id = ?",
                ("2026-01-01T00:00:00.000000+00:00", step.id),
            )

        drain(engine)
        assert engine.db.get_step(step.id).state == StepState.EXECUTING
        assert spies["notify"].call_count == 0

        clock.advance(seconds=engine.config.worker.lease_seconds + 1)
        drain(engine)

        assert engine.db.get_step(step.id).state == StepState.DONE
        assert spies["notify"].call_count == 1
        assert engine.get_run(run_id).status == RunStatus.COMPLETED

    def test_node_timeout_must_end_before_lease(self, engine):
        lease = engine.config.worker.lease_seconds

        def deploy_with_timeout(seconds):
            node = {"id": "notify", "kind": "notify", "config": {"timeout_seconds": seconds}}
            return deploy(engine, [FORM_TRIGGER, node], [("trigger", "notify")])

        with pytest.raises(GraphValidationError) as exc_info:
            deploy_with_timeout(lease)
        assert [v.code for v in exc_info.value.violations] == ["timeout_exceeds_lease"]

        assert deploy_with_timeout(lease - 1).status.value == "active"

    @pytest.mark.parametrize("handler_timeout", [None, 300.0, 900.0])
    def test_engine_rejects_handler_timeout_outliving_lease(
        self, engine_config, clock, registry, handler_timeout
    ):
        engine_config.handler_timeout = handler_timeout
        engine_config.worker.lease_seconds = 300.0
        with pytest.raises(ValueError):
            WorkflowEngine.from_config(engine_config, clock=clock, registry=registry)

    def test_step_removed_after_claim_is_skipped(self, engine, spies, mocker):
        self._single_step(engine)
        run_id = emit(engine)
        step = engine.db.get_steps(run_id, "notify")[0]
        mocker.patch.object(engine.db, "get_step", side_effect=[step, None])

        result = asyncio.run(engine.executor.execute(step.id))

        assert result.executed is False
        assert result.state is None
        assert spies["notify"].call_count == 0

    def test_concurrent_execute_calls_invoke_once(self, engine, spies):
        self._single_step(engine)
        run_id = emit(engine)
        step = engine.db.get_steps(run_id, "notify")[0]

        async def race():
            return await asyncio.gather(*[engine.executor.execute(step.id) for _ in range(5)])

        results = asyncio.run(race())

        assert sum(1 for r in results if r.executed) == 1
        assert spies["notify"].call_count == 1


# =============================================================================
# Retry and Failure Tests
# =============================================================================


class TestRetries:
    """Handler errors are retried with exponential backoff."""

    def test_transient_failure_retries_then_succeeds(self, engine, spies, clock):
        spies["notify"].fail_times = 2
        deploy(engine, [FORM_TRIGGER, {"id": "notify", "kind": "notify"}], [("trigger", "notify")])
        run_id = emit(engine)

        drain(engine)
        step = engine.db.get_steps(run_id, "notify")[0]
        assert step.state == StepState.SCHEDULED
        assert step.attempt == 2
        assert step.due_at == clock.now() + timedelta(seconds=2)
        assert engine.get_run(run_id).status == RunStatus.WAITING

        # Not due yet: nothing happens
        clock.advance(seconds=1)
        drain(engine)
        assert spies["notify"].call_count == 1

        clock.advance(seconds=1)
        drain(engine)
        step = engine.db.get_step(step.id)
        assert step.attempt == 3
        # Second retry waits twice as long
        assert step.due_at == clock.now() + timedelta(seconds=4)

        clock.advance(seconds=4)
        drain(engine)
        assert spies["notify"].call_count == 3
        assert engine.db.get_step(step.id).state == StepState.DONE
        assert engine.get_run(run_id).status == RunStatus.COMPLETED
        assert len(engine.db.get_events(run_id, [EventType.STEP_RETRY_SCHEDULED])) == 2

    def test_exhausted_retries_fail_step_and_run(self, engine, spies, clock):
        spies["notify"].fail_times = 10
        deploy(
            engine,
            [FORM_TRIGGER, {"id": "notify", "kind": "notify", "config": {"max_attempts": 2}}],
            [("trigger", "notify")],
        )
        run_id = emit(engine)

        drain(engine)
        clock.advance(seconds=60)
        drain(engine)

        step = engine.db.get_steps(run_id, "notify")[0]
        assert spies["notify"].call_count == 2
        assert step.state == StepState.FAILED
        assert step.outcome == StepOutcome.HANDLER_ERROR
        assert "boom #2" in step.error
        run = engine.get_run(run_id)
        assert run.status == RunStatus.FAILED
        assert "notify" in run.error

    def test_timeout_is_retried_like_a_handler_error(self, engine, registry, clock):
        calls = []

        async def slow(ctx):
            calls.append(ctx.attempt)
            await asyncio.sleep(5)

        registry.register("slow", slow)
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "slow", "kind": "slow", "config": {"timeout_seconds": 0.05, "max_attempts": 1}},
            ],
            [("trigger", "slow")],
        )
        run_id = emit(engine)
        drain(engine)

        step = engine.db.get_steps(run_id, "slow")[0]
        assert calls == [1]
        assert step.state == StepState.FAILED
        assert step.outcome == StepOutcome.TIMEOUT

    def test_invalid_params_fail_without_retry(self, engine, spies):
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "notify", "kind": "notify", "config": {"params": {"to": "{{ trigger.nope }}"}}},
            ],
            [("trigger", "notify")],
        )
        run_id = emit(engine)
        drain(engine)

        step = engine.db.get_steps(run_id, "notify")[0]
        assert step.state == StepState.FAILED
        assert step.outcome == StepOutcome.INVALID
        assert step.attempt == 1
        assert spies["notify"].call_count == 0

    def test_failed_branch_does_not_abort_sibling(self, engine, spies):
        spies["step_a"].fail_times = 10
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {"id": "step_a", "kind": "step_a", "config": {"max_attempts": 1}},
                {"id": "step_b", "kind": "step_b"},
                {"id": "after", "kind": "after"},
            ],
            [("trigger", "step_a"), ("trigger", "step_b"), ("step_b", "after")],
        )
        run_id = emit(engine)
        drain(engine)

        states = step_states(engine, run_id)
        assert states == {"step_a": "failed", "step_b": "done", "after": "done"}
        assert spies["after"].call_count == 1
        assert engine.get_run(run_id).status == RunStatus.FAILED


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancellation:
    """Cancelled runs schedule no further steps."""

    def test_cancel_before_execution(self, engine, contact_workflow, spies):
        run_id = emit(engine)
        engine.cancel_run(run_id, "customer unsubscribed")
        drain(engine)

        run = engine.get_run(run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.error == "customer unsubscribed"
        step = engine.db.get_steps(run_id, "create_contact")[0]
        assert step.state == StepState.FAILED
        assert step.outcome == StepOutcome.CANCELLED
        assert engine.records.find("contacts", "ada@example.com") is None

    def test_in_flight_step_finishes_without_successors(self, engine, registry, spies):
        holder = {}

        def cancel_mid_flight(ctx):
            holder["engine"].executor.cancel_run(ctx.run_id)
            return {"done": True}

        holder["engine"] = engine
        registry.register("cancel_mid_flight", cancel_mid_flight)
        deploy(
            engine,
            [FORM_TRIGGER, {"id": "first", "kind": "cancel_mid_flight"}, {"id": "after", "kind": "after"}],
            [("trigger", "first"), ("first", "after")],
        )
        run_id = emit(engine)
        drain(engine)

        assert step_states(engine, run_id) == {"first": "done"}
        assert spies["after"].call_count == 0
        assert engine.get_run(run_id).status == RunStatus.CANCELLED

    def test_cancel_finished_run_is_noop(self, engine, contact_workflow):
        run_id = emit(engine)
        drain(engine)

        assert engine.executor.cancel_run(run_id) is False
        assert engine.get_run(run_id).status == RunStatus.COMPLETED


# =============================================================================
# Metering Tests
# =============================================================================


class TestMetering:
    """Behaviors are charged before they run."""

    def test_insufficient_credit_never_invokes_handler(self, engine, spies):
        deploy(
            engine,
            [FORM_TRIGGER, {"id": "notify", "kind": "notify"}],
            [("trigger", "notify")],
            org_id="org-broke",
        )
        run_id = emit(engine)
        drain(engine)

        assert spies["notify"].call_count == 0
        step = engine.db.get_steps(run_id, "notify")[0]
        assert step.state == StepState.FAILED
        assert step.outcome == StepOutcome.BUDGET_EXCEEDED
        alerts = engine.db.get_events(run_id, [EventType.BUDGET_EXCEEDED])
        assert alerts[0].payload["org_id"] == "org-broke"

    def test_each_step_is_charged_once(self, engine, spies, clock):
        engine.ledger.set_plan("org-small", daily=10, monthly=0)
        spies["notify"].fail_times = 1
        deploy(
            engine,
            [FORM_TRIGGER, {"id": "notify", "kind": "notify", "config": {"cost": 3}}],
            [("trigger", "notify")],
            org_id="org-small",
        )
        emit(engine)
        drain(engine)
        clock.advance(seconds=10)
        drain(engine)

        # Retry reused the same charge
        assert spies["notify"].call_count == 2
        assert engine.ledger.balance("org-small").daily_remaining == 7

    def test_metering_disabled_skips_ledger(self, engine, spies):
        engine.gate.enabled = False
        deploy(
            engine,
            [FORM_TRIGGER, {"id": "notify", "kind": "notify"}],
            [("trigger", "notify")],
            org_id="org-broke",
        )
        emit(engine)
        drain(engine)

        assert spies["notify"].call_count == 1
        assert engine.ledger.transactions("org-broke") == []

    def test_logic_nodes_are_free(self, engine, spies):
        engine.ledger.set_plan("org-one", daily=1, monthly=0)
        deploy(
            engine,
            [
                FORM_TRIGGER,
                {
                    "id": "check",
                    "kind": "filter",
                    "config": {"conditions": [{"field": "trigger.email", "operator": "exists"}]},
                },
                {"id": "notify", "kind": "notify"},
            ],
            [("trigger", "check"), ("check", "notify", "match")],
            org_id="org-one",
        )
        run_id = emit(engine)
        drain(engine)

        assert spies["notify"].call_count == 1
        assert engine.get_run(run_id).status == RunStatus.COMPLETED
        assert engine.ledger.balance("org-one").available == 0


def test_org_is_charged_by_definition_owner(engine, spies):
    deploy(engine, [FORM_TRIGGER, {"id": "notify", "kind": "notify"}], [("trigger", "notify")])
    emit(engine)
    drain(engine)

    debits = [t for t in engine.ledger.transactions(ORG) if t["kind"] == "debit"]
    assert len(debits) == 1
    assert debits[0]["amount"] == -1
