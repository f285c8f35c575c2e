"""Step executor: runs one claimed step instance to a terminal or parked state.

Delivery is at-least-once. A step is claimed with a guarded
``pending -> executing`` update; a redelivered step that is already done,
failed or executing elsewhere is a no-op. Behaviors that reported success are
recorded in ``side_effects`` before the step completes, so a crash between
the handler returning and the completion commit never invokes the handler a
second time.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from layerflow.core.behaviors import BehaviorContext, BehaviorRegistry, call_handler
from layerflow.core.config import RetryPolicy
from layerflow.core.coordinator import Coordinator, InvalidStepInput
from layerflow.core.errors import (
    HandlerError,
    RunNotFoundError,
    StepTimeoutError,
    UnknownBehaviorError,
)
from layerflow.core.graph_schema import (
    OUTPUT,
    BehaviorConfig,
    NodeCategory,
    RunStatus,
    StepOutcome,
    StepState,
    WaitDelayConfig,
    WorkflowDefinition,
)
from layerflow.core.metering import MeteringGate
from layerflow.core.records import RecordStore
from layerflow.core.state import (
    Database,
    EventType,
    Run,
    RunEvent,
    Step,
    _loads,
    safe_json_dumps,
    to_db_time,
)
from layerflow.core.templating import render_value
from layerflow.core.timers import Clock, TimerService

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """What one ``execute`` call did to a step."""

    step_id: str
    state: StepState | None  # State after this call; None if the step does not exist
    executed: bool = True  # False for redeliveries and lost claims
    next_steps: list[str] = field(default_factory=list)
    run_outcome: RunStatus | None = None  # Set when the run finished during this call


def step_reference(step: Step) -> str:
    """Stable identity of a step instance across retries and redeliveries."""
    return f"{step.run_id}:{step.node_id}:{step.scope}"


class StepExecutor:
    def __init__(
        self,
        db: Database,
        registry: BehaviorRegistry,
        coordinator: Coordinator,
        timers: TimerService,
        gate: MeteringGate,
        records: RecordStore,
        clock: Clock,
        retry_policy: RetryPolicy | None = None,
        handler_timeout: float | None = 30.0,
    ):
        self.db = db
        self.registry = registry
        self.coordinator = coordinator
        self.timers = timers
        self.gate = gate
        self.records = records
        self.clock = clock
        self.retry_policy = retry_policy or RetryPolicy()
        self.handler_timeout = handler_timeout

    # ========== Entry point ==========

    async def execute(self, step_id: str) -> StepResult:
        """Claim and execute a pending step.

        Safe to call for any step id at any time: only a caller that wins the
        ``pending -> executing`` claim does any work.
        """
        step = await asyncio.to_thread(self.db.get_step, step_id)
        if step is None:
            logger.warning(f"Step {step_id} not found")
            return StepResult(step_id=step_id, state=None, executed=False)
        if step.state != StepState.PENDING:
            return StepResult(step_id=step_id, state=step.state, executed=False)

        claimed = await asyncio.to_thread(self.db.run_in_transaction, self._claim, step_id)
        if not claimed:
            current = await asyncio.to_thread(self.db.get_step, step_id)
            return StepResult(
                step_id=step_id, state=current.state if current else None, executed=False
            )
        step = await asyncio.to_thread(self.db.get_step, step_id)
        if step is None:
            # Purged between the claim and the reload
            logger.warning(f"Step {step_id} vanished after being claimed")
            return StepResult(step_id=step_id, state=None, executed=False)

        run, definition = await asyncio.to_thread(self._load_run, step.run_id)
        if run.status == RunStatus.CANCELLED:
            return await self._fail(step, definition, StepOutcome.CANCELLED, "Run was cancelled")
        try:
            node = definition.graph.get_node(step.node_id)
        except KeyError:
            return await self._fail(
                step, definition, StepOutcome.INVALID, f"Node '{step.node_id}' not in graph"
            )

        try:
            if node.kind == "wait_delay":
                return await self._execute_delay(step, run, definition)
            if node.kind == "loop_iterator":
                return await asyncio.to_thread(
                    self.db.run_in_transaction, self._complete_loop, step, definition
                )
            if node.category == NodeCategory.LOGIC:
                context = await asyncio.to_thread(self._context, step)
                output, handles = self.coordinator.evaluate(node, run.id, context)
                return await self._complete(step, definition, output, handles)
            if node.category == NodeCategory.ACTION:
                return await self._execute_behavior(step, run, definition)
            raise InvalidStepInput(f"Trigger node '{node.id}' cannot be executed as a step")
        except InvalidStepInput as e:
            logger.warning(f"Step {step.node_id}@'{step.scope}' in run {run.id} is invalid: {e}")
            return await self._fail(step, definition, StepOutcome.INVALID, str(e))
        except Exception as e:
            logger.error(f"Unexpected error executing step {step.id}: {e}")
            await self._fail(step, definition, StepOutcome.HANDLER_ERROR, f"Internal error: {e}")
            raise

    def _claim(self, conn: sqlite3.Connection, step_id: str) -> bool:
        now = to_db_time(self.clock.now())
        result = conn.execute(
            """
            UPDATE steps SET state = ?, claimed_at = ?, updated_at = ?
            WHERE id = ? AND state = ?
            """,
            (StepState.EXECUTING.value, now, now, step_id, StepState.PENDING.value),
        )
        return result.rowcount > 0

    def _load_run(self, run_id: str) -> tuple[Run, WorkflowDefinition]:
        run = self.db.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        definition = self.db.get_definition(run.definition_id)
        if definition is None:
            raise RunNotFoundError(f"Definition {run.definition_id} of run {run_id} not found")
        return run, definition

    def _context(self, step: Step) -> dict[str, Any]:
        with self.db._connect() as conn:
            return self.coordinator.build_context(conn, step.run_id, step.scope, step.overlay)

    def _run_status(self, run_id: str) -> RunStatus | None:
        run = self.db.get_run(run_id)
        return run.status if run else None

    # ========== Node kinds ==========

    async def _execute_delay(
        self, step: Step, run: Run, definition: WorkflowDefinition
    ) -> StepResult:
        """First execution parks the step; the wake-up completes it."""
        node = definition.graph.get_node(step.node_id)
        config: WaitDelayConfig = node.config  # type: ignore[assignment]
        now = self.clock.now()
        if step.due_at is not None and step.due_at <= now:
            output = {"waited_until": step.due_at.isoformat()}
            return await self._complete(step, definition, output, [OUTPUT])

        due_at = step.due_at or now + config.as_timedelta()

        def park(conn: sqlite3.Connection) -> StepResult:
            if not self.timers.schedule_wake(conn, step.id, due_at):
                return StepResult(step_id=step.id, state=None, executed=False)
            if step.due_at is None:
                self.db.append_event(
                    conn,
                    RunEvent(
                        run_id=step.run_id,
                        event_type=EventType.STEP_SCHEDULED,
                        step_id=step.id,
                        node_id=step.node_id,
                        payload={"due_at": due_at.isoformat(), "scope": step.scope},
                        timestamp=now,
                    ),
                )
            self.coordinator.refresh_run_status(conn, step.run_id)
            return StepResult(step_id=step.id, state=StepState.SCHEDULED)

        logger.info(f"Step {step.node_id} in run {run.id} waiting until {due_at.isoformat()}")
        return await asyncio.to_thread(self.db.run_in_transaction, park)

    async def _execute_behavior(
        self, step: Step, run: Run, definition: WorkflowDefinition
    ) -> StepResult:
        node = definition.graph.get_node(step.node_id)
        config: BehaviorConfig = node.config  # type: ignore[assignment]
        try:
            behavior = self.registry.get(node.kind)
        except UnknownBehaviorError as e:
            return await self._fail(step, definition, StepOutcome.INVALID, str(e))

        recorded = None
        if behavior.side_effect:
            recorded = await asyncio.to_thread(self._recorded_side_effect, step)
        if recorded is not None:
            logger.info(
                f"Behavior '{node.kind}' already succeeded for {step_reference(step)}; "
                "completing from the recorded result"
            )
            return await self._complete(
                step, definition, recorded, [OUTPUT], event_type=EventType.STEP_DEDUPLICATED
            )

        context = await asyncio.to_thread(self._context, step)
        try:
            params = render_value(config.params, context)
            if behavior.params_model is not None:
                params = behavior.params_model.model_validate(params).model_dump(mode="json")
        except (HandlerError, ValidationError) as e:
            return await self._fail(step, definition, StepOutcome.INVALID, f"Invalid params: {e}")

        # The run may have been cancelled while this step waited for a worker
        if await asyncio.to_thread(self._run_status, run.id) == RunStatus.CANCELLED:
            return await self._fail(step, definition, StepOutcome.CANCELLED, "Run was cancelled")

        cost = next(
            c for c in (config.cost, behavior.cost, self.gate.default_cost) if c is not None
        )
        charge = await asyncio.to_thread(
            self.gate.charge, run.org_id, cost, f"step:{step_reference(step)}"
        )
        if not charge.ok:
            return await self._fail(
                step,
                definition,
                StepOutcome.BUDGET_EXCEEDED,
                f"Insufficient credit: needs {cost}, has {charge.available}",
                alert={"org_id": run.org_id, "amount": cost, "available": charge.available},
            )

        ctx = BehaviorContext(
            run_id=run.id,
            step_id=step.id,
            node_id=node.id,
            org_id=run.org_id,
            attempt=step.attempt,
            idempotency_key=step_reference(step),
            params=params,
            context=context,
            records=self.records,
            now=self.clock.now(),
        )
        timeout = config.timeout_seconds or self.handler_timeout
        try:
            output = await call_handler(behavior, ctx, timeout)
        except StepTimeoutError as e:
            return await self._retry_or_fail(step, definition, config, StepOutcome.TIMEOUT, str(e))
        except HandlerError as e:
            return await self._retry_or_fail(
                step, definition, config, StepOutcome.HANDLER_ERROR, str(e)
            )

        if behavior.side_effect:
            await asyncio.to_thread(
                self.db.run_in_transaction, self._record_side_effect, step, output
            )
        return await self._complete(step, definition, output, [OUTPUT])

    def _recorded_side_effect(self, step: Step) -> Any:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT output FROM side_effects WHERE run_id = ? AND node_id = ? AND scope = ?",
                (step.run_id, step.node_id, step.scope),
            ).fetchone()
            return _loads(row["output"], {}) if row else None

    def _record_side_effect(self, conn: sqlite3.Connection, step: Step, output: Any) -> None:
        conn.execute(
            """
            INSERT OR IGNORE INTO side_effects (run_id, node_id, scope, output, recorded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                step.run_id,
                step.node_id,
                step.scope,
                safe_json_dumps(output),
                to_db_time(self.clock.now()),
            ),
        )

    # ========== Transitions ==========

    async def _complete(
        self,
        step: Step,
        definition: WorkflowDefinition,
        output: Any,
        handles: list[str],
        event_type: EventType = EventType.STEP_COMPLETED,
    ) -> StepResult:
        def persist_completion(conn: sqlite3.Connection) -> StepResult:
            if not self._finish(conn, step, StepState.DONE, StepOutcome.SUCCEEDED, output, handles):
                return StepResult(step_id=step.id, state=None, executed=False)
            self.coordinator.record_output(conn, step.run_id, step.node_id, step.scope, output)
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=step.run_id,
                    event_type=event_type,
                    step_id=step.id,
                    node_id=step.node_id,
                    payload={"handles": handles, "scope": step.scope},
                    timestamp=self.clock.now(),
                ),
            )
            created = self.coordinator.route(
                conn, step.run_id, definition.graph, step.node_id, handles,
                step.scope, step.overlay, output,
            )
            return self._settle(conn, step, definition, StepState.DONE, created)

        return await asyncio.to_thread(self.db.run_in_transaction, persist_completion)

    def _complete_loop(
        self, conn: sqlite3.Connection, step: Step, definition: WorkflowDefinition
    ) -> StepResult:
        """Complete a loop node and spawn its item branches in one transaction."""
        node = definition.graph.get_node(step.node_id)
        if not self._finish(conn, step, StepState.DONE, StepOutcome.SUCCEEDED, None, []):
            return StepResult(step_id=step.id, state=None, executed=False)
        context = self.coordinator.build_context(conn, step.run_id, step.scope, step.overlay)
        output, fired, created = self.coordinator.start_loop(
            conn, step.run_id, definition.graph, node, step.scope, step.overlay, context
        )
        conn.execute(
            "UPDATE steps SET output = ?, fired_handles = ? WHERE id = ?",
            (safe_json_dumps(output), safe_json_dumps(fired), step.id),
        )
        self.coordinator.record_output(conn, step.run_id, step.node_id, step.scope, output)
        self.db.append_event(
            conn,
            RunEvent(
                run_id=step.run_id,
                event_type=EventType.STEP_COMPLETED,
                step_id=step.id,
                node_id=step.node_id,
                payload={"handles": fired, "scope": step.scope, **output},
                timestamp=self.clock.now(),
            ),
        )
        return self._settle(conn, step, definition, StepState.DONE, created)

    async def _fail(
        self,
        step: Step,
        definition: WorkflowDefinition,
        outcome: StepOutcome,
        error: str,
        alert: dict[str, Any] | None = None,
    ) -> StepResult:
        def persist_failure(conn: sqlite3.Connection) -> StepResult:
            if not self._finish(conn, step, StepState.FAILED, outcome, None, [], error):
                return StepResult(step_id=step.id, state=None, executed=False)
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=step.run_id,
                    event_type=EventType.STEP_FAILED,
                    step_id=step.id,
                    node_id=step.node_id,
                    payload={"outcome": outcome.value, "error": error, "scope": step.scope},
                    timestamp=self.clock.now(),
                ),
            )
            if alert is not None:
                self.db.append_event(
                    conn,
                    RunEvent(
                        run_id=step.run_id,
                        event_type=EventType.BUDGET_EXCEEDED,
                        step_id=step.id,
                        node_id=step.node_id,
                        payload=alert,
                        timestamp=self.clock.now(),
                    ),
                )
            return self._settle(conn, step, definition, StepState.FAILED, [])

        logger.warning(f"Step {step.node_id}@'{step.scope}' in run {step.run_id} failed: {error}")
        return await asyncio.to_thread(self.db.run_in_transaction, persist_failure)

    async def _retry_or_fail(
        self,
        step: Step,
        definition: WorkflowDefinition,
        config: BehaviorConfig,
        outcome: StepOutcome,
        error: str,
    ) -> StepResult:
        max_attempts = config.max_attempts or self.retry_policy.max_attempts
        if step.attempt >= max_attempts:
            return await self._fail(
                step, definition, outcome, f"{error} (after {step.attempt} attempt(s))"
            )

        delay = self.retry_policy.get_delay(step.attempt - 1)
        due_at = self.clock.now() + timedelta(seconds=delay)

        def schedule_retry(conn: sqlite3.Connection) -> StepResult:
            result = conn.execute(
                """
                UPDATE steps SET state = ?, attempt = attempt + 1, due_at = ?, error = ?,
                                 claimed_at = NULL, updated_at = ?
                WHERE id = ? AND state = ?
                """,
                (
                    StepState.SCHEDULED.value,
                    to_db_time(due_at),
                    error,
                    to_db_time(self.clock.now()),
                    step.id,
                    StepState.EXECUTING.value,
                ),
            )
            if result.rowcount == 0:
                return StepResult(step_id=step.id, state=None, executed=False)
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=step.run_id,
                    event_type=EventType.STEP_RETRY_SCHEDULED,
                    step_id=step.id,
                    node_id=step.node_id,
                    payload={
                        "attempt": step.attempt + 1,
                        "due_at": due_at.isoformat(),
                        "error": error,
                    },
                    timestamp=self.clock.now(),
                ),
            )
            self.coordinator.refresh_run_status(conn, step.run_id)
            return StepResult(step_id=step.id, state=StepState.SCHEDULED)

        logger.info(
            f"Step {step.node_id} attempt {step.attempt}/{max_attempts} failed, "
            f"retrying in {delay:.1f}s: {error}"
        )
        return await asyncio.to_thread(self.db.run_in_transaction, schedule_retry)

    def _finish(
        self,
        conn: sqlite3.Connection,
        step: Step,
        state: StepState,
        outcome: StepOutcome,
        output: Any,
        handles: list[str],
        error: str | None = None,
    ) -> bool:
        """Guarded ``executing -> done|failed`` update. False if the claim was lost."""
        result = conn.execute(
            """
            UPDATE steps SET state = ?, outcome = ?, output = ?, fired_handles = ?, error = ?,
                             claimed_at = NULL, updated_at = ?
            WHERE id = ? AND state = ?
            """,
            (
                state.value,
                outcome.value,
                safe_json_dumps(output) if output is not None else None,
                safe_json_dumps(handles),
                error,
                to_db_time(self.clock.now()),
                step.id,
                StepState.EXECUTING.value,
            ),
        )
        if result.rowcount == 0:
            logger.warning(f"Step {step.id} is no longer executing; discarding result")
            return False
        return True

    def _settle(
        self,
        conn: sqlite3.Connection,
        step: Step,
        definition: WorkflowDefinition,
        state: StepState,
        created: list[str],
    ) -> StepResult:
        created = created + self.coordinator.settle_scopes(
            conn, step.run_id, definition.graph, step.scope
        )
        outcome = self.coordinator.refresh_run_status(conn, step.run_id)
        return StepResult(step_id=step.id, state=state, next_steps=created, run_outcome=outcome)

    # ========== Run-level operations ==========

    def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> bool:
        """Cancel a run: no new steps start, waiting steps fail as cancelled.

        Steps already executing finish, but their successors are not created.
        Returns False if the run had already finished.
        """

        def apply(conn: sqlite3.Connection) -> bool:
            row = conn.execute("SELECT status FROM runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if row["status"] in ("completed", "failed", "cancelled"):
                return False
            now = to_db_time(self.clock.now())
            conn.execute(
                """
                UPDATE steps SET state = ?, outcome = ?, error = ?, updated_at = ?
                WHERE run_id = ? AND state IN (?, ?)
                """,
                (
                    StepState.FAILED.value,
                    StepOutcome.CANCELLED.value,
                    reason,
                    now,
                    run_id,
                    StepState.PENDING.value,
                    StepState.SCHEDULED.value,
                ),
            )
            conn.execute(
                "UPDATE runs SET status = ?, error = ?, updated_at = ?, finished_at = ? WHERE id = ?",
                (RunStatus.CANCELLED.value, reason, now, now, run_id),
            )
            self.db.append_event(
                conn,
                RunEvent(
                    run_id=run_id,
                    event_type=EventType.RUN_CANCELLED,
                    payload={"reason": reason},
                    timestamp=self.clock.now(),
                ),
            )
            return True

        cancelled = self.db.run_in_transaction(apply)
        if cancelled:
            logger.info(f"Run {run_id} cancelled: {reason}")
        return cancelled

    def claim_candidates(self, limit: int) -> list[str]:
        """Oldest pending step ids. Claiming happens in :meth:`execute`."""
        with self.db._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM steps WHERE state = ? ORDER BY created_at, rowid LIMIT ?",
                (StepState.PENDING.value, limit),
            ).fetchall()
            return [row["id"] for row in rows]

    def requeue_stale(self, lease_seconds: float) -> list[str]:
        """Hand executing steps whose worker vanished back to the queue."""
        cutoff = to_db_time(self.clock.now() - timedelta(seconds=lease_seconds))

        def apply(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                "SELECT id FROM steps WHERE state = ? AND claimed_at < ?",
                (StepState.EXECUTING.value, cutoff),
            ).fetchall()
            requeued = []
            for row in rows:
                result = conn.execute(
                    """
                    UPDATE steps SET state = ?, claimed_at = NULL, updated_at = ?
                    WHERE id = ? AND state = ? AND claimed_at < ?
                    """,
                    (
                        StepState.PENDING.value,
                        to_db_time(self.clock.now()),
                        row["id"],
                        StepState.EXECUTING.value,
                        cutoff,
                    ),
                )
                if result.rowcount > 0:
                    requeued.append(row["id"])
            return requeued

        requeued = self.db.run_in_transaction(apply)
        if requeued:
            logger.warning(f"Requeued {len(requeued)} step(s) with expired leases")
        return requeued

    def fail_stalled_runs(self, stall_timeout_seconds: float) -> list[str]:
        """Fail waiting runs with no live steps that have not moved for too long.

        Covers ``wait_all`` merges whose missing branch failed or was never
        taken: the wait set can never fire, so the run is ended explicitly.
        """
        cutoff = to_db_time(self.clock.now() - timedelta(seconds=stall_timeout_seconds))

        def apply(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute(
                """
                SELECT id FROM runs
                WHERE status = 'waiting' AND updated_at < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM steps
                      WHERE steps.run_id = runs.id AND steps.state IN ('pending', 'executing', 'scheduled')
                  )
                """,
                (cutoff,),
            ).fetchall()
            now = self.clock.now()
            failed = []
            for row in rows:
                error = "Run stalled: merge inputs never arrived"
                conn.execute(
                    "UPDATE runs SET status = ?, error = ?, updated_at = ?, finished_at = ? WHERE id = ?",
                    (RunStatus.FAILED.value, error, to_db_time(now), to_db_time(now), row["id"]),
                )
                self.db.append_event(
                    conn,
                    RunEvent(
                        run_id=row["id"],
                        event_type=EventType.RUN_FAILED,
                        payload={"error": error},
                        timestamp=now,
                    ),
                )
                failed.append(row["id"])
            return failed

        failed = self.db.run_in_transaction(apply)
        for run_id in failed:
            logger.warning(f"Run {run_id} failed after stalling at an unfired merge")
        return failed

    def purge_expired(self, retention_days: int) -> int:
        cutoff: datetime = self.clock.now() - timedelta(days=retention_days)
        removed = self.db.purge_finished_runs(cutoff)
        if removed:
            logger.info(f"Purged {removed} run(s) finished before {cutoff.isoformat()}")
        return removed
