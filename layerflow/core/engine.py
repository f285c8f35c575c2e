"""Engine facade wiring every component from one configuration."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from layerflow.core.behaviors import BehaviorRegistry, register_builtin_behaviors
from layerflow.core.config import EngineConfig
from layerflow.core.coordinator import Coordinator
from layerflow.core.definitions import DefinitionService
from layerflow.core.dispatcher import DispatchResult, Dispatcher
from layerflow.core.errors import RunNotFoundError
from layerflow.core.executor import StepExecutor
from layerflow.core.metering import CreditLedger, MeteringGate
from layerflow.core.records import SqliteRecordStore
from layerflow.core.state import Database, Run, RunEvent, Step
from layerflow.core.timers import Clock, SystemClock, TimerService
from layerflow.core.worker import WorkflowWorker

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """All engine components sharing one database and one clock.

    The components hold no run state in memory, so several engines (or
    processes) may point at the same database file.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        registry: BehaviorRegistry | None = None,
    ):
        self.config = config or EngineConfig()
        self.config.check()
        self.clock = clock or SystemClock()
        if registry is None:
            registry = register_builtin_behaviors(BehaviorRegistry())
        self.registry = registry

        self.db = Database(Path(self.config.database_path))
        self.records = SqliteRecordStore(self.db)
        self.ledger = CreditLedger(self.db, self.clock)
        self.gate = MeteringGate(
            self.ledger,
            enabled=self.config.metering.enabled,
            default_cost=self.config.metering.default_cost,
        )
        self.coordinator = Coordinator(self.db, self.clock)
        self.timers = TimerService(self.db, self.clock)
        self.dispatcher = Dispatcher(self.db, self.coordinator, self.clock)
        self.executor = StepExecutor(
            self.db,
            self.registry,
            self.coordinator,
            self.timers,
            self.gate,
            self.records,
            self.clock,
            retry_policy=self.config.retry,
            handler_timeout=self.config.handler_timeout,
        )
        self.definitions = DefinitionService(
            self.db,
            self.registry,
            self.timers,
            self.clock,
            max_handler_timeout=self.config.worker.lease_seconds,
        )
        self.worker = WorkflowWorker(
            self,
            poll_interval=self.config.worker.poll_interval,
            batch_size=self.config.worker.batch_size,
            max_parallel=self.config.worker.max_parallel,
            lease_seconds=self.config.worker.lease_seconds,
            stall_timeout_seconds=self.config.runs.stall_timeout_seconds,
            retention_days=self.config.runs.retention_days,
        )

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        clock: Clock | None = None,
        registry: BehaviorRegistry | None = None,
    ) -> WorkflowEngine:
        return cls(config=config, clock=clock, registry=registry)

    # --- Convenience API used by the HTTP server and CLI ---

    def emit(
        self, event_kind: str, payload: dict[str, Any], idempotency_key: str | None = None
    ) -> DispatchResult:
        return self.dispatcher.dispatch(event_kind, payload, idempotency_key)

    def get_run(self, run_id: str) -> Run:
        run = self.db.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def inspect_run(self, run_id: str) -> tuple[Run, list[Step], list[RunEvent]]:
        run = self.get_run(run_id)
        return run, self.db.get_steps(run_id), self.db.get_events(run_id)

    def cancel_run(self, run_id: str, reason: str = "Cancelled by user") -> Run:
        self.executor.cancel_run(run_id, reason)
        return self.get_run(run_id)
