"""Background worker for workflow step execution.

Workers are stateless: every poll reads the queue from the database, so any
number of workers (in one process or many) can share a database file.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from layerflow.core.graph_schema import TERMINAL_RUN_STATUSES, RunStatus

if TYPE_CHECKING:
    from layerflow.core.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class WorkflowWorker:
    """
    Background worker that executes pending steps.

    Each poll:
    - Fires due cron schedules
    - Releases due timers and retries back to pending
    - Requeues steps whose worker lease expired
    - Fails runs stalled at a merge that can never fire
    - Executes a batch of pending steps in parallel
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        poll_interval: float = 1.0,
        batch_size: int = 20,
        max_parallel: int = 4,
        lease_seconds: float = 300.0,
        stall_timeout_seconds: float = 7 * 24 * 3600,
        retention_days: int | None = None,
    ):
        self.engine = engine
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.max_parallel = max_parallel
        self.lease_seconds = lease_seconds
        self.stall_timeout_seconds = stall_timeout_seconds
        self.retention_days = retention_days
        self.running = False

    def maintain(self) -> None:
        """Timer, schedule and lease housekeeping for one poll."""
        executor = self.engine.executor
        self.engine.timers.fire_due_schedules(self.engine.dispatcher)
        self.engine.timers.poll_due()
        executor.requeue_stale(self.lease_seconds)
        executor.fail_stalled_runs(self.stall_timeout_seconds)

    async def run_once(self) -> int:
        """
        Run one poll cycle.

        Returns:
            Number of steps executed (redeliveries and lost claims excluded)
        """
        await asyncio.to_thread(self.maintain)
        step_ids = await asyncio.to_thread(self.engine.executor.claim_candidates, self.batch_size)
        if not step_ids:
            return 0

        # Created per poll: run_once may be driven from successive event loops
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def bounded(step_id: str):
            async with semaphore:
                return await self.engine.executor.execute(step_id)

        results = await asyncio.gather(*[bounded(sid) for sid in step_ids], return_exceptions=True)
        executed = 0
        for step_id, result in zip(step_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"Step {step_id} crashed: {result}")
            elif result.executed:
                executed += 1
        return executed

    async def run_until_idle(self, max_rounds: int = 1000) -> int:
        """Execute until no step is ready right now. Returns steps executed."""
        total = 0
        for _ in range(max_rounds):
            executed = await self.run_once()
            total += executed
            if executed == 0:
                return total
        logger.warning(f"Worker still busy after {max_rounds} rounds")
        return total

    async def run_until_complete(self, run_id: str) -> RunStatus:
        """
        Drive a single run until it finishes.
        Returns final status.
        """
        while True:
            run = await asyncio.to_thread(self.engine.db.get_run, run_id)
            if run is None or run.status in TERMINAL_RUN_STATUSES:
                return run.status if run else RunStatus.FAILED

            executed = await self.run_once()

            # Only sleep when no work was done (waiting on timers or merges).
            # When work is done, immediately check for more.
            if executed == 0:
                await asyncio.sleep(self.poll_interval)

    async def start_daemon(self):
        """
        Start daemon mode - process steps of all runs until stopped.
        """
        self.running = True
        logger.info("Worker started")

        while self.running:
            executed = 0
            try:
                executed = await self.run_once()
                if self.retention_days:
                    await asyncio.to_thread(self.engine.executor.purge_expired, self.retention_days)
            except Exception as e:
                logger.error(f"Worker error: {e}")

            if executed == 0:
                await asyncio.sleep(self.poll_interval)
        logger.info("Worker stopped")

    def stop(self):
        """Stop the worker daemon"""
        self.running = False
