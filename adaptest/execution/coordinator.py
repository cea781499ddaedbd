"""
Execution Coordinator

Runs a TestPlan through the CI job runner and feeds results back:
1. Exclusive tests run strictly one at a time in a dedicated batch
2. Parallel-safe tests are dealt round-robin into one batch per worker,
   so the highest-priority tests land in the first wave of every worker
3. Batch i+1 starts once batch i's must-run subset has reported
4. Hangs become `timeout` outcomes; runner crashes stay local to their call
5. Every outcome becomes a FeedbackRecord for the tracker

Cancellation is honoured between batches only, so no batch leaves partial
feedback behind.
"""

import asyncio
import os
import time
from abc import ABC, abstractmethod
from datetime import UTC, datetime
from uuid import uuid4

import structlog

from ..core.models import (
    ExecutionReport,
    FeedbackRecord,
    Isolation,
    Outcome,
    PlannedTest,
    TestBatch,
    TestCase,
    TestOutcome,
    TestPlan,
)

logger = structlog.get_logger()


class JobRunner(ABC):
    """Contract for the CI job runner that actually executes tests."""

    @abstractmethod
    async def execute(self, batch: TestBatch) -> list[TestOutcome]:
        """Run every test in the batch and report one outcome per test.

        The runner should honour batch.timeouts per test and report
        Outcome.TIMEOUT itself where it can.
        """
        pass


class ExecutionCoordinator:
    """Batches a plan, runs it, and records the results."""

    def __init__(
        self,
        runner: JobRunner,
        tracker=None,
        workers: int | None = None,
        timeout_multiplier: float = 3.0,
        min_timeout_seconds: float = 1.0,
    ):
        self.runner = runner
        self.tracker = tracker
        self.workers = max(1, workers or os.cpu_count() or 1)
        self.timeout_multiplier = timeout_multiplier
        self.min_timeout_seconds = min_timeout_seconds
        self._cancel_requested = False
        self.log = logger.bind(component="execution_coordinator")

    @classmethod
    def from_settings(cls, runner: JobRunner, tracker, settings) -> "ExecutionCoordinator":
        return cls(
            runner,
            tracker=tracker,
            workers=settings.workers,
            timeout_multiplier=settings.timeout_multiplier,
            min_timeout_seconds=settings.min_timeout_seconds,
        )

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next batch starts."""
        self._cancel_requested = True
        self.log.info("Cancellation requested")

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def timeout_for(self, test: TestCase) -> float:
        """Declared timeout, else historical cost times the multiplier."""
        if test.timeout_seconds is not None:
            return test.timeout_seconds
        return max(self.min_timeout_seconds, test.historical_cost * self.timeout_multiplier)

    # =========================================================================
    # PARTITIONING
    # =========================================================================

    def _batch(self, batch_id: str, tests: list[PlannedTest], exclusive: bool = False) -> TestBatch:
        return TestBatch(
            batch_id=batch_id,
            tests=tests,
            exclusive=exclusive,
            timeouts={t.test_id: self.timeout_for(t.test) for t in tests},
        )

    def partition(self, plan: TestPlan) -> tuple[TestBatch | None, list[TestBatch]]:
        """Split a plan into the exclusive batch and N parallel-safe batches.

        Plan order is priority order, so dealing round-robin spreads the
        highest-priority tests across the first position of every batch.
        """
        exclusive = [e for e in plan.entries if e.test.isolation == Isolation.EXCLUSIVE]
        parallel = [e for e in plan.entries if e.test.isolation == Isolation.PARALLEL_SAFE]

        lanes: list[list[PlannedTest]] = [[] for _ in range(self.workers)]
        for i, entry in enumerate(parallel):
            lanes[i % self.workers].append(entry)

        exclusive_batch = self._batch("exclusive", exclusive, exclusive=True) if exclusive else None
        parallel_batches = [
            self._batch(f"parallel-{i}", lane)
            for i, lane in enumerate(lanes)
            if lane
        ]
        return exclusive_batch, parallel_batches

    # =========================================================================
    # EXECUTION
    # =========================================================================

    async def execute(self, plan: TestPlan, run_id: str | None = None) -> ExecutionReport:
        """Run the plan and return the execution report."""
        report = ExecutionReport(run_id=run_id or uuid4().hex[:12], plan=plan)
        log = self.log.bind(run_id=report.run_id, change_id=plan.change_id)

        exclusive_batch, parallel_batches = self.partition(plan)
        log.info(
            "Execution started",
            planned=len(plan.entries),
            exclusive=len(exclusive_batch) if exclusive_batch else 0,
            parallel_batches=len(parallel_batches),
        )
        start_time = time.time()

        if exclusive_batch:
            if self._cancel_requested:
                report.cancelled.extend(exclusive_batch.test_ids)
            else:
                for i, entry in enumerate(exclusive_batch.tests):
                    await self._run_call(
                        self._batch(f"{exclusive_batch.batch_id}-{i}", [entry], exclusive=True),
                        report,
                    )

        in_flight: list[asyncio.Task] = []
        for batch in parallel_batches:
            if self._cancel_requested:
                report.cancelled.extend(batch.test_ids)
                continue

            must_run_reported = asyncio.Event()
            task = asyncio.create_task(self._run_parallel_batch(batch, report, must_run_reported))
            in_flight.append(task)

            gate = asyncio.create_task(must_run_reported.wait())
            await asyncio.wait({gate, task}, return_when=asyncio.FIRST_COMPLETED)
            if not gate.done():
                gate.cancel()

        if in_flight:
            await asyncio.gather(*in_flight)

        order = {test_id: i for i, test_id in enumerate(plan.test_ids)}
        report.outcomes.sort(key=lambda o: order.get(o.test_id, len(order)))

        if self.tracker is not None:
            report.flaky_tests = [t for t in plan.test_ids if self.tracker.is_flaky(t)]

        report.finished_at = datetime.now(UTC)
        # A request made before or during this run is consumed by it
        self._cancel_requested = False
        log.info(
            "Execution completed",
            executed=len(report.outcomes),
            failures=len(report.failures),
            timeouts=len(report.timeouts),
            cancelled=len(report.cancelled),
            runner_errors=len(report.runner_errors),
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return report

    async def _run_parallel_batch(
        self,
        batch: TestBatch,
        report: ExecutionReport,
        must_run_reported: asyncio.Event,
    ) -> None:
        must_run = [t for t in batch.tests if t.must_run]
        rest = [t for t in batch.tests if not t.must_run]
        try:
            if must_run:
                await self._run_call(self._batch(f"{batch.batch_id}-must-run", must_run), report)
        finally:
            must_run_reported.set()
        if rest:
            await self._run_call(self._batch(f"{batch.batch_id}-rest", rest), report)

    async def _run_call(self, batch: TestBatch, report: ExecutionReport) -> None:
        """One runner call: enforce the timeout, normalise outcomes, record feedback."""
        deadline = sum(batch.timeouts.values())

        try:
            outcomes = await asyncio.wait_for(self.runner.execute(batch), timeout=deadline)
        except asyncio.TimeoutError:
            self.log.warning(
                "Runner call timed out",
                batch_id=batch.batch_id,
                timeout_seconds=deadline,
                tests=len(batch),
            )
            outcomes = []
        except Exception as e:
            self.log.error(
                "Runner call failed",
                batch_id=batch.batch_id,
                error=str(e),
                tests=len(batch),
            )
            for test_id in batch.test_ids:
                report.runner_errors[test_id] = f"{type(e).__name__}: {e}"
            return

        by_id = {o.test_id: o for o in outcomes if o.test_id in batch.timeouts}
        now = datetime.now(UTC)

        for test_id in batch.test_ids:
            outcome = by_id.get(test_id) or TestOutcome(
                test_id=test_id,
                outcome=Outcome.TIMEOUT,
                wall_time=batch.timeouts[test_id],
                message="No outcome reported before timeout",
            )
            report.outcomes.append(outcome)

            if self.tracker is None:
                continue
            record = FeedbackRecord(
                test_id=test_id,
                run_id=report.run_id,
                outcome=outcome.outcome,
                wall_time=outcome.wall_time,
                timestamp=now,
                defect_linked=outcome.defect_linked,
            )
            if self.tracker.record(record):
                report.feedback_recorded += 1
