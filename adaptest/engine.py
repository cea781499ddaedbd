"""
Selection Engine - one planning cycle end to end.

change set -> impact analysis -> risk scores -> test plan
           -> batched execution -> feedback -> next cycle's risk scores

Cycles are serialized: one change set is processed to completion before
the next starts, and the dependency graph is held read-only meanwhile.
Dependency updates queue behind the running cycle.
"""

import asyncio
from datetime import UTC, datetime

import structlog

from .config import Settings, load_settings
from .core.errors import ConfigurationError
from .core.models import ChangeSet, ExecutionReport, TestCase, TestPlan, Unit
from .core.planner import TestSelectionPlanner
from .core.risk import RiskModel, RiskScore
from .execution.coordinator import ExecutionCoordinator, JobRunner
from .services.ai_backend import AnalysisBackend, AnthropicAnalysisBackend
from .services.dependency_graph import ChangeImpactAnalyzer, DependencyGraph, ImpactResult
from .services.feedback_tracker import FeedbackTracker
from .services.signal_collector import SignalCollector
from .services.state_store import StateStore
from .services.test_generator import TestGenerator
from .utils.logging import LogContext, configure_logging, log_operation

logger = structlog.get_logger()


class SelectionEngine:
    """Wires the risk model, impact analyzer, planner, coordinator and tracker."""

    def __init__(
        self,
        graph: DependencyGraph,
        risk_model: RiskModel,
        analyzer: ChangeImpactAnalyzer,
        planner: TestSelectionPlanner,
        tracker: FeedbackTracker,
        coordinator: ExecutionCoordinator | None = None,
        collector: SignalCollector | None = None,
        generator: TestGenerator | None = None,
        store: StateStore | None = None,
    ):
        self.graph = graph
        self.risk_model = risk_model
        self.analyzer = analyzer
        self.planner = planner
        self.tracker = tracker
        self.coordinator = coordinator
        self.collector = collector
        self.generator = generator
        self.store = store
        self._cycle_lock = asyncio.Lock()
        self.log = logger.bind(component="selection_engine")

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        runner: JobRunner | None = None,
        backend: AnalysisBackend | None = None,
        history=None,
        persist: bool = False,
        setup_logging: bool = False,
    ) -> "SelectionEngine":
        """Build an engine from settings.

        Raises:
            ConfigurationError: invalid settings or risk weights
        """
        settings = settings or load_settings()
        if setup_logging:
            configure_logging(settings.log_level, json_format=settings.json_logs)

        if backend is None and settings.anthropic_api_key is not None:
            backend = AnthropicAnalysisBackend.from_settings(settings)

        store = StateStore(settings.state_dir) if persist else None
        graph = DependencyGraph()
        risk_model = RiskModel.from_settings(settings)
        tracker = FeedbackTracker.from_settings(settings, store=store)

        collector = None
        if backend is not None or history is not None:
            collector = SignalCollector(
                risk_model,
                backend=backend,
                history=history,
                window_days=settings.window_days,
                max_attempts=settings.backend_max_attempts,
                retry_delay=settings.backend_retry_delay,
            )

        return cls(
            graph=graph,
            risk_model=risk_model,
            analyzer=ChangeImpactAnalyzer.from_settings(graph, settings),
            planner=TestSelectionPlanner.from_settings(settings),
            tracker=tracker,
            coordinator=ExecutionCoordinator.from_settings(runner, tracker, settings) if runner else None,
            collector=collector,
            generator=TestGenerator(backend) if backend is not None else None,
            store=store,
        )

    # =========================================================================
    # REGISTRY (between cycles)
    # =========================================================================

    def load_state(self) -> None:
        """Rebuild the graph and feedback log from persisted state."""
        if self.store is None:
            return
        for unit in self.store.load_units():
            self.graph.add_unit(unit)
        for test in self.store.load_tests():
            self.graph.add_test(test)
        self.graph.mark_rebuilt()
        self.tracker.load()
        self.log.info(
            "State loaded",
            units=len(self.graph.units),
            tests=len(self.graph.tests),
            feedback_records=len(self.tracker),
        )

    def register_unit(self, unit: Unit) -> None:
        self.graph.add_unit(unit)
        if self.store is not None:
            self.store.save_unit(self.graph.units[unit.unit_id])

    def register_test(self, test: TestCase) -> None:
        self.graph.add_test(test)
        if self.store is not None:
            self.store.save_test(test)

    async def update_unit(self, unit_id: str, dependencies: set[str]) -> bool:
        """Apply a dependency change once no cycle is running."""
        async with self._cycle_lock:
            changed = self.graph.update_dependencies(unit_id, dependencies)
            if changed and self.store is not None:
                self.store.save_unit(self.graph.units[unit_id])
            return changed

    # =========================================================================
    # CYCLE
    # =========================================================================

    def score_units(self, impact: ImpactResult) -> dict[str, RiskScore]:
        scores = {
            unit_id: self.risk_model.score(self.graph.units[unit_id])
            for unit_id in impact.affected_units
        }
        for unit_id in impact.unknown_units:
            scores[unit_id] = self.risk_model.unknown_score(unit_id)
        return scores

    async def _plan(
        self,
        change_set: ChangeSet,
        budget: float,
        refresh_signals: bool,
        now: datetime,
    ) -> tuple[TestPlan, ImpactResult]:
        signal_notes: list[str] = []

        self.tracker.decay_into(self.risk_model, self.graph, now)
        impact = self.analyzer.impact_of(change_set)

        if refresh_signals and self.collector is not None and impact.affected_units:
            refreshed = await self.collector.refresh(
                [self.graph.units[u] for u in impact.affected_units]
            )
            signal_notes.extend(refreshed.degraded)
            if self.store is not None:
                for unit_id in refreshed.refreshed:
                    self.store.save_unit(self.graph.units[unit_id])

        scores = self.score_units(impact)
        aggregates = self.tracker.aggregates(self.graph.tests.keys(), now)
        plan = self.planner.plan(impact, scores, budget, self.graph.tests, aggregates)
        plan.degraded = signal_notes + plan.degraded
        return plan, impact

    async def plan_cycle(
        self,
        change_set: ChangeSet,
        budget: float,
        refresh_signals: bool = False,
        now: datetime | None = None,
    ) -> TestPlan:
        """Plan without executing.

        Raises:
            BudgetInfeasibleError: must-run tests cannot fit the budget
        """
        now = now or datetime.now(UTC)
        async with self._cycle_lock:
            with LogContext(change_id=change_set.change_id), self.graph.locked():
                with log_operation("plan_cycle", self.log, budget=budget) as op:
                    plan, _ = await self._plan(change_set, budget, refresh_signals, now)
                    op["planned"] = len(plan.entries)
                    op["deferred"] = len(plan.deferred)
        return plan

    async def run_cycle(
        self,
        change_set: ChangeSet,
        budget: float,
        refresh_signals: bool = False,
        run_id: str | None = None,
    ) -> ExecutionReport:
        """Plan and execute one change set, recording feedback.

        Raises:
            ConfigurationError: no job runner configured
            BudgetInfeasibleError: must-run tests cannot fit the budget
        """
        if self.coordinator is None:
            raise ConfigurationError("A job runner is required to run a cycle")

        now = datetime.now(UTC)
        async with self._cycle_lock:
            with LogContext(change_id=change_set.change_id), self.graph.locked():
                with log_operation("run_cycle", self.log, budget=budget) as op:
                    plan, impact = await self._plan(change_set, budget, refresh_signals, now)
                    report = await self.coordinator.execute(plan, run_id=run_id)

                    notes: list[str] = []
                    if self.generator is not None and plan.coverage_gaps:
                        report.suggestions, notes = await self.generator.suggest_for_gaps(plan, self.graph)

                    report.degraded = (
                        plan.degraded
                        + notes
                        + [f"test {t} timed out" for t in report.timeouts]
                        + [f"test {t} not run: runner error" for t in report.runner_errors]
                        + [f"test {t} cancelled before start" for t in report.cancelled]
                    )

                    op["run_id"] = report.run_id
                    op["failures"] = len(report.failures)
                    op["affected_units"] = len(impact.affected_units)
        return report
