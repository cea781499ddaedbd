"""
Test Selection Planner

Turns impacted units, risk scores and a time budget into an ordered,
de-duplicated test plan:
1. Must-run tests (unit risk >= threshold) are admitted regardless of budget
2. Low-confidence impact analysis pulls in the regression safety net
3. Remaining candidates are admitted greedily in priority order
4. Whatever does not fit is deferred and reported, never silently dropped

Candidate order is (priority desc, defect-link rate desc, clean before flaky,
cost asc, id asc): a greedy knapsack heuristic, deterministic and easy to
explain. Admission runs must-run first, but the plan lists entries in
candidate order.
"""

from dataclasses import dataclass

import structlog

from .errors import BudgetInfeasibleError
from .models import DeferredTest, PlannedTest, TestCase, TestPlan
from .risk import RiskModel, RiskScore

logger = structlog.get_logger()


@dataclass
class _Candidate:
    test: TestCase
    priority: float
    target_coverage: int
    cost: float
    link_rate: float
    flaky: bool
    must_run: bool
    reason: str

    @property
    def sort_key(self) -> tuple:
        return (-self.priority, -self.link_rate, self.flaky, self.cost, self.test.test_id)


class TestSelectionPlanner:
    """Builds a TestPlan for one change set."""

    def __init__(
        self,
        must_run_threshold: float = 7.0,
        confidence_floor: float = 0.6,
        overrun_tolerance: float = 0.1,
        flaky_threshold: float = 0.1,
        flaky_penalty: float = 0.5,
    ):
        self.must_run_threshold = must_run_threshold
        self.confidence_floor = confidence_floor
        self.overrun_tolerance = overrun_tolerance
        self.flaky_threshold = flaky_threshold
        self.flaky_penalty = flaky_penalty
        self.log = logger.bind(component="planner")

    @classmethod
    def from_settings(cls, settings) -> "TestSelectionPlanner":
        return cls(
            must_run_threshold=settings.must_run_threshold,
            confidence_floor=settings.confidence_floor,
            overrun_tolerance=settings.overrun_tolerance,
            flaky_threshold=settings.flaky_threshold,
            flaky_penalty=settings.flaky_penalty,
        )

    def plan(
        self,
        impact,
        risk_scores: dict[str, RiskScore],
        budget: float,
        tests: dict[str, TestCase],
        aggregates: dict | None = None,
    ) -> TestPlan:
        """Produce the test plan.

        Args:
            impact: ImpactResult for the change set
            risk_scores: Score per affected (and unknown) unit id
            budget: Time budget in cost units (seconds)
            tests: Test registry keyed by test id
            aggregates: Optional TestAggregate per test id from the feedback tracker

        Raises:
            BudgetInfeasibleError: must-run tests alone exceed the budget
                beyond the overrun tolerance; no plan is produced
        """
        if budget < 0:
            raise ValueError(f"budget must be non-negative, got {budget}")

        aggregates = aggregates or {}
        affected = set(impact.affected_units)
        degraded: list[str] = []

        unit_targets = {
            unit_id: RiskModel.coverage_target(score.value)
            for unit_id, score in risk_scores.items()
            if unit_id in affected or score.unknown
        }
        for unit_id in impact.unknown_units:
            degraded.append(f"unknown unit {unit_id} treated as maximum risk")

        candidates: dict[str, _Candidate] = {}
        for test_id in impact.impacted_tests:
            test = tests.get(test_id)
            if test is None:
                degraded.append(f"impacted test {test_id} is not registered; skipped")
                continue
            candidates[test_id] = self._candidate(
                test, affected, impact.unknown_units, risk_scores, unit_targets, aggregates
            )

        ordered = sorted(candidates.values(), key=lambda c: c.sort_key)

        for c in ordered:
            if c.flaky:
                degraded.append(f"flaky test {c.test.test_id} down-weighted in tie-break")

        # Must-run set
        must_run = [c for c in ordered if c.must_run]
        must_run_cost = sum(c.cost for c in must_run)
        if must_run_cost > budget * (1 + self.overrun_tolerance):
            self.log.warning(
                "Must-run tests exceed budget",
                budget=budget,
                must_run_cost=must_run_cost,
                must_run=len(must_run),
            )
            raise BudgetInfeasibleError(budget, must_run_cost, self.overrun_tolerance)

        overrun = max(0.0, must_run_cost - budget)
        if overrun > 0:
            degraded.append(f"must-run tests exceed budget by {overrun:.1f} within tolerance")

        admitted: dict[str, _Candidate] = {}
        deferred: list[DeferredTest] = []
        spent = 0.0

        for c in must_run:
            admitted[c.test.test_id] = c
            spent += c.cost

        # Regression safety net
        safety_net_added: list[str] = []
        if impact.confidence < self.confidence_floor:
            degraded.append(
                f"impact confidence {impact.confidence:.2f} below floor "
                f"{self.confidence_floor:.2f}; regression safety net added"
            )
            net = [
                candidates.get(test_id) or self._candidate(
                    test, affected, [], risk_scores, unit_targets, aggregates,
                    reason="regression safety net",
                )
                for test_id, test in sorted(tests.items())
                if test.safety_net and test_id not in admitted
            ]
            for c in sorted(net, key=lambda c: c.sort_key):
                if spent + c.cost <= budget:
                    admitted[c.test.test_id] = c
                    spent += c.cost
                    if c.test.test_id not in candidates:
                        safety_net_added.append(c.test.test_id)
                else:
                    deferred.append(self._deferred(c, "budget exhausted (safety net)"))

        # Greedy fill
        deferred_ids = {d.test_id for d in deferred}
        for c in ordered:
            test_id = c.test.test_id
            if test_id in admitted or test_id in deferred_ids:
                continue
            if spent + c.cost <= budget:
                admitted[test_id] = c
                spent += c.cost
            else:
                deferred.append(self._deferred(c, "budget exhausted"))

        if deferred:
            degraded.append(f"{len(deferred)} test(s) deferred for budget")

        covered_units = {u for t in tests.values() for u in t.covers}
        coverage_gaps = sorted(u for u in affected if u not in covered_units)

        plan = TestPlan(
            change_id=impact.change_id,
            budget=budget,
            entries=[self._planned(c) for c in sorted(admitted.values(), key=lambda c: c.sort_key)],
            deferred=deferred,
            estimated_cost=spent,
            budget_overrun=overrun,
            unit_coverage_targets=unit_targets,
            coverage_gaps=coverage_gaps,
            confidence=impact.confidence,
            safety_net_added=safety_net_added,
            degraded=degraded,
        )

        self.log.info(
            "Test plan built",
            change_id=impact.change_id,
            planned=len(plan.entries),
            must_run=len(must_run),
            deferred=len(deferred),
            estimated_cost=round(spent, 3),
            budget=budget,
        )
        return plan

    def _candidate(
        self,
        test: TestCase,
        affected: set[str],
        unknown_units: list[str],
        risk_scores: dict[str, RiskScore],
        unit_targets: dict[str, int],
        aggregates: dict,
        reason: str | None = None,
    ) -> _Candidate:
        covered = sorted(test.covers & affected)
        if covered:
            scores = [risk_scores[u].value for u in covered if u in risk_scores]
            targets = [unit_targets[u] for u in covered if u in unit_targets]
            reason = reason or f"covers {', '.join(covered[:3])}"
        elif unknown_units:
            # Unmapped test pulled in by an unknown unit
            scores = [risk_scores[u].value for u in unknown_units if u in risk_scores] or [RiskModel.MAX_SCORE]
            targets = [unit_targets[u] for u in unknown_units if u in unit_targets]
            reason = reason or "no coverage mapping; changed unit unknown"
        else:
            scores, targets = [], []
            reason = reason or "not directly impacted"

        priority = max(scores, default=0.0)
        target = max(targets, default=RiskModel.coverage_target(priority))

        aggregate = aggregates.get(test.test_id)
        if aggregate is not None and aggregate.sample_size > 0:
            cost = aggregate.mean_cost
            link_rate = aggregate.defect_link_rate
            flaky = aggregate.flakiness_rate > self.flaky_threshold
        else:
            cost = test.historical_cost
            link_rate = 0.0
            flaky = test.flakiness_rate > self.flaky_threshold

        if flaky:
            link_rate *= self.flaky_penalty

        return _Candidate(
            test=test,
            priority=priority,
            target_coverage=target,
            cost=cost,
            link_rate=link_rate,
            flaky=flaky,
            must_run=bool(covered or unknown_units) and priority >= self.must_run_threshold,
            reason=reason,
        )

    def _planned(self, c: _Candidate) -> PlannedTest:
        return PlannedTest(
            test=c.test,
            priority=c.priority,
            target_coverage=c.target_coverage,
            must_run=c.must_run,
            risk_level=RiskModel.classify(c.priority).value,
            reason=c.reason,
        )

    def _deferred(self, c: _Candidate, reason: str) -> DeferredTest:
        return DeferredTest(
            test_id=c.test.test_id,
            priority=c.priority,
            cost=c.cost,
            reason=reason,
        )
