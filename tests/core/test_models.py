"""Tests for the shared data model."""

from datetime import UTC, datetime

import pytest


class TestRiskSignal:
    """Tests for RiskSignal validation."""

    def test_defaults(self):
        from adaptest.core.models import RiskSignal, SignalSource

        signal = RiskSignal()
        assert signal.complexity == 1
        assert signal.business_criticality == 5
        assert signal.source == SignalSource.DEFAULT

    @pytest.mark.parametrize("kwargs", [
        {"complexity": 0},
        {"business_criticality": 0},
        {"business_criticality": 11},
        {"change_frequency": -1},
        {"historical_defect_count": -0.5},
    ])
    def test_invalid_values_rejected(self, kwargs):
        from adaptest.core.models import RiskSignal

        with pytest.raises(ValueError):
            RiskSignal(**kwargs)

    def test_replace_returns_new_signal(self):
        from adaptest.core.models import RiskSignal

        before = RiskSignal(complexity=3)
        updated = before.replace(complexity=9)

        assert before.complexity == 3
        assert updated.complexity == 9

    def test_from_dict_restores_measured_at(self):
        from adaptest.core.models import RiskSignal, SignalSource

        measured = datetime(2026, 3, 1, tzinfo=UTC)
        data = RiskSignal(complexity=4, source=SignalSource.BACKEND, measured_at=measured).to_dict()

        restored = RiskSignal.from_dict(data)
        assert restored.measured_at == measured
        assert restored.source == SignalSource.BACKEND


class TestUnitAndTestCase:
    """Tests for Unit and TestCase serialization."""

    def test_unit_to_dict_sorts_dependencies(self):
        from adaptest.core.models import Unit

        unit = Unit("checkout", dependencies={"pricing", "cart"})
        assert unit.to_dict()["dependencies"] == ["cart", "pricing"]

    def test_unit_from_dict(self):
        from adaptest.core.models import Unit

        unit = Unit.from_dict({"unit_id": "cart", "dependencies": ["pricing"], "revision": 2})
        assert unit.dependencies == {"pricing"}
        assert unit.revision == 2
        assert unit.signal.complexity == 1

    def test_test_case_from_dict_defaults(self):
        from adaptest.core.models import Isolation, TestCase, TestCategory

        test = TestCase.from_dict({"test_id": "t1", "covers": ["cart"]})
        assert test.category == TestCategory.UNIT
        assert test.isolation == Isolation.PARALLEL_SAFE
        assert test.historical_cost == 1.0
        assert test.safety_net is False

    def test_test_case_exclusive_isolation(self):
        from adaptest.core.models import Isolation, TestCase

        test = TestCase.from_dict({"test_id": "t1", "isolation": "exclusive"})
        assert test.isolation == Isolation.EXCLUSIVE


class TestChangeSet:
    """Tests for ChangeSet."""

    def test_duplicates_removed_in_order(self):
        from adaptest.core.models import ChangeSet

        change = ChangeSet(unit_ids=["b", "a", "b", "c", "a"])
        assert change.unit_ids == ["b", "a", "c"]
        assert len(change) == 3

    def test_change_id_generated(self):
        from adaptest.core.models import ChangeSet

        assert ChangeSet(unit_ids=[]).change_id != ChangeSet(unit_ids=[]).change_id


class TestOutcomes:
    """Tests for Outcome and ExecutionReport."""

    def test_failure_outcomes(self):
        from adaptest.core.models import Outcome

        assert Outcome.FAIL.is_failure
        assert Outcome.TIMEOUT.is_failure
        assert not Outcome.PASS.is_failure
        assert not Outcome.FLAKY_PASS.is_failure

    def test_feedback_record_key(self):
        from adaptest.core.models import FeedbackRecord, Outcome

        record = FeedbackRecord("t1", "run-1", Outcome.PASS, 1.5, datetime.now(UTC))
        assert record.key == ("run-1", "t1")
        assert FeedbackRecord.from_dict(record.to_dict()) == record

    def test_report_summary(self):
        from adaptest.core.models import (
            ExecutionReport,
            Outcome,
            TestOutcome,
            TestPlan,
        )

        report = ExecutionReport(
            run_id="run-1",
            plan=TestPlan(change_id="c1", budget=10),
            outcomes=[
                TestOutcome("a", Outcome.PASS),
                TestOutcome("b", Outcome.FAIL),
                TestOutcome("c", Outcome.TIMEOUT),
            ],
        )

        assert report.failures == ["b", "c"]
        assert report.timeouts == ["c"]
        assert report.passed is False

        data = report.to_dict()
        assert data["change_id"] == "c1"
        assert data["finished_at"] is None

    def test_report_passes_without_failures_or_errors(self):
        from adaptest.core.models import ExecutionReport, Outcome, TestOutcome, TestPlan

        report = ExecutionReport(
            run_id="run-1",
            plan=TestPlan(change_id="c1", budget=10),
            outcomes=[TestOutcome("a", Outcome.FLAKY_PASS)],
        )
        assert report.passed is True

        report.runner_errors["b"] = "runner crashed"
        assert report.passed is False

    def test_cancelled_run_does_not_pass(self):
        from adaptest.core.models import ExecutionReport, TestPlan

        report = ExecutionReport(
            run_id="run-1",
            plan=TestPlan(change_id="c1", budget=10),
            cancelled=["a", "b"],
        )
        assert report.outcomes == []
        assert report.passed is False
