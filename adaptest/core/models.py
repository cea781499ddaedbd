"""Data model shared by impact analysis, planning, execution and feedback."""

import dataclasses
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar
from uuid import uuid4


class TestCategory(str, Enum):
    """Kinds of executable checks."""
    UNIT = "unit"
    INTEGRATION = "integration"
    E2E = "e2e"
    PERFORMANCE = "performance"
    REGRESSION = "regression"


class Isolation(str, Enum):
    """Whether a test may share a worker wave with other tests."""
    PARALLEL_SAFE = "parallel-safe"
    EXCLUSIVE = "exclusive"


class Outcome(str, Enum):
    """Outcome of one test execution."""
    PASS = "pass"
    FAIL = "fail"
    FLAKY_PASS = "flaky-pass"
    TIMEOUT = "timeout"

    @property
    def is_failure(self) -> bool:
        return self in (Outcome.FAIL, Outcome.TIMEOUT)


class SignalSource(str, Enum):
    """Where a unit's current risk signal came from."""
    DEFAULT = "default"
    BACKEND = "backend"
    CACHED = "cached"  # Last-known values kept after a backend failure


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class RiskSignal:
    """Measured or estimated risk properties of a unit."""
    complexity: int = 1
    business_criticality: int = 5  # 1-10, externally assigned
    change_frequency: int = 0  # Modifying changes in the trailing window
    historical_defect_count: float = 0.0  # Recency-decayed, so fractional
    source: SignalSource = SignalSource.DEFAULT
    measured_at: datetime | None = None

    def __post_init__(self):
        if self.complexity < 1:
            raise ValueError(f"complexity must be >= 1, got {self.complexity}")
        if not 1 <= self.business_criticality <= 10:
            raise ValueError(
                f"business_criticality must be within 1-10, got {self.business_criticality}"
            )
        if self.change_frequency < 0:
            raise ValueError(f"change_frequency must be >= 0, got {self.change_frequency}")
        if self.historical_defect_count < 0:
            raise ValueError(
                f"historical_defect_count must be >= 0, got {self.historical_defect_count}"
            )

    def replace(self, **changes) -> "RiskSignal":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "complexity": self.complexity,
            "business_criticality": self.business_criticality,
            "change_frequency": self.change_frequency,
            "historical_defect_count": self.historical_defect_count,
            "source": self.source.value,
            "measured_at": self.measured_at.isoformat() if self.measured_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RiskSignal":
        return cls(
            complexity=data.get("complexity", 1),
            business_criticality=data.get("business_criticality", 5),
            change_frequency=data.get("change_frequency", 0),
            historical_defect_count=data.get("historical_defect_count", 0.0),
            source=SignalSource(data.get("source", SignalSource.DEFAULT.value)),
            measured_at=_parse_datetime(data.get("measured_at")),
        )


@dataclass
class Unit:
    """An addressable piece of code (component, module or function)."""
    unit_id: str
    dependencies: set[str] = field(default_factory=set)  # Units this calls or imports
    path: str | None = None  # Source path, used to map changed files to units
    signal: RiskSignal = field(default_factory=RiskSignal)
    signal_history: list[RiskSignal] = field(default_factory=list)
    revision: int = 0

    HISTORY_LIMIT: ClassVar[int] = 20

    def push_signal(self, signal: RiskSignal) -> None:
        """Replace the current signal, keeping a bounded rolling history."""
        self.signal_history.append(self.signal)
        if len(self.signal_history) > self.HISTORY_LIMIT:
            self.signal_history = self.signal_history[-self.HISTORY_LIMIT:]
        self.signal = signal

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "dependencies": sorted(self.dependencies),
            "path": self.path,
            "signal": self.signal.to_dict(),
            "signal_history": [s.to_dict() for s in self.signal_history],
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Unit":
        return cls(
            unit_id=data["unit_id"],
            dependencies=set(data.get("dependencies", [])),
            path=data.get("path"),
            signal=RiskSignal.from_dict(data.get("signal", {})),
            signal_history=[RiskSignal.from_dict(s) for s in data.get("signal_history", [])],
            revision=data.get("revision", 0),
        )


@dataclass
class TestCase:
    """An executable check with a declared coverage set."""
    test_id: str
    covers: set[str] = field(default_factory=set)  # Unit ids this test exercises
    category: TestCategory = TestCategory.UNIT
    isolation: Isolation = Isolation.PARALLEL_SAFE
    historical_cost: float = 1.0  # Mean wall time in seconds
    flakiness_rate: float = 0.0
    timeout_seconds: float | None = None
    safety_net: bool = False  # Part of the regression-safety-net smoke set

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "covers": sorted(self.covers),
            "category": self.category.value,
            "isolation": self.isolation.value,
            "historical_cost": self.historical_cost,
            "flakiness_rate": self.flakiness_rate,
            "timeout_seconds": self.timeout_seconds,
            "safety_net": self.safety_net,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TestCase":
        return cls(
            test_id=data["test_id"],
            covers=set(data.get("covers", [])),
            category=TestCategory(data.get("category", TestCategory.UNIT.value)),
            isolation=Isolation(data.get("isolation", Isolation.PARALLEL_SAFE.value)),
            historical_cost=data.get("historical_cost", 1.0),
            flakiness_rate=data.get("flakiness_rate", 0.0),
            timeout_seconds=data.get("timeout_seconds"),
            safety_net=data.get("safety_net", False),
        )


@dataclass
class ChangeSet:
    """Changed units that trigger one planning cycle."""
    unit_ids: list[str]
    change_id: str = field(default_factory=lambda: uuid4().hex[:12])
    ref: str | None = None  # VCS ref the change was computed against
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self):
        # Ordered set semantics
        self.unit_ids = list(dict.fromkeys(self.unit_ids))

    def __len__(self) -> int:
        return len(self.unit_ids)


@dataclass(frozen=True)
class FeedbackRecord:
    """Immutable result of one test execution in one run."""
    test_id: str
    run_id: str
    outcome: Outcome
    wall_time: float
    timestamp: datetime
    defect_linked: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.run_id, self.test_id)

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "run_id": self.run_id,
            "outcome": self.outcome.value,
            "wall_time": self.wall_time,
            "timestamp": self.timestamp.isoformat(),
            "defect_linked": self.defect_linked,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FeedbackRecord":
        return cls(
            test_id=data["test_id"],
            run_id=data["run_id"],
            outcome=Outcome(data["outcome"]),
            wall_time=data["wall_time"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            defect_linked=data.get("defect_linked", False),
        )


@dataclass
class PlannedTest:
    """One admitted entry of a test plan."""
    test: TestCase
    priority: float  # Highest risk score among the affected units it covers
    target_coverage: int  # Percent
    must_run: bool = False
    risk_level: str = "low"  # Reporting only
    reason: str = ""

    @property
    def test_id(self) -> str:
        return self.test.test_id

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "priority": round(self.priority, 3),
            "risk_level": self.risk_level,
            "target_coverage": self.target_coverage,
            "must_run": self.must_run,
            "category": self.test.category.value,
            "isolation": self.test.isolation.value,
            "reason": self.reason,
        }


@dataclass
class DeferredTest:
    """A candidate that did not fit the budget; reported, never executed."""
    test_id: str
    priority: float
    cost: float
    reason: str

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "priority": round(self.priority, 3),
            "cost": self.cost,
            "reason": self.reason,
        }


@dataclass
class TestPlan:
    """Ordered, de-duplicated test execution plan for one change set."""
    change_id: str
    budget: float
    entries: list[PlannedTest] = field(default_factory=list)
    deferred: list[DeferredTest] = field(default_factory=list)
    estimated_cost: float = 0.0
    budget_overrun: float = 0.0  # Must-run cost beyond the budget, within tolerance
    unit_coverage_targets: dict[str, int] = field(default_factory=dict)
    coverage_gaps: list[str] = field(default_factory=list)  # Affected units with no tests
    confidence: float = 1.0
    safety_net_added: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    @property
    def test_ids(self) -> list[str]:
        return [e.test_id for e in self.entries]

    @property
    def must_run_ids(self) -> list[str]:
        return [e.test_id for e in self.entries if e.must_run]

    def to_dict(self) -> dict:
        return {
            "change_id": self.change_id,
            "budget": self.budget,
            "estimated_cost": round(self.estimated_cost, 3),
            "budget_overrun": round(self.budget_overrun, 3),
            "confidence": round(self.confidence, 3),
            "entries": [e.to_dict() for e in self.entries],
            "deferred": [d.to_dict() for d in self.deferred],
            "unit_coverage_targets": dict(sorted(self.unit_coverage_targets.items())),
            "coverage_gaps": self.coverage_gaps,
            "safety_net_added": self.safety_net_added,
            "degraded": self.degraded,
        }


@dataclass
class TestBatch:
    """A group of planned tests handed to the CI job runner in one call."""
    batch_id: str
    tests: list[PlannedTest]
    exclusive: bool = False
    timeouts: dict[str, float] = field(default_factory=dict)  # Seconds per test id

    @property
    def test_ids(self) -> list[str]:
        return [t.test_id for t in self.tests]

    def __len__(self) -> int:
        return len(self.tests)


@dataclass
class TestOutcome:
    """Result reported by the CI job runner for one test."""
    test_id: str
    outcome: Outcome
    wall_time: float = 0.0
    defect_linked: bool = False
    message: str | None = None

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "outcome": self.outcome.value,
            "wall_time": self.wall_time,
            "defect_linked": self.defect_linked,
            "message": self.message,
        }


@dataclass
class ExecutionReport:
    """Structured report of one planning cycle for dashboards and notifications."""
    run_id: str
    plan: TestPlan
    outcomes: list[TestOutcome] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    runner_errors: dict[str, str] = field(default_factory=dict)
    flaky_tests: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)
    suggestions: dict[str, list[str]] = field(default_factory=dict)
    feedback_recorded: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def failures(self) -> list[str]:
        return [o.test_id for o in self.outcomes if o.outcome.is_failure]

    @property
    def timeouts(self) -> list[str]:
        return [o.test_id for o in self.outcomes if o.outcome == Outcome.TIMEOUT]

    @property
    def passed(self) -> bool:
        return not self.failures and not self.runner_errors and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "change_id": self.plan.change_id,
            "passed": self.passed,
            "plan": self.plan.to_dict(),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "failures": self.failures,
            "timeouts": self.timeouts,
            "deferred": [d.test_id for d in self.plan.deferred],
            "must_run_overrun": round(self.plan.budget_overrun, 3),
            "flaky_tests": self.flaky_tests,
            "cancelled": self.cancelled,
            "runner_errors": self.runner_errors,
            "degraded": self.degraded,
            "suggestions": self.suggestions,
            "feedback_recorded": self.feedback_recorded,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
