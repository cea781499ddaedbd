"""
Evolutionary Feedback Tracker

Keeps the append-only log of test executions and feeds it back into risk
assessment:
1. Windowed per-test aggregates (flakiness rate, mean cost, defect-link rate)
2. Recency-decayed defect counts per unit, pushed into the risk model
3. Flaky test listing for down-weighting in the planner

Appends take a lock; aggregates are recomputed lazily on read, so parallel
writers during execution never contend on aggregate state.
"""

import statistics
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from ..core.models import FeedbackRecord, Outcome

logger = structlog.get_logger()


@dataclass
class TestAggregate:
    """Rolling aggregate for one test over the trailing window."""
    test_id: str
    flakiness_rate: float
    mean_cost: float | None  # None when the window is empty
    defect_link_rate: float
    sample_size: int

    def to_dict(self) -> dict:
        return {
            "test_id": self.test_id,
            "flakiness_rate": round(self.flakiness_rate, 4),
            "mean_cost": round(self.mean_cost, 4) if self.mean_cost is not None else None,
            "defect_link_rate": round(self.defect_link_rate, 4),
            "sample_size": self.sample_size,
        }


class FeedbackTracker:
    """
    Owns the FeedbackRecord log and the aggregates derived from it.

    Records are never mutated; newer records supersede older ones simply by
    pushing them out of the trailing window.
    """

    def __init__(
        self,
        window_size: int = 50,
        window_days: int = 30,
        half_life_days: float = 14.0,
        retention_days: int = 90,
        flaky_threshold: float = 0.1,
        store=None,
    ):
        self.window_size = window_size
        self.window_days = window_days
        self.half_life_days = half_life_days
        self.retention_days = retention_days
        self.flaky_threshold = flaky_threshold
        self.store = store

        self._records: dict[str, list[FeedbackRecord]] = {}
        self._keys: set[tuple[str, str]] = set()
        self._append_lock = threading.Lock()
        self._aggregate_cache: dict[str, tuple[datetime, TestAggregate]] = {}
        self.log = logger.bind(component="feedback_tracker")

    @classmethod
    def from_settings(cls, settings, store=None) -> "FeedbackTracker":
        return cls(
            window_size=settings.window_size,
            window_days=settings.window_days,
            half_life_days=settings.half_life_days,
            retention_days=settings.retention_days,
            flaky_threshold=settings.flaky_threshold,
            store=store,
        )

    def load(self) -> int:
        """Replay the persisted log into memory. Returns records loaded."""
        if self.store is None:
            return 0
        loaded = 0
        for record in self.store.load_feedback():
            if self._append(record):
                loaded += 1
        self.log.info("Feedback log loaded", records=loaded)
        return loaded

    # =========================================================================
    # APPEND
    # =========================================================================

    def _append(self, record: FeedbackRecord) -> bool:
        with self._append_lock:
            if record.key in self._keys:
                return False
            self._keys.add(record.key)
            self._records.setdefault(record.test_id, []).append(record)
            self._aggregate_cache.pop(record.test_id, None)
            return True

    def record(self, record: FeedbackRecord) -> bool:
        """Append a record. Idempotent on (run_id, test_id).

        Returns:
            True if the record was new
        """
        added = self._append(record)
        if not added:
            self.log.debug(
                "Duplicate feedback record ignored",
                run_id=record.run_id,
                test_id=record.test_id,
            )
            return False

        if self.store is not None:
            self.store.append_feedback(record)
        return True

    def records_for(self, test_id: str) -> list[FeedbackRecord]:
        return list(self._records.get(test_id, []))

    def __len__(self) -> int:
        return len(self._keys)

    # =========================================================================
    # AGGREGATION
    # =========================================================================

    def _window(self, test_id: str, now: datetime) -> list[FeedbackRecord]:
        """Last window_size records that are also within window_days."""
        cutoff = now - timedelta(days=self.window_days)
        records = sorted(self._records.get(test_id, []), key=lambda r: r.timestamp)
        recent = [r for r in records if cutoff <= r.timestamp <= now]
        return recent[-self.window_size:]

    def aggregate_for(self, test_id: str, now: datetime | None = None) -> TestAggregate:
        """Aggregate a test's trailing window."""
        now = now or datetime.now(UTC)

        cached = self._aggregate_cache.get(test_id)
        if cached and cached[0] == now:
            return cached[1]

        window = self._window(test_id, now)
        if not window:
            aggregate = TestAggregate(
                test_id=test_id,
                flakiness_rate=0.0,
                mean_cost=None,
                defect_link_rate=0.0,
                sample_size=0,
            )
        else:
            total = len(window)
            aggregate = TestAggregate(
                test_id=test_id,
                flakiness_rate=sum(1 for r in window if r.outcome == Outcome.FLAKY_PASS) / total,
                mean_cost=statistics.mean(r.wall_time for r in window),
                defect_link_rate=sum(1 for r in window if r.defect_linked) / total,
                sample_size=total,
            )

        self._aggregate_cache[test_id] = (now, aggregate)
        return aggregate

    def aggregates(self, test_ids, now: datetime | None = None) -> dict[str, TestAggregate]:
        now = now or datetime.now(UTC)
        return {test_id: self.aggregate_for(test_id, now) for test_id in test_ids}

    def is_flaky(self, test_id: str, now: datetime | None = None) -> bool:
        return self.aggregate_for(test_id, now).flakiness_rate > self.flaky_threshold

    def flaky_tests(self, now: datetime | None = None) -> list[str]:
        """Tests whose windowed flakiness rate is above the threshold."""
        now = now or datetime.now(UTC)
        return sorted(test_id for test_id in self._records if self.is_flaky(test_id, now))

    # =========================================================================
    # DECAY INTO RISK
    # =========================================================================

    def decayed_defects(self, test_ids, now: datetime | None = None) -> float:
        """Recency-weighted count of defect-linked records across tests."""
        now = now or datetime.now(UTC)
        retention_cutoff = now - timedelta(days=self.retention_days)

        total = 0.0
        for test_id in test_ids:
            for record in self._records.get(test_id, []):
                if not record.defect_linked:
                    continue
                if record.timestamp < retention_cutoff or record.timestamp > now:
                    continue
                age_days = (now - record.timestamp).total_seconds() / 86400
                total += 0.5 ** (age_days / self.half_life_days)
        return total

    def decay_into(self, risk_model, graph, now: datetime | None = None) -> dict[str, float]:
        """Push recency-decayed defect counts into the risk model, per unit.

        A defect-linked record counts against every unit its test covers.

        Returns:
            Mapping of unit id to the defect count that was set
        """
        now = now or datetime.now(UTC)
        counts: dict[str, float] = {}

        for unit_id, unit in graph.units.items():
            count = round(self.decayed_defects(graph.tests_covering(unit_id), now), 6)
            risk_model.set_defect_count(unit, count)
            counts[unit_id] = count

        self.log.debug(
            "Defect history decayed into risk model",
            units=len(counts),
            units_with_defects=sum(1 for c in counts.values() if c > 0),
        )
        return counts
