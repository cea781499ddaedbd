"""
Risk Model - Calculate Risk per Unit

Formula-based risk scoring over four signals:
- Cyclomatic complexity
- Business criticality (externally assigned)
- Change frequency (churn in the trailing window)
- Historical defects (recency-decayed by the feedback tracker)

Each raw signal is clamped at a configurable ceiling and rescaled into
[0, 10]; the score is the weighted sum, so it stays in [0, 10] as long as
the weights sum to 1.0.
"""

import math
from dataclasses import dataclass, field
from enum import Enum

import structlog

from .errors import ConfigurationError
from .models import RiskSignal, Unit

logger = structlog.get_logger()


class RiskLevel(str, Enum):
    """Human-facing risk levels. Never used for plan admission."""
    HIGH = "high"       # > 7
    MEDIUM = "medium"   # > 4
    LOW = "low"


@dataclass
class RiskFactor:
    """A single risk factor contributing to the overall score."""
    name: str
    weight: float
    raw: float          # Signal value as measured
    normalized: float   # 0-10 after clamping at the ceiling
    weighted_score: float
    clamped: bool = False

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "weight": self.weight,
            "raw": self.raw,
            "normalized": round(self.normalized, 3),
            "weighted_score": round(self.weighted_score, 3),
            "clamped": self.clamped,
        }


@dataclass
class RiskScore:
    """Risk assessment for a single unit."""
    unit_id: str
    value: float  # 0-10
    level: RiskLevel
    factors: list[RiskFactor] = field(default_factory=list)
    unknown: bool = False  # Unit missing from the graph, scored at maximum

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "value": self.value,
            "level": self.level.value,
            "factors": [f.to_dict() for f in self.factors],
            "unknown": self.unknown,
        }


class RiskModel:
    """
    Scores units from their current risk signals.

    Scoring is a pure function of signal state. The model is also the only
    writer of per-unit signals: collectors and the feedback tracker go
    through update_signal / set_defect_count.
    """

    MAX_SCORE = 10.0
    WEIGHT_TOLERANCE = 1e-6

    HIGH_THRESHOLD = 7.0
    MEDIUM_THRESHOLD = 4.0

    MIN_COVERAGE_TARGET = 80
    MAX_COVERAGE_TARGET = 95

    DEFAULT_WEIGHTS = {
        "complexity": 0.3,
        "criticality": 0.4,
        "change_frequency": 0.2,
        "defects": 0.1,
    }

    DEFAULT_CEILINGS = {
        "complexity": 10.0,
        "criticality": 10.0,
        "change_frequency": 10.0,
        "defects": 10.0,
    }

    def __init__(
        self,
        weights: dict[str, float] | None = None,
        ceilings: dict[str, float] | None = None,
    ):
        self.weights = dict(weights or self.DEFAULT_WEIGHTS)
        self.ceilings = {**self.DEFAULT_CEILINGS, **(ceilings or {})}
        self._validate()
        self.log = logger.bind(component="risk_model")

    @classmethod
    def from_settings(cls, settings) -> "RiskModel":
        return cls(weights=settings.risk_weights, ceilings=settings.risk_ceilings)

    def _validate(self) -> None:
        missing = set(self.DEFAULT_WEIGHTS) - set(self.weights)
        unknown = set(self.weights) - set(self.DEFAULT_WEIGHTS)
        if missing or unknown:
            raise ConfigurationError(
                f"Risk weights must name exactly {sorted(self.DEFAULT_WEIGHTS)}; "
                f"missing={sorted(missing)} unknown={sorted(unknown)}"
            )

        negative = [name for name, w in self.weights.items() if w < 0]
        if negative:
            raise ConfigurationError(f"Risk weights must be non-negative: {negative}")

        total = sum(self.weights.values())
        if abs(total - 1.0) > self.WEIGHT_TOLERANCE:
            raise ConfigurationError(f"Risk weights must sum to 1.0, got {total:.6f}")

        bad_ceilings = [name for name, c in self.ceilings.items() if c <= 0]
        if bad_ceilings:
            raise ConfigurationError(f"Risk ceilings must be positive: {bad_ceilings}")

    # =========================================================================
    # SCORING
    # =========================================================================

    def _factor(self, name: str, raw: float) -> RiskFactor:
        ceiling = self.ceilings[name]
        clamped = raw > ceiling
        normalized = min(raw, ceiling) / ceiling * self.MAX_SCORE
        weight = self.weights[name]
        return RiskFactor(
            name=name,
            weight=weight,
            raw=raw,
            normalized=normalized,
            weighted_score=normalized * weight,
            clamped=clamped,
        )

    def score_signal(self, unit_id: str, signal: RiskSignal) -> RiskScore:
        factors = [
            self._factor("complexity", signal.complexity),
            self._factor("criticality", signal.business_criticality),
            self._factor("change_frequency", signal.change_frequency),
            self._factor("defects", signal.historical_defect_count),
        ]
        value = round(sum(f.weighted_score for f in factors), 6)
        value = min(self.MAX_SCORE, max(0.0, value))
        return RiskScore(
            unit_id=unit_id,
            value=value,
            level=self.classify(value),
            factors=factors,
        )

    def score(self, unit: Unit) -> RiskScore:
        """Calculate the risk score for a unit from its current signal."""
        return self.score_signal(unit.unit_id, unit.signal)

    def score_all(self, units: list[Unit]) -> dict[str, RiskScore]:
        return {unit.unit_id: self.score(unit) for unit in units}

    def unknown_score(self, unit_id: str) -> RiskScore:
        """Score for an identifier the graph does not know: maximum risk."""
        return RiskScore(
            unit_id=unit_id,
            value=self.MAX_SCORE,
            level=RiskLevel.HIGH,
            unknown=True,
        )

    @classmethod
    def classify(cls, score: float) -> RiskLevel:
        """Convert a numeric score to a reporting level."""
        if score > cls.HIGH_THRESHOLD:
            return RiskLevel.HIGH
        elif score > cls.MEDIUM_THRESHOLD:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    @classmethod
    def coverage_target(cls, score: float) -> int:
        """Required line coverage (percent) for a unit with this score."""
        target = cls.MIN_COVERAGE_TARGET + min(15, math.floor(score - 4))
        return max(cls.MIN_COVERAGE_TARGET, min(cls.MAX_COVERAGE_TARGET, target))

    # =========================================================================
    # SIGNAL STATE
    # =========================================================================

    def update_signal(self, unit: Unit, signal: RiskSignal) -> None:
        """Replace a unit's signal, pushing the previous one into its history."""
        unit.push_signal(signal)
        self.log.debug(
            "Signal updated",
            unit_id=unit.unit_id,
            source=signal.source.value,
        )

    def set_defect_count(self, unit: Unit, count: float) -> None:
        """Refresh only the historical defect count, in place."""
        if math.isclose(unit.signal.historical_defect_count, count, abs_tol=1e-9):
            return
        unit.signal = unit.signal.replace(historical_defect_count=max(0.0, count))
