"""Core scoring and planning for adaptive test selection."""

from .errors import (
    AdaptestError,
    BackendError,
    BackendUnavailableError,
    BudgetInfeasibleError,
    ConfigurationError,
    GraphLockedError,
    RateLimitedError,
    UnknownUnitError,
)
from .planner import TestSelectionPlanner
from .risk import RiskFactor, RiskLevel, RiskModel, RiskScore

__all__ = [
    # Errors
    "AdaptestError",
    "BackendError",
    "BackendUnavailableError",
    "BudgetInfeasibleError",
    "ConfigurationError",
    "GraphLockedError",
    "RateLimitedError",
    "UnknownUnitError",
    # Risk
    "RiskFactor",
    "RiskLevel",
    "RiskModel",
    "RiskScore",
    # Planning
    "TestSelectionPlanner",
]
