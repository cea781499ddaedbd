"""Error taxonomy for the selection engine.

Only ConfigurationError and BudgetInfeasibleError halt a planning cycle.
Everything else is local to one unit or test and degrades that unit's or
test's contribution.
"""


class AdaptestError(Exception):
    """Base exception for engine errors."""
    pass


class ConfigurationError(AdaptestError):
    """Raised when weights, thresholds or settings are invalid."""
    pass


class UnknownUnitError(AdaptestError):
    """Raised when a changed identifier is not present in the dependency graph."""

    def __init__(self, unit_id: str):
        super().__init__(f"Unknown unit: {unit_id}")
        self.unit_id = unit_id


class BudgetInfeasibleError(AdaptestError):
    """Raised when must-run tests alone exceed the budget beyond tolerance."""

    def __init__(self, budget: float, must_run_cost: float, tolerance: float):
        super().__init__(
            f"Must-run tests cost {must_run_cost:.1f} which exceeds budget "
            f"{budget:.1f} by more than {tolerance:.0%}"
        )
        self.budget = budget
        self.must_run_cost = must_run_cost
        self.tolerance = tolerance


class GraphLockedError(AdaptestError):
    """Raised when the dependency graph is mutated during a planning cycle."""
    pass


class BackendError(AdaptestError):
    """Base exception for AI analysis backend errors."""
    pass


class BackendUnavailableError(BackendError):
    """Raised when the analysis backend cannot be reached."""
    pass


class RateLimitedError(BackendError):
    """Raised when the analysis backend rate-limits a request."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after
