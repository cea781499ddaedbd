"""Risk-based adaptive test selection for CI pipelines."""

__version__ = "0.1.0"
