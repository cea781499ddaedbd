"""Test execution coordination."""

from .coordinator import ExecutionCoordinator, JobRunner

__all__ = ["ExecutionCoordinator", "JobRunner"]
