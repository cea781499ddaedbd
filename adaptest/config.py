"""Configuration management for the adaptive test selection engine."""

import os
from typing import Optional

from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigurationError


class Settings(BaseSettings):
    """Engine settings loaded from environment variables (ADAPTEST_*)."""

    model_config = SettingsConfigDict(
        env_prefix="ADAPTEST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Risk model weights (must sum to 1.0)
    weight_complexity: float = Field(0.3, ge=0.0, description="Weight of cyclomatic complexity")
    weight_criticality: float = Field(0.4, ge=0.0, description="Weight of business criticality")
    weight_change_frequency: float = Field(0.2, ge=0.0, description="Weight of recent change frequency")
    weight_defects: float = Field(0.1, ge=0.0, description="Weight of recency-decayed defect count")

    # Raw values above a ceiling are clamped before rescaling to [0, 10]
    complexity_ceiling: float = Field(10.0, gt=0.0, description="Complexity mapped to the top of the scale")
    criticality_ceiling: float = Field(10.0, gt=0.0, description="Criticality mapped to the top of the scale")
    change_frequency_ceiling: float = Field(10.0, gt=0.0, description="Changes per window mapped to the top of the scale")
    defects_ceiling: float = Field(10.0, gt=0.0, description="Defects per window mapped to the top of the scale")

    # Planning
    must_run_threshold: float = Field(7.0, ge=0.0, le=10.0, description="Risk score that forces a unit's tests into the plan")
    confidence_floor: float = Field(0.6, ge=0.0, le=1.0, description="Impact confidence below which safety-net tests are added")
    overrun_tolerance: float = Field(0.1, ge=0.0, description="Fraction of budget must-run tests may exceed")
    flaky_penalty: float = Field(0.5, ge=0.0, le=1.0, description="Multiplier applied to a flaky test's defect-link rate")

    # Impact analysis
    hop_limit: int = Field(3, ge=0, description="Max dependency hops walked from a changed unit")
    hop_decay: float = Field(0.9, gt=0.0, le=1.0, description="Confidence multiplier per hop of distance")

    # Feedback
    window_size: int = Field(50, ge=1, description="Max records per test in the aggregation window")
    window_days: int = Field(30, ge=1, description="Max age of records in the aggregation window")
    half_life_days: float = Field(14.0, gt=0.0, description="Half-life of a defect's contribution to risk")
    retention_days: int = Field(90, ge=1, description="Records older than this are ignored by decay")
    flaky_threshold: float = Field(0.1, ge=0.0, le=1.0, description="Flakiness rate above which a test is flaky")

    # Execution
    workers: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1, description="Parallel batch count")
    timeout_multiplier: float = Field(3.0, gt=0.0, description="Default timeout as a multiple of mean cost")
    min_timeout_seconds: float = Field(1.0, gt=0.0, description="Lower bound for derived timeouts")

    # AI analysis backend
    anthropic_api_key: Optional[SecretStr] = Field(None, description="Anthropic API key for signal analysis")
    analysis_model: str = Field("claude-haiku-4-5", description="Model used for unit analysis")
    backend_max_attempts: int = Field(3, ge=1, description="Attempts before a rate-limited call degrades")
    backend_retry_delay: float = Field(1.0, ge=0.0, description="Base delay between retries in seconds")

    # State and logging
    state_dir: str = Field("./.adaptest", description="Directory holding persisted state")
    log_level: str = Field("INFO", description="Log level")
    json_logs: bool = Field(False, description="Render logs as JSON")

    @property
    def risk_weights(self) -> dict[str, float]:
        return {
            "complexity": self.weight_complexity,
            "criticality": self.weight_criticality,
            "change_frequency": self.weight_change_frequency,
            "defects": self.weight_defects,
        }

    @property
    def risk_ceilings(self) -> dict[str, float]:
        return {
            "complexity": self.complexity_ceiling,
            "criticality": self.criticality_ceiling,
            "change_frequency": self.change_frequency_ceiling,
            "defects": self.defects_ceiling,
        }


def get_settings() -> Settings:
    """Get engine settings."""
    return Settings()


def load_settings(**overrides) -> Settings:
    """Load settings at startup, reporting invalid values as ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
