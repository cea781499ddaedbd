"""Signal Collector - refresh unit risk signals from the backend and VCS.

Backend failures never block planning: the unit keeps its last-known
signal, marked as cached, and the degradation is returned for the report.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Awaitable, Callable

import structlog

from ..core.errors import BackendError
from ..core.models import SignalSource, Unit
from .ai_backend import AnalysisBackend, analyze_with_retry

logger = structlog.get_logger()


@dataclass
class RefreshResult:
    """Outcome of refreshing signals for a set of units."""
    refreshed: list[str] = field(default_factory=list)
    degraded: list[str] = field(default_factory=list)

    def merge(self, other: "RefreshResult") -> None:
        self.refreshed.extend(other.refreshed)
        self.degraded.extend(other.degraded)


def read_source(unit: Unit, root: Path | None = None) -> str:
    """Default source provider: the file at the unit's path, if any."""
    if not unit.path:
        return ""
    path = (root / unit.path) if root else Path(unit.path)
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


class SignalCollector:
    """Refreshes complexity, criticality hints and change frequency per unit."""

    def __init__(
        self,
        risk_model,
        backend: AnalysisBackend | None = None,
        history=None,
        source_provider: Callable[[Unit], str | Awaitable[str]] | None = None,
        window_days: int = 30,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        apply_criticality_hints: bool = True,
        max_parallel: int = 4,
        sleep=asyncio.sleep,
    ):
        self.risk_model = risk_model
        self.backend = backend
        self.history = history
        self.source_provider = source_provider or read_source
        self.window_days = window_days
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.apply_criticality_hints = apply_criticality_hints
        self.max_parallel = max_parallel
        self._sleep = sleep
        self.log = logger.bind(component="signal_collector")

    async def _source_for(self, unit: Unit) -> str:
        source = self.source_provider(unit)
        if asyncio.iscoroutine(source):
            source = await source
        return source or ""

    async def refresh_unit(self, unit: Unit) -> RefreshResult:
        result = RefreshResult()
        changes: dict = {"measured_at": datetime.now(UTC)}
        source = unit.signal.source

        if self.history is not None:
            changes["change_frequency"] = await self.history.change_frequency(unit, self.window_days)

        if self.backend is not None:
            try:
                analysis = await analyze_with_retry(
                    self.backend,
                    unit.unit_id,
                    await self._source_for(unit),
                    max_attempts=self.max_attempts,
                    retry_delay=self.retry_delay,
                    sleep=self._sleep,
                )
                changes["complexity"] = analysis.complexity
                if self.apply_criticality_hints and analysis.business_criticality_hint is not None:
                    changes["business_criticality"] = analysis.business_criticality_hint
                source = SignalSource.BACKEND
            except BackendError as e:
                source = SignalSource.CACHED
                result.degraded.append(
                    f"stale signal used for {unit.unit_id}: {type(e).__name__}: {e}"
                )
                self.log.warning(
                    "Backend analysis failed, keeping last-known signal",
                    unit_id=unit.unit_id,
                    error=str(e),
                )

        changes["source"] = source
        self.risk_model.update_signal(unit, unit.signal.replace(**changes))
        result.refreshed.append(unit.unit_id)
        return result

    async def refresh(self, units: list[Unit]) -> RefreshResult:
        """Refresh signals for many units with limited concurrency."""
        semaphore = asyncio.Semaphore(self.max_parallel)

        async def run_with_semaphore(unit: Unit) -> RefreshResult:
            async with semaphore:
                return await self.refresh_unit(unit)

        combined = RefreshResult()
        for partial in await asyncio.gather(*(run_with_semaphore(u) for u in units)):
            combined.merge(partial)

        self.log.info(
            "Signals refreshed",
            units=len(units),
            degraded=len(combined.degraded),
        )
        return combined
