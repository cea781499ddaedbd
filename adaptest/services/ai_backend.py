"""AI Analysis Backend - external judgment behind a narrow contract.

The engine never needs the backend to make a safe decision. It asks for:
- analyze(): complexity estimate, business-criticality hint, risk notes
- suggest_tests(): test ideas for units without adequate coverage

Failures surface as BackendUnavailableError (degrade to last-known values)
or RateLimitedError (retried with bounded exponential backoff).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import anthropic
import structlog
from anthropic import AsyncAnthropic

from ..core.errors import (
    BackendError,
    BackendUnavailableError,
    ConfigurationError,
    RateLimitedError,
)

logger = structlog.get_logger()


@dataclass
class BackendAnalysis:
    """Backend judgment for one unit."""
    unit_id: str
    complexity: int
    business_criticality_hint: int | None = None
    risks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "unit_id": self.unit_id,
            "complexity": self.complexity,
            "business_criticality_hint": self.business_criticality_hint,
            "risks": self.risks,
        }


class AnalysisBackend(ABC):
    """Contract for the external AI analysis capability."""

    @abstractmethod
    async def analyze(self, unit_id: str, source_or_diff: str) -> BackendAnalysis:
        """Estimate risk signals for a unit from its source or diff."""
        pass

    @abstractmethod
    async def suggest_tests(
        self,
        unit_id: str,
        source_or_diff: str,
        target_coverage: int,
    ) -> list[str]:
        """Propose tests that would raise the unit towards target coverage."""
        pass


def extract_json(text: str) -> dict:
    """Parse the first JSON object embedded in a model reply."""
    json_start = text.find("{")
    json_end = text.rfind("}") + 1
    if json_start < 0 or json_end <= json_start:
        raise BackendError("Backend reply contained no JSON object")
    try:
        return json.loads(text[json_start:json_end])
    except json.JSONDecodeError as e:
        raise BackendError(f"Backend reply was not valid JSON: {e}") from e


class AnthropicAnalysisBackend(AnalysisBackend):
    """Analysis backend backed by Claude through the Anthropic SDK."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-haiku-4-5",
        max_tokens: int = 1024,
        client: AsyncAnthropic | None = None,
    ):
        if client is None and not api_key:
            raise ConfigurationError("An Anthropic API key is required for the analysis backend")
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.log = logger.bind(component="ai_backend", model=model)

    @classmethod
    def from_settings(cls, settings) -> "AnthropicAnalysisBackend":
        api_key = settings.anthropic_api_key
        if hasattr(api_key, 'get_secret_value'):
            api_key = api_key.get_secret_value()
        return cls(api_key=api_key, model=settings.analysis_model)

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            raise RateLimitedError(str(e), retry_after=_retry_after(e)) from e
        except anthropic.APIConnectionError as e:
            raise BackendUnavailableError(f"Backend unreachable: {e}") from e
        except anthropic.APIStatusError as e:
            if e.status_code >= 500:
                raise BackendUnavailableError(f"Backend error {e.status_code}") from e
            raise BackendError(f"Backend rejected request ({e.status_code}): {e}") from e

        for block in response.content:
            if hasattr(block, "text"):
                return block.text
        raise BackendError("Backend returned no text content")

    async def analyze(self, unit_id: str, source_or_diff: str) -> BackendAnalysis:
        prompt = f"""Assess the risk of this code unit for test selection.

UNIT: {unit_id}

SOURCE OR DIFF:
{source_or_diff[:12000]}

Output as JSON:
{{
    "complexity": <cyclomatic complexity estimate, integer >= 1>,
    "business_criticality": <1-10 or null if unknown>,
    "risks": ["Short description of each risk"]
}}"""

        data = extract_json(await self._complete(prompt))

        try:
            complexity = max(1, int(data.get("complexity", 1)))
        except (TypeError, ValueError) as e:
            raise BackendError(f"Invalid complexity in backend reply: {data.get('complexity')!r}") from e

        hint = data.get("business_criticality")
        if hint is not None:
            try:
                hint = min(10, max(1, int(hint)))
            except (TypeError, ValueError):
                self.log.warning("Ignoring invalid criticality hint", unit_id=unit_id, hint=hint)
                hint = None

        return BackendAnalysis(
            unit_id=unit_id,
            complexity=complexity,
            business_criticality_hint=hint,
            risks=[str(r) for r in data.get("risks", [])],
        )

    async def suggest_tests(
        self,
        unit_id: str,
        source_or_diff: str,
        target_coverage: int,
    ) -> list[str]:
        prompt = f"""Suggest tests for a code unit that lacks coverage.

UNIT: {unit_id}
TARGET LINE COVERAGE: {target_coverage}%

SOURCE OR DIFF:
{source_or_diff[:12000]}

Provide 2-5 concise test case descriptions that exercise the riskiest paths.

Output as JSON:
{{
    "tests": ["Test description 1", "Test description 2"]
}}"""

        data = extract_json(await self._complete(prompt))
        return [str(t) for t in data.get("tests", [])]


def _retry_after(error: anthropic.APIStatusError) -> float | None:
    response = getattr(error, "response", None)
    if response is None:
        return None
    value = response.headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


async def analyze_with_retry(
    backend: AnalysisBackend,
    unit_id: str,
    source_or_diff: str,
    max_attempts: int = 3,
    retry_delay: float = 1.0,
    sleep=asyncio.sleep,
) -> BackendAnalysis:
    """Call backend.analyze, retrying rate limits with exponential backoff.

    Raises:
        RateLimitedError: still rate-limited after max_attempts
        BackendUnavailableError: backend unreachable (not retried)
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await backend.analyze(unit_id, source_or_diff)
        except RateLimitedError as e:
            if attempt >= max_attempts:
                logger.warning(
                    "Rate limited, giving up",
                    unit_id=unit_id,
                    attempts=attempt,
                )
                raise
            wait_time = e.retry_after if e.retry_after is not None else retry_delay * (2 ** (attempt - 1))
            logger.warning(
                "Rate limited, retrying",
                unit_id=unit_id,
                retry=attempt,
                wait_seconds=wait_time,
            )
            await sleep(wait_time)
