"""Shared fixtures for adaptive test selection tests."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "smoke: mark test as smoke test (fast, critical path - included in CI)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


@pytest.fixture
def mock_env_vars(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("ADAPTEST_STATE_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("ADAPTEST_WORKERS", "2")
    monkeypatch.delenv("ADAPTEST_ANTHROPIC_API_KEY", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def mock_async_anthropic_client():
    """Create a mock AsyncAnthropic client."""
    mock_client = AsyncMock()
    mock_response = MagicMock()
    mock_response.content = [MagicMock(text='{"complexity": 6, "business_criticality": 8, "risks": ["unchecked input"]}')]
    mock_response.usage = MagicMock(input_tokens=100, output_tokens=50)
    mock_client.messages.create = AsyncMock(return_value=mock_response)
    return mock_client


@pytest.fixture
def sample_graph():
    """A small shop: pricing <- cart <- checkout, plus an independent search unit.

    Risk scores with default weights:
        pricing 2.0, cart 4.0, checkout 7.5 (must-run), search 2.5
    """
    from adaptest.core.models import (
        Isolation,
        RiskSignal,
        TestCase,
        TestCategory,
        Unit,
    )
    from adaptest.services.dependency_graph import DependencyGraph

    graph = DependencyGraph()
    graph.add_unit(Unit(
        "pricing",
        path="src/pricing.py",
        signal=RiskSignal(complexity=2, business_criticality=3, change_frequency=1),
    ))
    graph.add_unit(Unit(
        "cart",
        dependencies={"pricing"},
        path="src/cart.py",
        signal=RiskSignal(complexity=4, business_criticality=6, change_frequency=2),
    ))
    graph.add_unit(Unit(
        "checkout",
        dependencies={"cart"},
        path="src/checkout.py",
        signal=RiskSignal(
            complexity=8, business_criticality=10, change_frequency=3, historical_defect_count=5,
        ),
    ))
    graph.add_unit(Unit(
        "search",
        path="src/search.py",
        signal=RiskSignal(complexity=3, business_criticality=4),
    ))

    graph.add_test(TestCase("test_pricing", covers={"pricing"}, historical_cost=5))
    graph.add_test(TestCase("test_cart", covers={"cart"}, historical_cost=10))
    graph.add_test(TestCase(
        "test_checkout_flow",
        covers={"checkout"},
        category=TestCategory.E2E,
        historical_cost=30,
    ))
    graph.add_test(TestCase(
        "test_checkout_payment",
        covers={"checkout"},
        category=TestCategory.INTEGRATION,
        isolation=Isolation.EXCLUSIVE,
        historical_cost=20,
    ))
    graph.add_test(TestCase("test_search", covers={"search"}, historical_cost=5))
    graph.add_test(TestCase(
        "smoke_homepage",
        covers={"search"},
        category=TestCategory.REGRESSION,
        historical_cost=8,
        safety_net=True,
    ))
    graph.add_test(TestCase("legacy_suite", historical_cost=15))
    return graph


class FakeJobRunner:
    """In-memory CI job runner recording every call it receives."""

    def __init__(
        self,
        outcomes=None,
        delay: float = 0.0,
        fail_batches=None,
        hang_tests=None,
        defect_tests=None,
    ):
        from adaptest.core.models import Outcome

        self.outcomes = outcomes or {}  # test id -> Outcome
        self.delay = delay
        self.fail_batches = set(fail_batches or [])
        self.hang_tests = set(hang_tests or [])
        self.defect_tests = set(defect_tests or [])
        self.calls = []
        self.events = []
        self._default = Outcome.PASS

    async def execute(self, batch):
        from adaptest.core.models import TestOutcome

        self.calls.append(batch)
        self.events.append(("start", batch.batch_id))
        if batch.batch_id in self.fail_batches:
            raise RuntimeError("runner crashed")
        if self.hang_tests & set(batch.test_ids):
            await asyncio.sleep(3600)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events.append(("end", batch.batch_id))
        return [
            TestOutcome(
                test_id=t.test_id,
                outcome=self.outcomes.get(t.test_id, self._default),
                wall_time=t.test.historical_cost,
                defect_linked=t.test_id in self.defect_tests,
            )
            for t in batch.tests
        ]


@pytest.fixture
def fake_runner():
    """A job runner that passes every test."""
    return FakeJobRunner()


@pytest.fixture
def runner_factory():
    """Build job runners with scripted outcomes."""
    return FakeJobRunner
