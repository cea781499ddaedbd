"""Tests for coverage gap test suggestions."""

from unittest.mock import AsyncMock

import pytest


def _plan_with_gaps(gaps, targets):
    from adaptest.core.models import TestPlan

    return TestPlan(
        change_id="c1",
        budget=100,
        coverage_gaps=gaps,
        unit_coverage_targets=targets,
    )


class TestTestGenerator:
    """Tests for TestGenerator.suggest_for_gaps()."""

    @pytest.mark.asyncio
    async def test_suggestions_per_gap(self, sample_graph):
        from adaptest.core.models import Unit
        from adaptest.services.test_generator import TestGenerator

        sample_graph.add_unit(Unit("invoice", dependencies={"pricing"}))
        backend = AsyncMock()
        backend.suggest_tests = AsyncMock(return_value=["totals include tax"])

        generator = TestGenerator(backend, source_provider=lambda u: "def invoice(): ...")
        suggestions, degraded = await generator.suggest_for_gaps(
            _plan_with_gaps(["invoice"], {"invoice": 84}), sample_graph
        )

        assert suggestions == {"invoice": ["totals include tax"]}
        assert degraded == []
        backend.suggest_tests.assert_awaited_once_with("invoice", "def invoice(): ...", 84)

    @pytest.mark.asyncio
    async def test_backend_failure_is_degradation(self, sample_graph):
        from adaptest.core.errors import BackendUnavailableError
        from adaptest.core.models import Unit
        from adaptest.services.test_generator import TestGenerator

        sample_graph.add_unit(Unit("invoice"))
        backend = AsyncMock()
        backend.suggest_tests = AsyncMock(side_effect=BackendUnavailableError("down"))

        suggestions, degraded = await TestGenerator(backend).suggest_for_gaps(
            _plan_with_gaps(["invoice"], {}), sample_graph
        )

        assert suggestions == {}
        assert "invoice" in degraded[0]

    @pytest.mark.asyncio
    async def test_highest_target_first_and_capped(self, sample_graph):
        from adaptest.core.models import Unit
        from adaptest.services.test_generator import TestGenerator

        for unit_id in ("a", "b", "c"):
            sample_graph.add_unit(Unit(unit_id))
        backend = AsyncMock()
        backend.suggest_tests = AsyncMock(return_value=["t"])

        suggestions, degraded = await TestGenerator(backend, max_units=2).suggest_for_gaps(
            _plan_with_gaps(["a", "b", "c"], {"a": 80, "b": 90, "c": 85}), sample_graph
        )

        assert list(suggestions) == ["b", "c"]
        assert degraded == ["1 coverage gap(s) left without suggestions"]
