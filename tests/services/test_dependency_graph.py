"""Tests for the dependency graph and change impact analyzer."""

import pytest


class TestDependencyGraph:
    """Tests for DependencyGraph registration and traversal."""

    def test_dependents_within(self, sample_graph):
        assert sample_graph.dependents_within("pricing", hops=3) == {
            "pricing": 0,
            "cart": 1,
            "checkout": 2,
        }

    def test_dependents_within_hop_limit(self, sample_graph):
        assert sample_graph.dependents_within("pricing", hops=1) == {"pricing": 0, "cart": 1}

    def test_unknown_unit_raises(self, sample_graph):
        from adaptest.core.errors import UnknownUnitError

        with pytest.raises(UnknownUnitError) as exc_info:
            sample_graph.dependents_within("ghost", hops=3)
        assert exc_info.value.unit_id == "ghost"

    def test_tests_covering(self, sample_graph):
        assert sample_graph.tests_covering("checkout") == {"test_checkout_flow", "test_checkout_payment"}
        assert sample_graph.tests_covering("ghost") == set()

    def test_unmapped_and_safety_net_tests(self, sample_graph):
        assert sample_graph.unmapped_tests() == {"legacy_suite"}
        assert sample_graph.safety_net_tests() == {"smoke_homepage"}

    def test_unit_for_path(self, sample_graph):
        assert sample_graph.unit_for_path("src/cart.py").unit_id == "cart"
        assert sample_graph.unit_for_path("src/unknown.py") is None

    def test_dependency_on_unregistered_unit(self):
        from adaptest.core.models import Unit
        from adaptest.services.dependency_graph import DependencyGraph

        graph = DependencyGraph()
        graph.add_unit(Unit("cart", dependencies={"pricing"}))
        graph.add_unit(Unit("pricing"))

        assert graph.dependents_within("pricing", hops=3) == {"pricing": 0, "cart": 1}

    def test_cycle_terminates(self):
        from adaptest.core.models import Unit
        from adaptest.services.dependency_graph import DependencyGraph

        graph = DependencyGraph()
        graph.add_unit(Unit("a", dependencies={"b"}))
        graph.add_unit(Unit("b", dependencies={"a"}))

        assert graph.dependents_within("a", hops=5) == {"a": 0, "b": 1}

    def test_replacing_test_updates_coverage(self, sample_graph):
        from adaptest.core.models import TestCase

        sample_graph.add_test(TestCase("test_cart", covers={"pricing"}))

        assert "test_cart" not in sample_graph.tests_covering("cart")
        assert "test_cart" in sample_graph.tests_covering("pricing")
        assert sample_graph.get_untested_units() == ["cart"]

    def test_to_dict(self, sample_graph):
        data = sample_graph.to_dict()

        assert data["units"]["cart"]["dependents"] == ["checkout"]
        assert data["units"]["cart"]["dependencies"] == ["pricing"]
        assert data["stats"]["total_units"] == 4
        assert data["stats"]["total_tests"] == 7


class TestIncrementalUpdates:
    """Only the changed unit's edges are touched on update."""

    def test_update_dependencies(self, sample_graph):
        changed = sample_graph.update_dependencies("search", {"pricing"})

        assert changed is True
        assert sample_graph.units["search"].revision == 1
        assert "search" in sample_graph.stale_units()
        assert "search" in sample_graph.dependents_within("pricing", hops=1)

    def test_update_with_same_dependencies_is_noop(self, sample_graph):
        assert sample_graph.update_dependencies("cart", {"pricing"}) is False
        assert sample_graph.units["cart"].revision == 0
        assert sample_graph.stale_units() == set()

    def test_removed_edge_no_longer_propagates(self, sample_graph):
        sample_graph.update_dependencies("checkout", set())

        assert "checkout" not in sample_graph.dependents_within("pricing", hops=3)

    def test_mark_rebuilt(self, sample_graph):
        sample_graph.update_dependencies("search", {"pricing"})
        sample_graph.mark_rebuilt(["search"])

        assert sample_graph.stale_units() == set()

    def test_update_unknown_unit(self, sample_graph):
        from adaptest.core.errors import UnknownUnitError

        with pytest.raises(UnknownUnitError):
            sample_graph.update_dependencies("ghost", {"pricing"})

    def test_remove_and_readd_keeps_dependents(self, sample_graph):
        from adaptest.core.models import Unit

        sample_graph.remove_unit("pricing")
        assert "pricing" not in sample_graph

        sample_graph.add_unit(Unit("pricing"))
        assert sample_graph.dependents_within("pricing", hops=1) == {"pricing": 0, "cart": 1}
        assert sample_graph.tests_covering("pricing") == {"test_pricing"}

    def test_readded_unit_keeps_impacted_tests(self, sample_graph):
        from adaptest.core.models import ChangeSet, Unit
        from adaptest.services.dependency_graph import ChangeImpactAnalyzer

        analyzer = ChangeImpactAnalyzer(sample_graph)
        before = analyzer.impact_of(ChangeSet(unit_ids=["pricing"])).impacted_tests

        sample_graph.remove_unit("pricing")
        sample_graph.add_unit(Unit("pricing"))

        assert analyzer.impact_of(ChangeSet(unit_ids=["pricing"])).impacted_tests == before


class TestGraphLock:
    """The graph is read-only while a planning cycle holds it."""

    def test_mutation_while_locked_raises(self, sample_graph):
        from adaptest.core.errors import GraphLockedError
        from adaptest.core.models import Unit

        with sample_graph.locked():
            assert sample_graph.is_locked
            with pytest.raises(GraphLockedError):
                sample_graph.add_unit(Unit("new"))
            with pytest.raises(GraphLockedError):
                sample_graph.update_dependencies("cart", set())

        assert not sample_graph.is_locked
        sample_graph.add_unit(Unit("new"))

    def test_reads_allowed_while_locked(self, sample_graph):
        with sample_graph.locked():
            assert sample_graph.dependents_within("cart", hops=1) == {"cart": 0, "checkout": 1}

    def test_nested_lock_rejected(self, sample_graph):
        from adaptest.core.errors import GraphLockedError

        with sample_graph.locked():
            with pytest.raises(GraphLockedError):
                with sample_graph.locked():
                    pass


class TestChangeImpactAnalyzer:
    """Tests for impact_of()."""

    def _impact(self, graph, unit_ids, **kwargs):
        from adaptest.core.models import ChangeSet
        from adaptest.services.dependency_graph import ChangeImpactAnalyzer

        return ChangeImpactAnalyzer(graph, **kwargs).impact_of(ChangeSet(unit_ids=unit_ids))

    def test_format_price_scenario(self):
        """Cart and Checkout depend on formatPrice; all three are affected."""
        from adaptest.core.models import TestCase, Unit
        from adaptest.services.dependency_graph import DependencyGraph

        graph = DependencyGraph()
        graph.add_unit(Unit("formatPrice"))
        graph.add_unit(Unit("Cart", dependencies={"formatPrice"}))
        graph.add_unit(Unit("Checkout", dependencies={"formatPrice"}))
        graph.add_test(TestCase("cart_test", covers={"Cart"}))
        graph.add_test(TestCase("checkout_test", covers={"Checkout"}))
        graph.add_test(TestCase("price_test", covers={"formatPrice"}))

        impact = self._impact(graph, ["formatPrice"])

        assert impact.affected_units == ["Cart", "Checkout", "formatPrice"]
        assert impact.impacted_tests == ["cart_test", "checkout_test", "price_test"]
        assert impact.distances == {"Cart": 1, "Checkout": 1, "formatPrice": 0}
        assert impact.confidence == pytest.approx(0.9)

    def test_confidence_decays_with_distance(self, sample_graph):
        impact = self._impact(sample_graph, ["pricing"])

        assert impact.confidence == pytest.approx(0.81)
        assert "Confidence: 0.81" in impact.explanation

    def test_hop_limit_bounds_blast_radius(self, sample_graph):
        impact = self._impact(sample_graph, ["pricing"], hop_limit=1)

        assert impact.affected_units == ["cart", "pricing"]
        assert "test_checkout_flow" not in impact.impacted_tests

    def test_stale_units_lower_confidence(self, sample_graph):
        sample_graph.mark_stale("cart")
        impact = self._impact(sample_graph, ["cart"])

        # max distance 1, one of two affected units stale
        assert impact.stale_units == ["cart"]
        assert impact.confidence == pytest.approx(0.45)

    def test_unknown_unit_recorded_not_raised(self, sample_graph):
        from adaptest.core.errors import UnknownUnitError

        impact = self._impact(sample_graph, ["cart", "ghost"])

        assert impact.unknown_units == ["ghost"]
        assert isinstance(impact.errors[0], UnknownUnitError)
        assert "legacy_suite" in impact.impacted_tests
        assert "test_cart" in impact.impacted_tests
        assert "ghost" in impact.explanation

    def test_adding_a_changed_unit_never_shrinks_impact(self, sample_graph):
        small = self._impact(sample_graph, ["cart"])
        large = self._impact(sample_graph, ["cart", "search"])

        assert set(small.affected_units) <= set(large.affected_units)
        assert set(small.impacted_tests) <= set(large.impacted_tests)

    def test_adding_an_edge_never_shrinks_impact(self, sample_graph):
        before = self._impact(sample_graph, ["pricing"])
        sample_graph.update_dependencies("search", {"pricing"})
        sample_graph.mark_rebuilt()
        after = self._impact(sample_graph, ["pricing"])

        assert set(before.affected_units) < set(after.affected_units)
        assert "test_search" in after.impacted_tests

    def test_empty_change_set(self, sample_graph):
        impact = self._impact(sample_graph, [])

        assert impact.affected_units == []
        assert impact.impacted_tests == []
        assert impact.confidence == 1.0
        assert "No tests affected" in impact.explanation

    def test_from_settings(self, sample_graph, mock_env_vars):
        from adaptest.config import Settings
        from adaptest.services.dependency_graph import ChangeImpactAnalyzer

        analyzer = ChangeImpactAnalyzer.from_settings(sample_graph, Settings(hop_limit=5, hop_decay=0.8))
        assert analyzer.hop_limit == 5
        assert analyzer.hop_decay == 0.8
