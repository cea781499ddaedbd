"""Dependency Graph - unit/test relationships for Change Impact Analysis.

This service provides:
- A unit dependency graph (edge: unit -> unit it calls or imports)
- Test-to-unit coverage mapping
- Incremental updates when one unit's dependencies change
- Bounded breadth-first impact analysis for a change set

Impact analysis walks dependents outward from each changed unit up to a
hop limit, so blast radius stays bounded on highly connected graphs.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field

import networkx as nx
import structlog

from ..core.errors import GraphLockedError, UnknownUnitError
from ..core.models import ChangeSet, TestCase, Unit

logger = structlog.get_logger()


@dataclass
class ImpactResult:
    """Result of impact analysis for a change set."""
    change_id: str
    changed_units: list[str]
    affected_units: list[str]
    impacted_tests: list[str]
    confidence: float
    distances: dict[str, int] = field(default_factory=dict)  # Hops from the nearest changed unit
    unknown_units: list[str] = field(default_factory=list)
    stale_units: list[str] = field(default_factory=list)
    errors: list[UnknownUnitError] = field(default_factory=list)
    explanation: str = ""

    def to_dict(self) -> dict:
        return {
            "change_id": self.change_id,
            "changed_units": self.changed_units,
            "affected_units": self.affected_units,
            "impacted_tests": self.impacted_tests,
            "confidence": self.confidence,
            "distances": self.distances,
            "unknown_units": self.unknown_units,
            "stale_units": self.stale_units,
            "errors": [str(e) for e in self.errors],
            "explanation": self.explanation,
        }


class DependencyGraph:
    """Single source of truth for unit-to-unit and unit-to-test relationships.

    Example:
        graph = DependencyGraph()
        graph.add_unit(Unit("formatPrice"))
        graph.add_unit(Unit("Cart", dependencies={"formatPrice"}))
        graph.add_test(TestCase("cart_test", covers={"Cart"}))

        graph.dependents_within("formatPrice", hops=3)
        # {"formatPrice": 0, "Cart": 1}
    """

    def __init__(self):
        self._graph = nx.DiGraph()
        self.units: dict[str, Unit] = {}
        self.tests: dict[str, TestCase] = {}
        self._coverage: dict[str, set[str]] = {}  # unit id -> test ids
        self._stale: set[str] = set()
        self._locked = False

    # =========================================================================
    # LOCKING
    # =========================================================================

    @contextmanager
    def locked(self):
        """Hold the graph read-only for the duration of a planning cycle."""
        if self._locked:
            raise GraphLockedError("Dependency graph is already held by a planning cycle")
        self._locked = True
        try:
            yield self
        finally:
            self._locked = False

    @property
    def is_locked(self) -> bool:
        return self._locked

    def _ensure_unlocked(self) -> None:
        if self._locked:
            raise GraphLockedError("Dependency graph cannot change during a planning cycle")

    # =========================================================================
    # UNITS
    # =========================================================================

    def add_unit(self, unit: Unit) -> None:
        """Register a unit, or update its dependencies if already present."""
        self._ensure_unlocked()

        if unit.unit_id in self.units:
            self.update_dependencies(unit.unit_id, unit.dependencies)
            return

        self.units[unit.unit_id] = unit
        self._graph.add_node(unit.unit_id)
        for dep in unit.dependencies:
            self._graph.add_edge(unit.unit_id, dep)

    def update_dependencies(self, unit_id: str, dependencies: set[str]) -> bool:
        """Incrementally replace one unit's dependency edges.

        The unit is marked stale until mark_rebuilt() is called for it.

        Returns:
            True if the declared dependencies changed
        """
        self._ensure_unlocked()

        unit = self.units.get(unit_id)
        if unit is None:
            raise UnknownUnitError(unit_id)

        new_deps = set(dependencies)
        if new_deps == unit.dependencies:
            return False

        for dep in unit.dependencies - new_deps:
            if self._graph.has_edge(unit_id, dep):
                self._graph.remove_edge(unit_id, dep)
        for dep in new_deps - unit.dependencies:
            self._graph.add_edge(unit_id, dep)

        unit.dependencies = new_deps
        unit.revision += 1
        self._stale.add(unit_id)

        logger.debug(
            "Unit dependencies updated",
            unit_id=unit_id,
            revision=unit.revision,
            dependency_count=len(new_deps),
        )
        return True

    def remove_unit(self, unit_id: str) -> None:
        self._ensure_unlocked()

        if unit_id not in self.units:
            raise UnknownUnitError(unit_id)

        del self.units[unit_id]
        # Incoming edges stay so other units' declared dependencies survive a re-add
        self._graph.remove_edges_from(list(self._graph.out_edges(unit_id)))
        if self._graph.in_degree(unit_id) == 0:
            self._graph.remove_node(unit_id)
        # Coverage is kept; tests still declare the unit
        self._stale.discard(unit_id)

    def mark_stale(self, unit_id: str) -> None:
        if unit_id in self.units:
            self._stale.add(unit_id)

    def mark_rebuilt(self, unit_ids: list[str] | None = None) -> None:
        """Clear the stale flag for the given units, or for all units."""
        if unit_ids is None:
            self._stale.clear()
        else:
            self._stale.difference_update(unit_ids)

    def stale_units(self) -> set[str]:
        return set(self._stale)

    def get_unit(self, unit_id: str) -> Unit | None:
        return self.units.get(unit_id)

    def unit_for_path(self, path: str) -> Unit | None:
        """Find the unit declared at a source path."""
        for unit in self.units.values():
            if unit.path == path:
                return unit
        return None

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self.units

    def __len__(self) -> int:
        return len(self.units)

    # =========================================================================
    # TESTS
    # =========================================================================

    def add_test(self, test: TestCase) -> None:
        """Register a test, replacing any previous declaration with the same id."""
        self._ensure_unlocked()

        if test.test_id in self.tests:
            self.remove_test(test.test_id)

        self.tests[test.test_id] = test
        for unit_id in test.covers:
            self._coverage.setdefault(unit_id, set()).add(test.test_id)

    def remove_test(self, test_id: str) -> None:
        self._ensure_unlocked()

        test = self.tests.pop(test_id, None)
        if test is None:
            return
        for unit_id in test.covers:
            covering = self._coverage.get(unit_id)
            if covering:
                covering.discard(test_id)

    def tests_covering(self, unit_id: str) -> set[str]:
        return set(self._coverage.get(unit_id, set()))

    def unmapped_tests(self) -> set[str]:
        """Tests whose coverage set names no unit known to the graph."""
        return {
            test_id for test_id, test in self.tests.items()
            if not any(unit_id in self.units for unit_id in test.covers)
        }

    def safety_net_tests(self) -> set[str]:
        return {test_id for test_id, test in self.tests.items() if test.safety_net}

    def get_untested_units(self) -> list[str]:
        """Units without any covering test."""
        return sorted(
            unit_id for unit_id in self.units
            if not self._coverage.get(unit_id)
        )

    # =========================================================================
    # TRAVERSAL
    # =========================================================================

    def dependents_within(self, unit_id: str, hops: int) -> dict[str, int]:
        """Units depending on unit_id (transitively) within `hops`, with distances.

        The unit itself is included at distance 0.
        """
        if unit_id not in self.units:
            raise UnknownUnitError(unit_id)

        reached = nx.single_source_shortest_path_length(
            self._graph.reverse(copy=False), unit_id, cutoff=hops
        )
        return {node: dist for node, dist in reached.items() if node in self.units}

    def to_dict(self) -> dict:
        """Export the graph as a dictionary."""
        return {
            "units": {
                unit_id: {
                    "path": u.path,
                    "revision": u.revision,
                    "dependencies": sorted(u.dependencies),
                    "dependents": sorted(
                        d for d in self._graph.predecessors(unit_id) if d in self.units
                    ),
                    "tests": sorted(self._coverage.get(unit_id, set())),
                }
                for unit_id, u in sorted(self.units.items())
            },
            "stats": {
                "total_units": len(self.units),
                "total_tests": len(self.tests),
                "stale_units": len(self._stale),
                "untested_units": len(self.get_untested_units()),
            },
        }


class ChangeImpactAnalyzer:
    """Maps a change set to affected units and the tests that exercise them.

    Confidence falls with hop distance and with the share of affected units
    whose dependency data is stale. It is reported, never used to drop
    units; the planner uses it to decide on the regression safety net.
    """

    DEFAULT_HOP_LIMIT = 3
    DEFAULT_HOP_DECAY = 0.9

    def __init__(
        self,
        graph: DependencyGraph,
        hop_limit: int = DEFAULT_HOP_LIMIT,
        hop_decay: float = DEFAULT_HOP_DECAY,
    ):
        self.graph = graph
        self.hop_limit = hop_limit
        self.hop_decay = hop_decay
        self.log = logger.bind(component="impact_analyzer")

    @classmethod
    def from_settings(cls, graph: DependencyGraph, settings) -> "ChangeImpactAnalyzer":
        return cls(graph, hop_limit=settings.hop_limit, hop_decay=settings.hop_decay)

    def impact_of(self, change_set: ChangeSet) -> ImpactResult:
        """Analyze the impact of a change set.

        Unknown identifiers are recorded as UnknownUnitError in the result
        rather than raised; every test with no coverage mapping is then
        treated as impacted, since the unknown unit's impact is unknowable.
        """
        distances: dict[str, int] = {}
        unknown: list[str] = []
        errors: list[UnknownUnitError] = []

        for unit_id in change_set.unit_ids:
            try:
                reached = self.graph.dependents_within(unit_id, self.hop_limit)
            except UnknownUnitError as e:
                unknown.append(unit_id)
                errors.append(e)
                self.log.warning("Changed unit not in dependency graph", unit_id=unit_id)
                continue

            for node, dist in reached.items():
                if node not in distances or dist < distances[node]:
                    distances[node] = dist

        affected = sorted(distances)

        impacted: set[str] = set()
        for unit_id in affected:
            impacted.update(self.graph.tests_covering(unit_id))
        if unknown:
            impacted.update(self.graph.unmapped_tests())

        stale = sorted(self.graph.stale_units() & set(affected))
        confidence = self._confidence(distances, len(stale), len(unknown))

        result = ImpactResult(
            change_id=change_set.change_id,
            changed_units=list(change_set.unit_ids),
            affected_units=affected,
            impacted_tests=sorted(impacted),
            confidence=confidence,
            distances=dict(sorted(distances.items())),
            unknown_units=unknown,
            stale_units=stale,
            errors=errors,
        )
        result.explanation = self._build_impact_explanation(result)

        self.log.info(
            "Impact analyzed",
            change_id=change_set.change_id,
            changed=len(change_set.unit_ids),
            affected=len(affected),
            impacted_tests=len(impacted),
            confidence=confidence,
        )
        return result

    def _confidence(self, distances: dict[str, int], stale_count: int, unknown_count: int) -> float:
        total = len(distances) + unknown_count
        if total == 0:
            return 1.0
        stale_fraction = (stale_count + unknown_count) / total
        max_distance = max(distances.values(), default=0)
        return round((self.hop_decay ** max_distance) * (1.0 - stale_fraction), 6)

    def _build_impact_explanation(self, result: ImpactResult) -> str:
        """Build a human-readable explanation of the impact."""
        parts = []

        if result.changed_units:
            parts.append(f"Units changed: {', '.join(result.changed_units[:5])}")
            if len(result.changed_units) > 5:
                parts.append(f"  ... and {len(result.changed_units) - 5} more")

        indirect = [u for u, d in result.distances.items() if d > 0]
        if indirect:
            parts.append(f"Units affected through dependencies: {len(indirect)}")

        if result.unknown_units:
            parts.append(f"Unknown units (treated as maximum risk): {', '.join(result.unknown_units)}")

        if result.impacted_tests:
            parts.append(f"Tests impacted: {len(result.impacted_tests)}")
        else:
            parts.append("No tests affected by these changes")

        parts.append(f"Confidence: {result.confidence:.2f}")
        return "\n".join(parts)
