"""Unit tests for dependency graph analysis."""

import pytest

from core.dependency_graph import DependencyGraph
from core.types import CyclicDependencyError, Job


def job(job_id, *deps):
    return Job(id=job_id, probe_name="mock", target="example.com", dependencies=deps)


@pytest.fixture
def diamond():
    """a -> (b, c) -> d, plus an independent e."""
    return [job("a"), job("b", "a"), job("c", "a"), job("d", "b", "c"), job("e")]


class TestTopologicalOrder:
    """Test ordering."""

    def test_dependencies_precede_dependents(self, diamond):
        """Test that every job appears after all of its dependencies."""
        order = DependencyGraph().analyze(diamond).order
        position = {job_id: i for i, job_id in enumerate(order)}
        for j in diamond:
            for dep in j.dependencies:
                assert position[dep] < position[j.id]

    def test_ties_broken_by_submission_order(self, diamond):
        """Test the exact Kahn order for the diamond."""
        assert DependencyGraph().analyze(diamond).order == ["a", "e", "b", "c", "d"]

    def test_external_dependencies_ignored(self):
        """Test that ids outside the batch create no edges and never fail."""
        analysis = DependencyGraph().analyze([job("a", "outside"), job("b", "a")])
        assert analysis.order == ["a", "b"]
        assert analysis.dependencies["a"] == set()
        assert analysis.reverse_dependencies["a"] == {"b"}


class TestCycleDetection:
    """Test cycle rejection."""

    def test_two_node_cycle(self):
        """Test that A <-> B raises and names the back edge."""
        with pytest.raises(CyclicDependencyError) as exc_info:
            DependencyGraph().analyze([job("a", "b"), job("b", "a")])
        assert "Circular dependencies detected" in str(exc_info.value)
        assert exc_info.value.edge == ("b", "a")

    def test_self_dependency(self):
        """Test that a job depending on itself is a cycle."""
        with pytest.raises(CyclicDependencyError, match="a -> a"):
            DependencyGraph().analyze([job("a", "a")])

    def test_long_cycle(self):
        """Test detection of a cycle spanning several jobs."""
        jobs = [job("a", "c"), job("b", "a"), job("c", "b"), job("d")]
        with pytest.raises(CyclicDependencyError):
            DependencyGraph().analyze(jobs)


class TestDerivedViews:
    """Test critical path, parallel groups and stats."""

    def test_critical_path(self, diamond):
        """Test longest chain length and the nodes at its end."""
        analysis = DependencyGraph().analyze(diamond)
        assert analysis.critical_path == {"length": 2, "nodes": ["d"]}

    def test_parallel_groups_are_independent(self, diamond):
        """Test that no two members of a group are connected."""
        graph = DependencyGraph()
        analysis = graph.analyze(diamond)
        assert analysis.parallel_groups == [["a", "e"], ["b", "c"], ["d"]]
        for group in analysis.parallel_groups:
            for first in group:
                for second in group:
                    if first != second:
                        assert graph.can_run_in_parallel(first, second)

    def test_stats(self, diamond):
        """Test node, edge, depth, parallelization and density stats."""
        graph = DependencyGraph()
        graph.analyze(diamond)
        assert graph.get_stats() == {
            "total_nodes": 5,
            "total_edges": 4,
            "max_depth": 2,
            "parallelization_factor": 0.4,
            "dependency_density": 0.2,
        }

    def test_empty_batch(self):
        """Test analysis of an empty batch."""
        analysis = DependencyGraph().analyze([])
        assert analysis.order == []
        assert analysis.critical_path == {"length": 0, "nodes": []}
        assert analysis.stats["total_nodes"] == 0

    def test_has_path_is_transitive(self, diamond):
        """Test transitive reachability."""
        graph = DependencyGraph()
        graph.analyze(diamond)
        assert graph.has_path("d", "a")
        assert not graph.has_path("a", "d")
        assert graph.dependencies_of("d") == {"b", "c"}
