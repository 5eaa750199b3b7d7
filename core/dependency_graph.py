"""Job dependency graph analysis.

Builds forward (job -> dependencies) and reverse (job -> dependents)
adjacency for one batch, rejects cycles, and derives an execution order,
the critical path and groups of mutually independent jobs.

Dependencies on ids that are not part of the batch are external: they
never produce edges and never fail the analysis.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from .logging_config import get_logger
from .types import CyclicDependencyError, Job

logger = get_logger(__name__)


@dataclass
class GraphAnalysis:
    """Result of DependencyGraph.analyze()."""

    order: list[str]
    critical_path: dict[str, Any]
    parallel_groups: list[list[str]]
    dependencies: dict[str, set[str]]
    reverse_dependencies: dict[str, set[str]]
    stats: dict[str, Any] = field(default_factory=dict)


class DependencyGraph:
    """Directed acyclic graph of jobs within a batch."""

    def __init__(self):
        self._nodes: list[str] = []
        self._dependencies: dict[str, set[str]] = {}
        self._reverse: dict[str, set[str]] = {}
        self._stats: dict[str, Any] = {}

    def analyze(self, jobs: Iterable[Job]) -> GraphAnalysis:
        """
        Build the graph for a batch and compute its derived views.

        Raises:
            CyclicDependencyError: If any dependency cycle exists
        """
        self._build(jobs)
        self._detect_cycles()

        order = self.topological_order()
        critical_path = self.critical_path(order)
        groups = self.parallel_groups(order)
        self._stats = self._calculate_stats(critical_path, groups)

        logger.debug(
            "dependency_graph_analyzed",
            nodes=self._stats["total_nodes"],
            edges=self._stats["total_edges"],
            max_depth=self._stats["max_depth"],
        )

        return GraphAnalysis(
            order=order,
            critical_path=critical_path,
            parallel_groups=groups,
            dependencies={k: set(v) for k, v in self._dependencies.items()},
            reverse_dependencies={k: set(v) for k, v in self._reverse.items()},
            stats=dict(self._stats),
        )

    def _build(self, jobs: Iterable[Job]) -> None:
        jobs = list(jobs)
        self._nodes = [job.id for job in jobs]
        known = set(self._nodes)
        self._dependencies = {job_id: set() for job_id in self._nodes}
        self._reverse = {job_id: set() for job_id in self._nodes}

        for job in jobs:
            for dep in job.dependencies:
                if dep not in known:
                    logger.debug("external_dependency_ignored", job_id=job.id, dependency=dep)
                    continue
                self._dependencies[job.id].add(dep)
                self._reverse[dep].add(job.id)

    def _detect_cycles(self) -> None:
        """Depth-first search with a recursion stack; a back edge is a cycle."""
        visited: set[str] = set()
        on_stack: set[str] = set()

        for root in self._nodes:
            if root in visited:
                continue
            # Iterative DFS: (node, iterator over its dependencies)
            visited.add(root)
            on_stack.add(root)
            stack = [(root, iter(sorted(self._dependencies[root])))]
            while stack:
                node, deps = stack[-1]
                advanced = False
                for dep in deps:
                    if dep in on_stack:
                        raise CyclicDependencyError(
                            f"Circular dependencies detected: {node} -> {dep}",
                            edge=(node, dep),
                        )
                    if dep not in visited:
                        visited.add(dep)
                        on_stack.add(dep)
                        stack.append((dep, iter(sorted(self._dependencies[dep]))))
                        advanced = True
                        break
                if not advanced:
                    on_stack.discard(node)
                    stack.pop()

    def topological_order(self) -> list[str]:
        """
        Kahn's algorithm: every job appears after all of its in-batch dependencies.

        Ready jobs are taken in submission order. Any node that never reaches
        in-degree zero is appended at the end.
        """
        position = {job_id: i for i, job_id in enumerate(self._nodes)}
        in_degree = {job_id: len(self._dependencies[job_id]) for job_id in self._nodes}
        queue = deque(job_id for job_id in self._nodes if in_degree[job_id] == 0)
        order: list[str] = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent in sorted(self._reverse[current], key=position.__getitem__):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) < len(self._nodes):
            placed = set(order)
            order.extend(job_id for job_id in self._nodes if job_id not in placed)

        return order

    def critical_path(self, order: list[str] | None = None) -> dict[str, Any]:
        """Longest dependency chain by edge count and the ids attaining it."""
        order = order if order is not None else self.topological_order()
        if not order:
            return {"length": 0, "nodes": []}

        distances: dict[str, int] = {}
        for node in order:
            distances[node] = max(
                (distances[dep] + 1 for dep in self._dependencies[node] if dep in distances),
                default=0,
            )

        longest = max(distances.values())
        return {
            "length": longest,
            "nodes": [node for node in order if distances[node] == longest],
        }

    def has_path(self, source: str, target: str) -> bool:
        """True if source transitively depends on target (or they are equal)."""
        if source == target:
            return True
        visited = {source}
        pending = [source]
        while pending:
            node = pending.pop()
            for dep in self._dependencies.get(node, ()):
                if dep == target:
                    return True
                if dep not in visited:
                    visited.add(dep)
                    pending.append(dep)
        return False

    def can_run_in_parallel(self, first: str, second: str) -> bool:
        return not self.has_path(first, second) and not self.has_path(second, first)

    def parallel_groups(self, order: list[str] | None = None) -> list[list[str]]:
        """Greedy partition of the order into groups of mutually independent jobs."""
        order = order if order is not None else self.topological_order()
        groups: list[list[str]] = []
        processed: set[str] = set()

        for node in order:
            if node in processed:
                continue
            group = [node]
            processed.add(node)
            for other in order:
                if other in processed:
                    continue
                if all(self.can_run_in_parallel(member, other) for member in group):
                    group.append(other)
                    processed.add(other)
            groups.append(group)

        return groups

    def _calculate_stats(self, critical_path: dict[str, Any], groups: list[list[str]]) -> dict[str, Any]:
        total_nodes = len(self._nodes)
        total_edges = sum(len(deps) for deps in self._dependencies.values())

        parallelization = 0.0
        if total_nodes:
            parallelization = max(len(g) for g in groups) / total_nodes

        density = 0.0
        if total_nodes > 1:
            density = total_edges / (total_nodes * (total_nodes - 1))

        return {
            "total_nodes": total_nodes,
            "total_edges": total_edges,
            "max_depth": critical_path["length"],
            "parallelization_factor": round(parallelization, 4),
            "dependency_density": round(density, 4),
        }

    def get_stats(self) -> dict[str, Any]:
        return dict(self._stats)

    def dependencies_of(self, job_id: str) -> set[str]:
        """In-batch dependencies of a job (external ids excluded)."""
        return set(self._dependencies.get(job_id, ()))
