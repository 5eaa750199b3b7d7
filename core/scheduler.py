"""Job ordering strategies.

optimize() composes, in fixed order:
1. Topological reordering (dependency-safe order from the graph)
2. Priority sort (priority desc, then shorter estimated_duration first)
3. Load balancing (heavy/medium/light round-robin by complexity)
4. Adaptive batching (group by probe and target host for locality)

Each step can be disabled via SchedulerConfig. The ordering is a hint:
the execution engine still waits for dependencies before starting a job.
"""

import time
from typing import Any
from urllib.parse import urlparse

from .config import SchedulerConfig
from .logging_config import get_logger
from .types import Job

logger = get_logger(__name__)

HEAVY_COMPLEXITY = 2.0
LIGHT_COMPLEXITY = 0.5


class Scheduler:
    """Reorders and batches jobs ahead of execution."""

    def __init__(self, config: SchedulerConfig | None = None):
        self.config = config or SchedulerConfig()
        self._metrics: dict[str, Any] = {}

    def optimize(self, jobs: list[Job], order: list[str] | None = None) -> list[Job]:
        """
        Produce a single ordered job list.

        Args:
            jobs: Jobs of one batch
            order: Topological order of job ids from DependencyGraph.analyze()

        Returns:
            The same jobs, reordered
        """
        start = time.time()
        optimized = list(jobs)
        applied = []

        if order is not None and self.config.dependency_resolution:
            optimized = self.apply_topological_order(optimized, order)
            applied.append("topological")

        if self.config.priority_scheduling:
            optimized = self.apply_priority_scheduling(optimized)
            applied.append("priority")

        if self.config.load_balancing:
            optimized = self.apply_load_balancing(optimized)
            applied.append("load_balancing")

        if self.config.adaptive_batching:
            optimized = self.apply_adaptive_batching(optimized)
            applied.append("adaptive_batching")

        self._metrics = {
            "total_jobs": len(optimized),
            "strategies_applied": applied,
            "batch_size": self.optimal_batch_size(len(optimized)),
            "estimated_execution_time": self.estimate_execution_time(optimized),
            "optimization_time": round(time.time() - start, 6),
        }
        logger.debug("schedule_optimized", **self._metrics)
        return optimized

    @staticmethod
    def apply_topological_order(jobs: list[Job], order: list[str]) -> list[Job]:
        """Place jobs in the given order; jobs absent from it are appended."""
        by_id = {job.id: job for job in jobs}
        ordered = [by_id[job_id] for job_id in order if job_id in by_id]
        in_order = set(order)
        ordered.extend(job for job in jobs if job.id not in in_order)
        return ordered

    @staticmethod
    def apply_priority_scheduling(jobs: list[Job]) -> list[Job]:
        # sorted() is stable, so equal keys keep their topological position
        return sorted(jobs, key=lambda job: (-job.priority, job.estimated_duration))

    @staticmethod
    def apply_load_balancing(jobs: list[Job]) -> list[Job]:
        """Interleave heavy, medium and light jobs round-robin."""
        if len(jobs) <= 1:
            return list(jobs)

        heavy, medium, light = [], [], []
        for job in jobs:
            if job.complexity <= LIGHT_COMPLEXITY:
                light.append(job)
            elif job.complexity <= HEAVY_COMPLEXITY:
                medium.append(job)
            else:
                heavy.append(job)

        result = []
        for i in range(max(len(heavy), len(medium), len(light))):
            for group in (heavy, medium, light):
                if i < len(group):
                    result.append(group[i])
        return result

    def apply_adaptive_batching(self, jobs: list[Job]) -> list[Job]:
        """Group similar jobs together and chunk each group."""
        batch_size = self.optimal_batch_size(len(jobs))
        groups: dict[str, list[Job]] = {}
        for job in jobs:
            groups.setdefault(self.group_key(job), []).append(job)

        result = []
        for group in groups.values():
            for i in range(0, len(group), batch_size):
                result.extend(group[i:i + batch_size])
        return result

    @staticmethod
    def group_key(job: Job) -> str:
        host = urlparse(job.target or "").hostname or "unknown"
        return f"{job.probe_name}:{host}"

    @staticmethod
    def optimal_batch_size(total_jobs: int) -> int:
        if total_jobs <= 10:
            return 3
        if total_jobs <= 50:
            return 5
        if total_jobs <= 200:
            return 10
        return 20

    @staticmethod
    def schedule_priority_job(job: Job, queue: list[Job]) -> list[Job]:
        """Insert a job ahead of the first queued job with lower priority."""
        position = len(queue)
        for index, queued in enumerate(queue):
            if job.priority > queued.priority:
                position = index
                break
        return queue[:position] + [job] + queue[position:]

    @staticmethod
    def estimate_execution_time(jobs: list[Job]) -> float:
        """
        Estimate wall-clock time for a job list.

        Blends the sequential total with the longest single job, weighted by
        the fraction of jobs that have no dependencies.
        """
        if not jobs:
            return 0.0
        total = sum(job.estimated_duration for job in jobs)
        longest = max(job.estimated_duration for job in jobs)
        independent = sum(1 for job in jobs if not job.dependencies) / len(jobs)
        return total * (1 - independent) + longest * independent

    @staticmethod
    def efficiency(job: Job) -> float:
        if job.estimated_duration <= 0:
            return 0.0
        return job.priority / job.estimated_duration

    def optimize_for_deadline(self, jobs: list[Job], deadline: float) -> list[Job]:
        """
        Select the jobs that fit into a time budget.

        Jobs are ranked by efficiency (priority / estimated_duration) and
        admitted while the running sum of estimated_duration stays within
        the deadline. Jobs that do not fit are dropped.
        """
        ranked = sorted(jobs, key=self.efficiency, reverse=True)
        admitted = []
        budget_used = 0.0

        for job in ranked:
            if budget_used + job.estimated_duration <= deadline:
                admitted.append(job)
                budget_used += job.estimated_duration

        dropped = len(jobs) - len(admitted)
        if dropped:
            logger.info(
                "jobs_dropped_for_deadline",
                deadline=deadline,
                admitted=len(admitted),
                dropped=dropped,
            )
        return admitted

    def get_scheduling_metrics(self) -> dict[str, Any]:
        return dict(self._metrics)
