"""Batch execution of probe jobs.

A batch goes through: duplicate id check -> dependency graph analysis
(fatal on cycle) -> inversion rule validation (fatal on unknown rule) ->
optional deadline admission -> scheduler ordering -> execution.

Execution modes:

- sequential: one job at a time on the calling thread; fail_fast stops at
  the first problematic result and leaves the remaining jobs unrecorded.
- parallel: up to max_parallel_tests jobs on a ThreadPoolExecutor.

In both modes a job whose in-batch dependencies are not yet terminal goes
to the back of the queue, and a job with a problematic dependency is
recorded as skipped without invoking its probe.
"""

import contextvars
import threading
import time
import traceback
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable

from core.config import EngineConfig
from core.dependency_graph import DependencyGraph
from core.inversion import ResultInverter
from core.logging_config import bind_batch_context, clear_batch_context, get_logger
from core.metrics import record_batch, record_job_result, update_active_jobs_count
from core.resource_pool import ResourcePool
from core.result import BatchResult, ProbeResult
from core.retry_controller import RetryController
from core.scheduler import Scheduler
from core.timeout_controller import TimeoutController
from core.types import (
    PROBLEM_STATUSES,
    EngineError,
    Job,
    ResourceExhaustedError,
    ResultStatus,
    UnknownInversionRuleError,
)
from probes.base import Probe
from probes.registry import ProbeRegistry

from .statistics import ExecutionStatistics

logger = get_logger(__name__)

DEPENDENCY_SKIP_REASON = "dependencies not met"

READY = "ready"
WAITING = "waiting"
BLOCKED = "blocked"

ProgressCallback = Callable[[int, int, str], None]


def blocks_dependents(result: ProbeResult) -> bool:
    """Problematic results block dependents, and so do dependency skips."""
    if result.status in PROBLEM_STATUSES:
        return True
    return result.status == ResultStatus.SKIP and result.data.get("reason") == DEPENDENCY_SKIP_REASON


class ExecutionEngine:
    """
    Runs batches of jobs against registered probes.

    The engine owns its configuration, controllers and statistics; several
    engines can coexist in one process.
    """

    def __init__(
        self,
        registry: ProbeRegistry,
        config: EngineConfig | dict[str, Any] | None = None,
        resource_pool: ResourcePool | None = None,
        progress_callback: ProgressCallback | None = None,
    ):
        """
        Initialize the engine.

        Args:
            registry: Registry used to instantiate probes by name
            config: EngineConfig, or a dict for EngineConfig.from_dict
            resource_pool: Shared pool (default: a pool owned by this engine)
            progress_callback: Called as (current, total, job_id) once per job
        """
        if not isinstance(config, EngineConfig):
            config = EngineConfig.from_dict(config)
        self.config = config
        self.registry = registry
        self.timeout_controller = TimeoutController(config.timeouts)
        self.retry_controller = RetryController(config.retries)
        self.inverter = ResultInverter()
        self.scheduler = Scheduler(config.scheduler)
        self.graph = DependencyGraph()
        self.pool = resource_pool or ResourcePool(config.pool)
        self._owns_pool = resource_pool is None
        self.statistics = ExecutionStatistics()
        self.progress_callback = progress_callback
        self._progress_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Batch execution
    # -------------------------------------------------------------------------

    def execute_batch(
        self,
        jobs: Iterable[Job | dict[str, Any]],
        name: str | None = None,
        context: dict[str, Any] | None = None,
        deadline: float | None = None,
    ) -> BatchResult:
        """
        Execute a batch of jobs.

        Args:
            jobs: Jobs (or dicts accepted by Job.from_dict)
            name: Batch name used in logs and the BatchResult
            context: Extra context passed to every probe
            deadline: Seconds available for the whole batch. Jobs that do
                not fit by estimated_duration are dropped up front; jobs
                reached after the deadline are not started. Both get
                timeout results.

        Returns:
            BatchResult keyed by job id, in submission order

        Raises:
            ValueError: Duplicate job ids
            CyclicDependencyError: The dependency graph has a cycle
            UnknownInversionRuleError: A job names an unknown inversion mode
        """
        jobs = [job if isinstance(job, Job) else Job.from_dict(job) for job in jobs]
        name = name or "Probe Batch"
        context = dict(context or {})

        self._check_unique_ids(jobs)
        analysis = self.graph.analyze(jobs)
        self._validate_inversion_modes(jobs)

        mode = "parallel" if self.config.parallel_execution else "sequential"
        batch_id = uuid.uuid4().hex[:12]
        bind_batch_context(name, batch_id=batch_id)
        start = time.perf_counter()
        logger.info("batch_started", jobs=len(jobs), mode=mode, deadline=deadline)

        try:
            results: dict[str, ProbeResult] = {}
            batch_ids = {job.id for job in jobs}
            total = len(jobs)

            budget = self._batch_budget(deadline)
            runnable = jobs
            if deadline is not None:
                runnable = self.scheduler.optimize_for_deadline(jobs, deadline)
                admitted = {job.id for job in runnable}
                for job in jobs:
                    if job.id not in admitted:
                        result = self._deadline_result(job, deadline, 0.0, "dropped: does not fit batch deadline")
                        self._record(results, job, result, total)

            ordered = self.scheduler.optimize(runnable, analysis.order)

            if mode == "parallel":
                aborted = self._run_parallel(ordered, results, batch_ids, total, context, start, budget)
            else:
                aborted = self._run_sequential(ordered, results, batch_ids, total, context, start, budget)

            execution_time = time.perf_counter() - start
            record_batch(mode, "aborted" if aborted else "completed", execution_time)

            batch = BatchResult(
                name=name,
                target=self._batch_target(jobs),
                results={job.id: results[job.id] for job in jobs if job.id in results},
                execution_time=execution_time,
                context=context,
            )
            logger.info(
                "batch_completed",
                total=batch.total,
                passed=len(batch.passed),
                failed=len(batch.failed),
                aborted=aborted,
                execution_time=round(execution_time, 3),
            )
            return batch
        finally:
            update_active_jobs_count(0)
            clear_batch_context()

    def _run_sequential(
        self,
        ordered: list[Job],
        results: dict[str, ProbeResult],
        batch_ids: set[str],
        total: int,
        context: dict[str, Any],
        start: float,
        budget: float | None,
    ) -> bool:
        queue = deque(ordered)
        waiting = 0

        while queue:
            job = queue.popleft()
            state, blockers = self._dependency_state(job, results, batch_ids)
            if state == WAITING:
                queue.append(job)
                waiting += 1
                if waiting > len(queue):
                    raise EngineError("No runnable job left in batch")
                continue
            waiting = 0

            if state == BLOCKED:
                result = self._dependency_skip(job, blockers)
            elif self._overdue(start, budget):
                result = self._deadline_result(job, budget, time.perf_counter() - start, "batch deadline exceeded")
            else:
                update_active_jobs_count(1)
                result = self.execute_job(job, context, expires_at=self._expiry(start, budget))
                update_active_jobs_count(0)

            self._record(results, job, result, total)

            if self.config.fail_fast and result.has_problems():
                logger.warning("batch_stopped_fail_fast", job_id=job.id, status=result.status.value, remaining=len(queue))
                return True

        return False

    def _run_parallel(
        self,
        ordered: list[Job],
        results: dict[str, ProbeResult],
        batch_ids: set[str],
        total: int,
        context: dict[str, Any],
        start: float,
        budget: float | None,
    ) -> bool:
        queue = deque(ordered)
        running: dict[Future, Job] = {}
        max_workers = self.config.max_parallel_tests
        aborted = False

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="probe-job") as executor:
            while queue or running:
                progressed = False

                for _ in range(len(queue)):
                    if aborted or len(running) >= max_workers:
                        break
                    job = queue.popleft()
                    state, blockers = self._dependency_state(job, results, batch_ids)

                    if state == WAITING:
                        queue.append(job)
                        continue

                    progressed = True
                    if state == BLOCKED:
                        self._record(results, job, self._dependency_skip(job, blockers), total)
                    elif self._overdue(start, budget):
                        elapsed = time.perf_counter() - start
                        self._record(results, job, self._deadline_result(job, budget, elapsed, "batch deadline exceeded"), total)
                    else:
                        # Copy so log events from worker threads keep the batch context
                        ctx = contextvars.copy_context()
                        expires_at = self._expiry(start, budget)
                        running[executor.submit(ctx.run, self.execute_job, job, context, expires_at)] = job

                update_active_jobs_count(len(running))

                if not running:
                    if aborted:
                        break
                    if queue and not progressed:
                        raise EngineError("No runnable job left in batch")
                    continue

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    job = running.pop(future)
                    result = future.result()
                    self._record(results, job, result, total)
                    if self.config.fail_fast and result.has_problems() and not aborted:
                        aborted = True
                        logger.warning(
                            "batch_stopped_fail_fast",
                            job_id=job.id,
                            status=result.status.value,
                            remaining=len(queue),
                        )

                if aborted:
                    queue.clear()

        return aborted

    # -------------------------------------------------------------------------
    # Single job
    # -------------------------------------------------------------------------

    def execute_job(
        self,
        job: Job,
        context: dict[str, Any] | None = None,
        expires_at: float | None = None,
    ) -> ProbeResult:
        """
        Execute one job with timeout, retry and inversion handling.

        expires_at is the time.perf_counter() instant at which the batch
        budget runs out: every attempt is capped at the time left and no
        retry starts after it.

        Never raises for probe failures: unknown probes, exhausted pools and
        exceptions escaping every wrapper become error results.

        Raises:
            UnknownInversionRuleError: The job names an unknown inversion mode
        """
        start = time.perf_counter()
        context = {**(context or {}), "job_id": job.id}
        options = job.options

        try:
            probe = self.registry.create(job.probe_name, options.get("probe_config"))
            if probe is None:
                result = self._error_result(job, f"Probe not found: {job.probe_name}")
            elif probe.should_skip(job.target, context):
                result = probe.skipped_result()
                result.target = job.target
            else:
                result = self._execute_with_handlers(probe, job, context, expires_at)
                inversion_mode = options.get("inversion_mode")
                if self.config.enable_result_inversion and inversion_mode:
                    result = self.inverter.apply_inversion(result, inversion_mode)
        except UnknownInversionRuleError:
            raise
        except ResourceExhaustedError as e:
            logger.warning("resource_exhausted", job_id=job.id, probe=job.probe_name, waited=e.waited)
            result = self._error_result(job, str(e), e)
        except Exception as e:
            logger.error("job_failed_with_exception", job_id=job.id, probe=job.probe_name, error=str(e), exc_info=True)
            result = self._error_result(job, f"Probe execution failed: {e}", e)

        result.context.setdefault("job_id", job.id)
        duration = time.perf_counter() - start
        self.statistics.record(job.probe_name, job.target, result, duration)
        record_job_result(job.probe_name, result.status.value, duration)
        logger.debug("job_completed", job_id=job.id, probe=job.probe_name, status=result.status.value, duration=round(duration, 3))
        return result

    def _execute_with_handlers(
        self,
        probe: Probe,
        job: Job,
        context: dict[str, Any],
        expires_at: float | None = None,
    ) -> ProbeResult:
        """
        Compose timeout and retry handling.

        Every retry attempt is timeout-bounded and holds its own pool
        handle; a handle whose attempt timed out is marked unhealthy so it
        is not handed to another job while the abandoned call may still use
        it. Timeouts are capped by the batch budget when one is set.
        """
        options = job.options
        use_timeout = self.config.enable_timeouts and options.get("timeout") is not False
        use_retries = self.config.enable_retries and options.get("retries", True) is not False

        timeout = options.get("timeout") if use_timeout else None
        if use_timeout and timeout is None and self.config.adaptive_timeouts:
            history = self.statistics.history(probe.name, job.target)
            if history:
                timeout = self.timeout_controller.adaptive_timeout(history, probe)

        def attempt(probe: Probe, target: str, attempt_context: dict[str, Any]) -> ProbeResult:
            with self.pool.lease() as handle:
                attempt_context = {**attempt_context, "resource": handle}
                if use_timeout:
                    time_left = None if expires_at is None else expires_at - time.perf_counter()
                    result = self.timeout_controller.execute_with_timeout(
                        probe, target, attempt_context, timeout, time_left=time_left
                    )
                else:
                    result = probe.execute(target, attempt_context)
                # A call not started for lack of budget leaves the handle clean
                if result.is_timeout() and result.data.get("timeout_strategy") != "budget":
                    handle.healthy = False
                return result

        if not use_retries:
            return attempt(probe, job.target, context)

        max_retries = options.get("max_retries")
        retry_delay = options.get("retry_delay")
        if self.config.smart_retries and max_retries is None and retry_delay is None:
            failures = self.statistics.failure_history(probe.name, job.target)
            if failures:
                smart = self.retry_controller.smart_retry_config(failures)
                max_retries, retry_delay = smart["max_retries"], smart["retry_delay"]

        return self.retry_controller.execute_with_retry(
            probe,
            job.target,
            context,
            max_retries=max_retries,
            base_delay=retry_delay,
            executor=attempt,
            expires_at=expires_at,
        )

    # -------------------------------------------------------------------------
    # Convenience batches
    # -------------------------------------------------------------------------

    def execute_probes(
        self,
        probe_names: Iterable[str],
        target: str,
        context: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> BatchResult:
        """Run independent probes against one target (job id = probe name)."""
        jobs = [
            Job(id=name, probe_name=name, target=target, options=dict(options or {}))
            for name in probe_names
        ]
        return self.execute_batch(jobs, name=f"Probes on {target}", context=context)

    def execute_category(self, category: str, target: str, **kwargs) -> BatchResult:
        return self.execute_probes(self.registry.list_probes(category=category, enabled_only=True), target, **kwargs)

    def execute_tag(self, tag: str, target: str, **kwargs) -> BatchResult:
        return self.execute_probes(self.registry.list_probes(tag=tag, enabled_only=True), target, **kwargs)

    # -------------------------------------------------------------------------
    # Dependency handling
    # -------------------------------------------------------------------------

    def can_execute(
        self,
        job: Job,
        completed: dict[str, ProbeResult],
        batch_ids: set[str] | None = None,
    ) -> bool:
        """
        True when every in-batch dependency has a completed result that
        does not block dependents. Ids outside batch_ids are ignored; with
        batch_ids None every dependency counts.
        """
        state, _ = self._dependency_state(job, completed, batch_ids)
        return state == READY

    @staticmethod
    def _dependency_state(
        job: Job,
        completed: dict[str, ProbeResult],
        batch_ids: set[str] | None,
    ) -> tuple[str, list[str]]:
        blockers = []
        waiting = False
        for dep in sorted(job.dependencies):
            if batch_ids is not None and dep not in batch_ids:
                continue
            result = completed.get(dep)
            if result is None:
                waiting = True
            elif blocks_dependents(result):
                blockers.append(dep)

        if blockers:
            return BLOCKED, blockers
        if waiting:
            return WAITING, []
        return READY, []

    def _dependency_skip(self, job: Job, blockers: list[str]) -> ProbeResult:
        logger.info("job_skipped_dependencies", job_id=job.id, blocked_by=blockers)
        result = ProbeResult(
            probe_name=job.probe_name,
            status=ResultStatus.SKIP,
            message="Skipped: dependencies not met",
            data={"reason": DEPENDENCY_SKIP_REASON, "blocked_by": blockers},
            target=job.target,
        )
        record_job_result(job.probe_name, result.status.value, 0.0)
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_unique_ids(jobs: list[Job]) -> None:
        seen = set()
        duplicates = []
        for job in jobs:
            if job.id in seen:
                duplicates.append(job.id)
            seen.add(job.id)
        if duplicates:
            raise ValueError(f"Duplicate job ids in batch: {', '.join(sorted(set(duplicates)))}")

    def _validate_inversion_modes(self, jobs: list[Job]) -> None:
        if not self.config.enable_result_inversion:
            return
        for job in jobs:
            mode = job.options.get("inversion_mode")
            if not self.inverter.has_rule(mode):
                raise UnknownInversionRuleError(
                    f"Unknown inversion mode: {mode} (job {job.id})", rule_name=mode
                )

    def _batch_budget(self, deadline: float | None) -> float | None:
        limits = [d for d in (deadline, self.config.execution_timeout) if d is not None and d > 0]
        return min(limits) if limits else None

    @staticmethod
    def _overdue(start: float, budget: float | None) -> bool:
        return budget is not None and time.perf_counter() - start >= budget

    @staticmethod
    def _expiry(start: float, budget: float | None) -> float | None:
        return None if budget is None else start + budget

    def _deadline_result(self, job: Job, limit: float, elapsed: float, reason: str) -> ProbeResult:
        logger.info("job_not_started_deadline", job_id=job.id, reason=reason)
        result = self.timeout_controller.create_timeout_result(job.probe_name, job.target, limit, elapsed, "deadline")
        result.add_data("reason", reason)
        record_job_result(job.probe_name, result.status.value, 0.0)
        return result

    @staticmethod
    def _error_result(job: Job, message: str, error: Exception | None = None) -> ProbeResult:
        data: dict[str, Any] = {}
        if error is not None:
            data = {
                "exception_class": type(error).__name__,
                "exception_trace": "".join(traceback.format_exception(error)),
            }
        return ProbeResult(
            probe_name=job.probe_name,
            status=ResultStatus.ERROR,
            message=message,
            data=data,
            target=job.target,
        )

    @staticmethod
    def _batch_target(jobs: list[Job]) -> str:
        targets = list(dict.fromkeys(job.target for job in jobs))
        if len(targets) == 1:
            return targets[0]
        return "multiple" if targets else ""

    def _record(self, results: dict[str, ProbeResult], job: Job, result: ProbeResult, total: int) -> None:
        with self._progress_lock:
            results[job.id] = result
            current = len(results)
        if self.progress_callback is not None:
            try:
                self.progress_callback(current, total, job.id)
            except Exception as e:
                logger.warning("progress_callback_failed", job_id=job.id, error=str(e))

    # -------------------------------------------------------------------------
    # Statistics / lifecycle
    # -------------------------------------------------------------------------

    def get_execution_statistics(self) -> dict[str, dict[str, Any]]:
        return self.statistics.get_statistics()

    def get_retry_statistics(self) -> dict[str, Any]:
        return self.retry_controller.get_retry_statistics()

    def get_timeout_statistics(self) -> dict[str, Any]:
        return self.timeout_controller.get_timeout_statistics()

    def get_pool_stats(self) -> dict[str, Any]:
        return self.pool.get_stats()

    def get_graph_stats(self) -> dict[str, Any]:
        return self.graph.get_stats()

    def reset_statistics(self) -> None:
        self.statistics.reset()
        self.retry_controller.reset_retry_statistics()
        self.timeout_controller.reset_statistics()

    def close(self) -> None:
        """Close the pool if this engine created it."""
        if self._owns_pool:
            self.pool.close()

    def __enter__(self) -> "ExecutionEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
