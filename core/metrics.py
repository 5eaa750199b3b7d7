"""Prometheus metrics definitions for the probe execution engine."""
from prometheus_client import Counter, Gauge, Histogram, generate_latest, REGISTRY


# =============================================================================
# Counters (monotonically increasing)
# =============================================================================

jobs_total = Counter(
    "probe_jobs_total",
    "Total number of probe jobs executed",
    ["probe", "status"]
)

retries_total = Counter(
    "probe_retries_total",
    "Total number of retry attempts (attempts after the first)",
    ["probe"]
)

timeouts_total = Counter(
    "probe_timeouts_total",
    "Total number of probe calls that exceeded their time budget",
    ["probe", "strategy"]
)

inversions_total = Counter(
    "probe_inversions_total",
    "Total number of inversion rule applications",
    ["rule", "changed"]  # changed: true, false
)

batches_total = Counter(
    "probe_batches_total",
    "Total number of batches executed",
    ["mode", "outcome"]  # mode: sequential, parallel; outcome: completed, aborted
)


# =============================================================================
# Gauges (can go up and down)
# =============================================================================

pool_available = Gauge(
    "probe_pool_available_handles",
    "Number of idle connection handles in the resource pool"
)

pool_in_use = Gauge(
    "probe_pool_in_use_handles",
    "Number of connection handles currently leased"
)

pool_utilization = Gauge(
    "probe_pool_utilization_pct",
    "Pool utilization percentage (in_use/max_connections * 100)"
)

active_jobs = Gauge(
    "probe_active_jobs",
    "Number of probe jobs currently running"
)


# =============================================================================
# Histograms (distribution of values)
# =============================================================================

job_duration_seconds = Histogram(
    "probe_job_duration_seconds",
    "Probe job execution duration in seconds",
    ["probe"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 300]
)

batch_duration_seconds = Histogram(
    "probe_batch_duration_seconds",
    "Batch execution duration in seconds",
    buckets=[1, 5, 10, 30, 60, 300, 900, 1800]
)


# =============================================================================
# Metric Helpers
# =============================================================================

def metrics_response() -> bytes:
    """
    Generate Prometheus metrics response.

    Returns:
        Prometheus text format metrics
    """
    return generate_latest(REGISTRY)


def record_job_result(probe_name: str, status: str, duration: float):
    """
    Record a finished job.

    Args:
        probe_name: Registered probe name
        status: Final result status (pass, fail, warning, error, skip, timeout)
        duration: Execution time in seconds
    """
    jobs_total.labels(probe=probe_name, status=status).inc()
    job_duration_seconds.labels(probe=probe_name).observe(duration)


def record_retry(probe_name: str):
    retries_total.labels(probe=probe_name).inc()


def record_timeout(probe_name: str, strategy: str):
    """
    Record a probe call that ran out of time.

    Args:
        probe_name: Registered probe name
        strategy: Timeout strategy in effect (thread, polling, budget)
    """
    timeouts_total.labels(probe=probe_name, strategy=strategy).inc()


def record_inversion(rule_name: str, changed: bool):
    inversions_total.labels(rule=rule_name, changed=str(changed).lower()).inc()


def record_batch(mode: str, outcome: str, duration: float):
    """
    Record batch completion.

    Args:
        mode: Execution mode (sequential, parallel)
        outcome: completed, or aborted when fail_fast stopped the batch
        duration: Wall-clock batch duration in seconds
    """
    batches_total.labels(mode=mode, outcome=outcome).inc()
    batch_duration_seconds.observe(duration)


def update_active_jobs_count(count: int):
    active_jobs.set(count)


def update_pool_metrics(available: int, in_use: int, max_connections: int):
    """
    Update resource pool gauges.

    Args:
        available: Idle handles ready for reuse
        in_use: Handles currently leased
        max_connections: Concurrent lease ceiling
    """
    pool_available.set(available)
    pool_in_use.set(in_use)

    utilization = (in_use / max_connections * 100) if max_connections > 0 else 0
    pool_utilization.set(round(utilization, 1))
