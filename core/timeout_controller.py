"""Per-call time budgets for probe execution.

Two interchangeable strategies enforce the budget:

- thread (default): the probe runs on a daemon thread and the caller waits
  up to the deadline. On expiry the call is abandoned, the cancel_event in
  the probe's context is set so cooperative probes can stop early, and a
  timeout result is returned immediately.
- polling: the probe runs inline and elapsed time is checked after it
  returns. This cannot interrupt a probe that blocks past its budget; such
  probes must bound their own I/O (e.g. via the httpx client timeout) for
  the budget to hold.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Iterable

from .config import TimeoutConfig
from .metrics import record_timeout
from .result import ProbeResult
from .types import ProbeTimeoutError, ResultStatus

logger = logging.getLogger(__name__)

# Keep the last N executions for statistics
STATS_WINDOW = 1000

DISTRIBUTION_BUCKETS = (
    ("< 5s", 5),
    ("5-15s", 15),
    ("15-30s", 30),
    ("30-60s", 60),
)


class TimeoutController:
    """Runs probes under a clamped wall-clock budget."""

    def __init__(self, config: TimeoutConfig | None = None):
        self.config = config or TimeoutConfig()
        self._probe_timeouts: dict[str, float] = {}
        self._records: deque = deque(maxlen=STATS_WINDOW)
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Budget resolution
    # -------------------------------------------------------------------------

    def clamp(self, timeout: float) -> float:
        """Clamp a timeout into [min_timeout, max_timeout]."""
        return max(self.config.min_timeout, min(float(timeout), self.config.max_timeout))

    def resolve_timeout(self, probe, timeout: float | None = None) -> float:
        """Explicit value, then per-probe override, then probe config, then default."""
        if timeout is None:
            with self._lock:
                timeout = self._probe_timeouts.get(probe.name)
        if timeout is None:
            timeout = getattr(probe, "config", {}).get("timeout")
        if timeout is None:
            timeout = self.config.default_timeout
        return self.clamp(timeout)

    def set_probe_timeout(self, probe_name: str, timeout: float) -> None:
        timeout = self.clamp(timeout)
        with self._lock:
            self._probe_timeouts[probe_name] = timeout

    def get_probe_timeout(self, probe_name: str) -> float:
        with self._lock:
            return self._probe_timeouts.get(probe_name, self.config.default_timeout)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_with_timeout(
        self,
        probe,
        target: str,
        context: dict[str, Any] | None = None,
        timeout: float | None = None,
        time_left: float | None = None,
    ) -> ProbeResult:
        """
        Execute a probe within a time budget.

        time_left caps the resolved timeout without being clamped up to
        min_timeout; when it is already spent the probe is not started and
        a timeout result with strategy "budget" is returned.

        Exceptions raised by the probe (other than running out of time)
        propagate to the caller.
        """
        limit = self.resolve_timeout(probe, timeout)
        if time_left is not None:
            if time_left <= 0:
                return self.create_timeout_result(probe.name, target, 0.0, 0.0, "budget")
            limit = min(limit, time_left)
        return self._execute(probe, target, context, limit)

    def _execute(self, probe, target: str, context: dict[str, Any] | None, limit: float) -> ProbeResult:
        context = dict(context or {})
        strategy = self.config.strategy
        start = time.perf_counter()
        timed_out = False

        try:
            if strategy == "thread":
                result = self._run_on_thread(probe, target, context, limit)
            else:
                result = self._run_polling(probe, target, context, limit)
        except ProbeTimeoutError as e:
            timed_out = True
            result = self.create_timeout_result(probe.name, target, limit, e.actual_time, strategy)
        finally:
            self._record(probe.name, limit, time.perf_counter() - start, timed_out)

        return result

    def _run_on_thread(self, probe, target: str, context: dict[str, Any], limit: float) -> ProbeResult:
        cancel_event = threading.Event()
        context["cancel_event"] = cancel_event
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def call():
            try:
                outcome["result"] = probe.execute(target, context)
            except Exception as e:
                outcome["error"] = e
            finally:
                done.set()

        worker = threading.Thread(target=call, name=f"probe-{probe.name}", daemon=True)
        start = time.perf_counter()
        worker.start()

        if not done.wait(limit):
            cancel_event.set()
            elapsed = time.perf_counter() - start
            logger.warning(
                f"Probe {probe.name} on {target} exceeded {limit:.2f}s, abandoning call"
            )
            raise ProbeTimeoutError(
                f"Probe {probe.name} exceeded timeout of {limit}s",
                timeout=limit,
                actual_time=elapsed,
            )

        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]

    def _run_polling(self, probe, target: str, context: dict[str, Any], limit: float) -> ProbeResult:
        start = time.perf_counter()
        try:
            result = probe.execute(target, context)
        except Exception:
            elapsed = time.perf_counter() - start
            if elapsed > limit:
                raise ProbeTimeoutError(
                    f"Probe {probe.name} exceeded timeout of {limit}s",
                    timeout=limit,
                    actual_time=elapsed,
                ) from None
            raise

        elapsed = time.perf_counter() - start
        if elapsed > limit:
            raise ProbeTimeoutError(
                f"Probe {probe.name} exceeded timeout of {limit}s",
                timeout=limit,
                actual_time=elapsed,
            )
        return result

    def create_timeout_result(
        self,
        probe_name: str,
        target: str,
        limit: float,
        actual_time: float | None = None,
        strategy: str | None = None,
    ) -> ProbeResult:
        actual = limit if actual_time is None else actual_time
        strategy = strategy or self.config.strategy
        record_timeout(probe_name, strategy)
        return ProbeResult(
            probe_name=probe_name,
            status=ResultStatus.TIMEOUT,
            message=f"Probe timed out after {actual:.2f}s (limit: {limit:.2f}s)",
            data={
                "timeout_limit": limit,
                "actual_execution_time": actual,
                "exceeded_by": max(0.0, actual - limit),
                "timeout_strategy": strategy,
            },
            execution_time=actual,
            target=target,
        )

    # -------------------------------------------------------------------------
    # Variants
    # -------------------------------------------------------------------------

    @staticmethod
    def _history_time(item) -> float:
        if isinstance(item, ProbeResult):
            return item.execution_time
        if isinstance(item, dict):
            return float(item.get("execution_time") or 0.0)
        return float(item or 0.0)

    def adaptive_timeout(self, history: Iterable, probe=None) -> float:
        """
        1.5x the mean of positive historical execution times, clamped.

        Falls back to the probe's (or the default) timeout without history.
        """
        times = [t for t in (self._history_time(item) for item in history) if t > 0]
        if not times:
            return self.resolve_timeout(probe) if probe is not None else self.clamp(self.config.default_timeout)
        return self.clamp(sum(times) / len(times) * 1.5)

    def execute_with_adaptive_timeout(
        self,
        probe,
        target: str,
        context: dict[str, Any] | None = None,
        history: Iterable = (),
    ) -> ProbeResult:
        timeout = self.adaptive_timeout(history, probe)
        return self.execute_with_timeout(probe, target, context, timeout)

    def execute_with_escalating_timeout(
        self,
        probe,
        target: str,
        context: dict[str, Any] | None = None,
        max_attempts: int = 3,
    ) -> ProbeResult:
        """
        Retry timed-out calls with budget base*1, base*2, ... base*max_attempts.

        Returns the first non-timeout result, or the last timeout result
        marked with max_attempts_reached.
        """
        base = self.resolve_timeout(probe)
        max_attempts = max(1, max_attempts)
        result = None

        for attempt in range(1, max_attempts + 1):
            timeout = self.clamp(base * attempt)
            result = self.execute_with_timeout(probe, target, context, timeout)

            if not result.is_timeout():
                result.add_data("timeout_attempts", attempt)
                result.add_data("timeout_used", timeout)
                return result

            logger.info(f"Escalating timeout for {probe.name}: attempt {attempt}/{max_attempts} timed out at {timeout:.2f}s")

        result.add_data("timeout_attempts", max_attempts)
        result.add_data("max_attempts_reached", True)
        return result

    def execute_batch_with_timeouts(
        self,
        probes: list,
        target: str,
        context: dict[str, Any] | None = None,
        total_timeout: float | None = None,
    ) -> list[ProbeResult]:
        """
        Run probes one after another within a shared time budget.

        Each probe gets min(remaining, its own timeout). Probes reached after
        the budget is spent are not executed; they get a timeout result.
        """
        results = []
        start = time.perf_counter()

        for probe in probes:
            if total_timeout is None:
                results.append(self.execute_with_timeout(probe, target, context))
                continue

            elapsed = time.perf_counter() - start
            remaining = total_timeout - elapsed
            if remaining <= 0:
                results.append(self.create_timeout_result(probe.name, target, 0.0, elapsed, "budget"))
                continue

            # The remaining budget is not clamped up to min_timeout
            timeout = min(remaining, self.resolve_timeout(probe))
            results.append(self._execute(probe, target, context, timeout))

        return results

    # -------------------------------------------------------------------------
    # Statistics
    # -------------------------------------------------------------------------

    def _record(self, probe_name: str, timeout: float, duration: float, timed_out: bool) -> None:
        with self._lock:
            self._records.append(
                {"probe": probe_name, "timeout": timeout, "duration": duration, "timed_out": timed_out}
            )

    def get_timeout_statistics(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._records)

        distribution = {label: 0 for label, _ in DISTRIBUTION_BUCKETS}
        distribution["> 60s"] = 0
        stats = {
            "total_executions": len(records),
            "timeouts_occurred": 0,
            "average_execution_time": 0.0,
            "timeout_rate": 0.0,
            "timeout_distribution": distribution,
        }
        if not records:
            return stats

        for record in records:
            if record["timed_out"]:
                stats["timeouts_occurred"] += 1
            for label, upper in DISTRIBUTION_BUCKETS:
                if record["duration"] < upper:
                    distribution[label] += 1
                    break
            else:
                distribution["> 60s"] += 1

        stats["average_execution_time"] = sum(r["duration"] for r in records) / len(records)
        stats["timeout_rate"] = stats["timeouts_occurred"] / len(records) * 100
        return stats

    def reset_statistics(self) -> None:
        with self._lock:
            self._records.clear()
