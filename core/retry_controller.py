"""Bounded retries with exponential backoff and jitter."""

import random
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from .config import RetryConfig
from .logging_config import get_logger
from .metrics import record_retry
from .result import ProbeResult
from .types import PROBLEM_STATUSES, ResultStatus, coerce_status

logger = get_logger(__name__)

# Number of most recent failures considered by smart retry
SMART_RETRY_WINDOW = 10
SMART_RETRY_MAX_RETRIES = 8
SMART_RETRY_MAX_DELAY = 10.0

Executor = Callable[[Any, str, dict[str, Any]], ProbeResult]
RetryCondition = Callable[[ProbeResult], bool]


def _default_executor(probe, target: str, context: dict[str, Any]) -> ProbeResult:
    return probe.execute(target, context)


@dataclass
class RetryAttempt:
    """One entry in a job's append-only attempt log."""

    attempt_number: int
    execution_time: float
    result: ProbeResult | None = None
    error: Exception | None = None

    def summary(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "attempt": self.attempt_number,
            "execution_time": self.execution_time,
        }
        if self.result is not None:
            entry["status"] = self.result.status.value
            entry["message"] = self.result.message
        elif self.error is not None:
            entry["status"] = "exception"
            entry["exception"] = type(self.error).__name__
            entry["message"] = str(self.error)
        return entry


class RetryController:
    """
    Re-executes probes whose outcome is retryable.

    A result is retried when its status is in retryable_statuses or any
    registered condition returns True. A raised exception is retried when
    it is an instance of one of retryable_exceptions; any other exception
    becomes an error result immediately.

    The inter-attempt sleep blocks only the calling thread.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep
        self._rng = rng
        self._conditions: list[RetryCondition] = []
        self._stats: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def execute_with_retry(
        self,
        probe,
        target: str,
        context: dict[str, Any] | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        executor: Executor | None = None,
        expires_at: float | None = None,
    ) -> ProbeResult:
        """
        Execute a probe up to max_retries + 1 times.

        Args:
            probe: Probe instance
            target: Probe target
            context: Context passed to every attempt (plus "attempt")
            max_retries: Retries after the first attempt (default: probe
                config, then default_max_retries)
            base_delay: First backoff delay in seconds (default: probe
                config retry_delay, then default_retry_delay)
            executor: Callable performing one attempt, e.g. a timeout-bounded
                execution; defaults to probe.execute
            expires_at: time.perf_counter() instant after which no further
                attempt is started

        Returns:
            The first non-retryable result, the last result when expires_at
            leaves no room for another attempt, or a fail result with
            retries_exhausted=True when every attempt was retryable
        """
        probe_config = getattr(probe, "config", {})
        if max_retries is None:
            max_retries = probe_config.get("max_retries", self.config.default_max_retries)
        if base_delay is None:
            base_delay = probe_config.get("retry_delay", self.config.default_retry_delay)
        max_attempts = max(0, int(max_retries)) + 1
        run = executor or _default_executor
        context = context or {}

        attempts: list[RetryAttempt] = []
        last_result: ProbeResult | None = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                record_retry(probe.name)

            start = time.perf_counter()
            try:
                result = run(probe, target, {**context, "attempt": attempt})
            except Exception as e:
                attempts.append(RetryAttempt(attempt, time.perf_counter() - start, error=e))
                last_result = self._error_result(probe.name, target, e, attempts)

                if not isinstance(e, self.config.retryable_exceptions):
                    logger.info("non_retryable_exception", probe=probe.name, exception=type(e).__name__)
                    self._record_stats(probe.name, attempts, succeeded=False)
                    return last_result

                logger.warning(
                    "retryable_exception",
                    probe=probe.name,
                    target=target,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                )
            else:
                attempts.append(RetryAttempt(attempt, time.perf_counter() - start, result=result))
                if not self.should_retry(result):
                    return self._finalize(result, attempts)
                last_result = result
                logger.info(
                    "retryable_result",
                    probe=probe.name,
                    target=target,
                    attempt=attempt,
                    status=result.status.value,
                )

            if attempt < max_attempts:
                delay = self.calculate_delay(base_delay, attempt)
                if expires_at is not None and time.perf_counter() + delay >= expires_at:
                    logger.info("retry_budget_spent", probe=probe.name, target=target, attempts=attempt)
                    return self._finalize(last_result, attempts)
                self._sleep(delay)

        return self._exhausted(probe.name, target, last_result, attempts)

    def should_retry(self, result: ProbeResult) -> bool:
        if result.status in self.config.retryable_statuses:
            return True
        return any(condition(result) for condition in list(self._conditions))

    def calculate_delay(self, base_delay: float, attempt: int) -> float:
        """Backoff delay before the attempt following `attempt`, with jitter."""
        delay = base_delay
        if self.config.exponential_backoff:
            delay = base_delay * self.config.backoff_multiplier ** (attempt - 1)
        delay = min(delay, self.config.max_retry_delay)
        if self.config.jitter:
            delay += delay * self.config.jitter_max * self._rng()
        return max(0.0, delay)

    def _finalize(self, result: ProbeResult, attempts: list[RetryAttempt]) -> ProbeResult:
        count = len(attempts)
        if count > 1:
            result.add_data("retry_attempts", count)
            result.add_data("retry_history", [a.summary() for a in attempts])
            if result.is_successful():
                result.message = f"{result.message} (succeeded after {count} attempts)"
            else:
                result.message = f"{result.message} (after {count} attempts)"
        self._record_stats(result.probe_name, attempts, succeeded=result.is_successful())
        return result

    def _error_result(
        self, probe_name: str, target: str, error: Exception, attempts: list[RetryAttempt]
    ) -> ProbeResult:
        result = ProbeResult(
            probe_name=probe_name,
            status=ResultStatus.ERROR,
            message=f"Probe failed: {error}",
            data={
                "exception_class": type(error).__name__,
                "exception_message": str(error),
                "exception_trace": "".join(traceback.format_exception(error)),
            },
            target=target,
            execution_time=attempts[-1].execution_time,
        )
        if len(attempts) > 1:
            result.add_data("retry_attempts", len(attempts))
            result.add_data("retry_history", [a.summary() for a in attempts])
        return result

    def _exhausted(
        self,
        probe_name: str,
        target: str,
        last_result: ProbeResult | None,
        attempts: list[RetryAttempt],
    ) -> ProbeResult:
        message = f"Probe failed after {len(attempts)} attempts"
        if last_result is not None:
            message += f": {last_result.message}"

        result = ProbeResult(
            probe_name=probe_name,
            status=ResultStatus.FAIL,
            message=message,
            data={
                "retry_attempts": len(attempts),
                "retry_history": [a.summary() for a in attempts],
                "retries_exhausted": True,
            },
            target=target,
            execution_time=sum(a.execution_time for a in attempts),
        )
        if last_result is not None:
            result.add_data("last_result_data", dict(last_result.data))
            result.set_score(last_result.score)

        logger.warning("retries_exhausted", probe=probe_name, target=target, attempts=len(attempts))
        self._record_stats(probe_name, attempts, succeeded=False)
        return result

    # -------------------------------------------------------------------------
    # Smart retry
    # -------------------------------------------------------------------------

    @staticmethod
    def _failure_fields(item) -> tuple[ResultStatus | None, float]:
        if isinstance(item, ProbeResult):
            return item.status, float(item.data.get("recovery_time") or 0.0)
        status = item.get("status")
        return (coerce_status(status) if status else None), float(item.get("recovery_time") or 0.0)

    def smart_retry_config(self, failure_history: Iterable) -> dict[str, float]:
        """
        Derive max_retries and retry_delay from recent failures.

        - errors outnumber timeouts: more retries (default + 2, at most 8)
        - timeouts are more than half: longer delay (default x2, at most 10s)
        - delay is at least 10% of the mean recovery time
        """
        max_retries = self.config.default_max_retries
        retry_delay = self.config.default_retry_delay

        failures = [self._failure_fields(item) for item in failure_history]
        failures = [f for f in failures if f[0] in PROBLEM_STATUSES][-SMART_RETRY_WINDOW:]
        if not failures:
            return {"max_retries": max_retries, "retry_delay": retry_delay}

        timeouts = sum(1 for status, _ in failures if status == ResultStatus.TIMEOUT)
        errors = sum(1 for status, _ in failures if status == ResultStatus.ERROR)
        avg_recovery = sum(recovery for _, recovery in failures) / len(failures)

        if errors > timeouts:
            max_retries = min(self.config.default_max_retries + 2, SMART_RETRY_MAX_RETRIES)
        if timeouts > len(failures) * 0.5:
            retry_delay = min(self.config.default_retry_delay * 2, SMART_RETRY_MAX_DELAY)
        if avg_recovery > 0:
            retry_delay = max(retry_delay, avg_recovery * 0.1)

        return {"max_retries": max_retries, "retry_delay": retry_delay}

    def execute_with_smart_retry(
        self,
        probe,
        target: str,
        context: dict[str, Any] | None = None,
        failure_history: Iterable = (),
        executor: Executor | None = None,
    ) -> ProbeResult:
        smart = self.smart_retry_config(failure_history)
        logger.debug("smart_retry_config", probe=probe.name, target=target, **smart)
        return self.execute_with_retry(
            probe,
            target,
            context,
            max_retries=smart["max_retries"],
            base_delay=smart["retry_delay"],
            executor=executor,
        )

    # -------------------------------------------------------------------------
    # Management
    # -------------------------------------------------------------------------

    def add_retry_condition(self, condition: RetryCondition) -> None:
        self._conditions.append(condition)

    def clear_retry_conditions(self) -> None:
        self._conditions.clear()

    def add_retryable_status(self, status: ResultStatus | str) -> None:
        self.config.retryable_statuses.add(coerce_status(status))

    def remove_retryable_status(self, status: ResultStatus | str) -> None:
        self.config.retryable_statuses.discard(coerce_status(status))

    def add_retryable_exception(self, exception_class: type[BaseException]) -> None:
        if exception_class not in self.config.retryable_exceptions:
            self.config.retryable_exceptions = (*self.config.retryable_exceptions, exception_class)

    def _record_stats(self, probe_name: str, attempts: list[RetryAttempt], succeeded: bool) -> None:
        with self._lock:
            stats = self._stats.setdefault(
                probe_name,
                {
                    "total_executions": 0,
                    "total_attempts": 0,
                    "successful_retries": 0,
                    "failed_retries": 0,
                    "avg_attempts": 0.0,
                },
            )
            stats["total_executions"] += 1
            stats["total_attempts"] += len(attempts)
            if len(attempts) > 1:
                if succeeded:
                    stats["successful_retries"] += 1
                else:
                    stats["failed_retries"] += 1
            stats["avg_attempts"] = stats["total_attempts"] / stats["total_executions"]

    def get_retry_statistics(self) -> dict[str, Any]:
        """Global and per-probe retry counters."""
        with self._lock:
            per_probe = {name: dict(stats) for name, stats in self._stats.items()}

        totals = {
            "total_probes_with_retries": len(per_probe),
            "total_executions": sum(s["total_executions"] for s in per_probe.values()),
            "total_attempts": sum(s["total_attempts"] for s in per_probe.values()),
            "successful_retries": sum(s["successful_retries"] for s in per_probe.values()),
            "failed_retries": sum(s["failed_retries"] for s in per_probe.values()),
            "overall_retry_rate": 0.0,
            "overall_success_rate": 0.0,
        }
        if totals["total_executions"]:
            retried = totals["successful_retries"] + totals["failed_retries"]
            totals["overall_retry_rate"] = retried / totals["total_executions"] * 100
            if retried:
                totals["overall_success_rate"] = totals["successful_retries"] / retried * 100

        return {"global": totals, "per_probe": per_probe}

    def reset_retry_statistics(self) -> None:
        with self._lock:
            self._stats.clear()
