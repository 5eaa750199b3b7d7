"""Thread-safe execution statistics and per-target history."""

import threading
import time
from collections import deque
from typing import Any

from core.result import ProbeResult
from core.types import PROBLEM_STATUSES

# Results kept per (probe, target) for adaptive timeouts and smart retries
HISTORY_SIZE = 50


class ExecutionStatistics:
    """
    Per-probe execution counters plus a bounded result history per
    (probe, target).

    When a non-problem result follows one or more problem results for the
    same (probe, target), the elapsed time since the first of those
    failures is stored as recovery_time on the failure entries.
    """

    def __init__(self, history_size: int = HISTORY_SIZE):
        self.history_size = history_size
        self._stats: dict[str, dict[str, Any]] = {}
        self._history: dict[tuple[str, str], deque] = {}
        self._lock = threading.Lock()

    def record(self, probe_name: str, target: str | None, result: ProbeResult, duration: float) -> None:
        status = result.status.value
        with self._lock:
            stats = self._stats.setdefault(
                probe_name,
                {
                    "total_executions": 0,
                    "total_time": 0.0,
                    "avg_execution_time": 0.0,
                    "status_counts": {},
                },
            )
            stats["total_executions"] += 1
            stats["total_time"] += duration
            stats["avg_execution_time"] = stats["total_time"] / stats["total_executions"]
            stats["status_counts"][status] = stats["status_counts"].get(status, 0) + 1

            history = self._history.setdefault((probe_name, target or ""), deque(maxlen=self.history_size))
            now = time.time()
            if result.status not in PROBLEM_STATUSES:
                self._mark_recovery(history, now)
            history.append(
                {
                    "status": status,
                    "execution_time": result.execution_time,
                    "timestamp": now,
                    "recovery_time": None,
                }
            )

    @staticmethod
    def _mark_recovery(history: deque, now: float) -> None:
        failures = []
        for entry in reversed(history):
            if entry["status"] not in {s.value for s in PROBLEM_STATUSES}:
                break
            failures.append(entry)
        if not failures:
            return
        recovery = now - failures[-1]["timestamp"]
        for entry in failures:
            entry["recovery_time"] = recovery

    def history(self, probe_name: str, target: str | None = None) -> list[dict[str, Any]]:
        """History entries, oldest first, for one target or all targets of a probe."""
        with self._lock:
            if target is not None:
                return [dict(e) for e in self._history.get((probe_name, target), ())]
            return [
                dict(e)
                for (name, _), entries in self._history.items()
                if name == probe_name
                for e in entries
            ]

    def failure_history(self, probe_name: str, target: str | None = None) -> list[dict[str, Any]]:
        problems = {s.value for s in PROBLEM_STATUSES}
        return [e for e in self.history(probe_name, target) if e["status"] in problems]

    def get_statistics(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                name: {**stats, "status_counts": dict(stats["status_counts"])}
                for name, stats in self._stats.items()
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._history.clear()
