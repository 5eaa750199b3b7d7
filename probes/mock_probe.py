"""Scripted probe for testing and development."""

import threading
from typing import Any

from core.result import ProbeResult
from core.types import ResultStatus, coerce_status
from .base import Probe


class MockProbe(Probe):
    """
    Probe whose outcome is scripted through its config.

    Config keys:
        statuses: Status per call; the last entry repeats (default ["pass"])
        raises: Exception (or None) per call, checked before statuses
        delay: Seconds to block per call; returns early when cancelled
        score: Score attached to every result
        memory_usage: Bytes reported on every result
        data: Extra data merged into every result
    """

    name = "mock"
    description = "Scripted probe returning configured outcomes"
    category = "general"
    tags = ("mock", "testing")

    def __init__(self, config: dict[str, Any] | None = None, name: str | None = None):
        super().__init__(config)
        if name:
            self.name = name
        self._lock = threading.Lock()
        self._calls = 0
        self.targets: list[str] = []

    def default_config(self) -> dict[str, Any]:
        return {
            "statuses": ["pass"],
            "raises": [],
            "delay": 0.0,
            "score": None,
            "memory_usage": 0,
            "data": {},
        }

    @property
    def call_count(self) -> int:
        with self._lock:
            return self._calls

    @staticmethod
    def _pick(script: list, index: int):
        if not script:
            return None
        return script[min(index, len(script) - 1)]

    def run(self, target: str, context: dict[str, Any]) -> ProbeResult:
        with self._lock:
            index = self._calls
            self._calls += 1
            self.targets.append(target)

        delay = float(self.config["delay"] or 0)
        if delay > 0:
            cancel_event = context.get("cancel_event")
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    return self.error_result("Cancelled")
            else:
                threading.Event().wait(delay)

        raises = self.config["raises"] or []
        if index < len(raises) and raises[index] is not None:
            raise raises[index]

        status = coerce_status(self._pick(self.config["statuses"], index) or ResultStatus.PASS)
        result = self._result(
            status,
            f"Mock probe returned {status.value} (call {index + 1})",
            {"call": index + 1, **self.config["data"]},
        )
        result.set_score(self.config["score"])
        result.memory_usage = int(self.config["memory_usage"] or 0)
        return result
