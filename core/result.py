"""Probe result value types."""

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .types import PROBLEM_STATUSES, SEVERITY, ResultStatus, coerce_status

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _validate_score(score: int | None) -> int | None:
    if score is None:
        return None
    score = int(score)
    if score < 0 or score > 100:
        raise ValueError(f"Score must be between 0 and 100, got: {score}")
    return score


def format_bytes(num_bytes: int) -> str:
    """Format a byte count for display."""
    if num_bytes >= 1024 * 1024:
        return f"{num_bytes / (1024 * 1024):.2f}MB"
    if num_bytes >= 1024:
        return f"{num_bytes / 1024:.2f}KB"
    return f"{num_bytes}B"


@dataclass
class ProbeResult:
    """Outcome of a single probe execution."""

    probe_name: str
    status: ResultStatus
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0
    memory_usage: int = 0
    target: str | None = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    context: dict[str, Any] = field(default_factory=dict)
    score: int | None = None
    recommendations: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.status = coerce_status(self.status)
        self.score = _validate_score(self.score)

    def set_status(self, status: "ResultStatus | str") -> None:
        self.status = coerce_status(status)

    def set_score(self, score: int | None) -> None:
        self.score = _validate_score(score)

    def add_data(self, key: str, value: Any) -> None:
        self.data[key] = value

    def add_recommendation(self, recommendation: str) -> None:
        self.recommendations.append(recommendation)

    # -------------------------------------------------------------------------
    # Status predicates
    # -------------------------------------------------------------------------

    def is_passed(self) -> bool:
        return self.status == ResultStatus.PASS

    def is_failed(self) -> bool:
        return self.status == ResultStatus.FAIL

    def is_timeout(self) -> bool:
        return self.status == ResultStatus.TIMEOUT

    def is_successful(self) -> bool:
        """Pass or warning."""
        return self.status in (ResultStatus.PASS, ResultStatus.WARNING)

    def has_problems(self) -> bool:
        """Fail, error or timeout."""
        return self.status in PROBLEM_STATUSES

    @property
    def severity_level(self) -> int:
        return SEVERITY[self.status]

    # -------------------------------------------------------------------------
    # Combination
    # -------------------------------------------------------------------------

    def copy(self) -> "ProbeResult":
        """Deep copy, so mutating the clone never touches the original."""
        return copy.deepcopy(self)

    def merge_with(self, other: "ProbeResult") -> "ProbeResult":
        """
        Merge another result into this one (worst status wins).

        Data dicts are merged, times and memory summed, recommendations
        concatenated, and the lower score kept.
        """
        if other.severity_level > self.severity_level:
            self.status = other.status
            self.message = other.message

        self.data = {**self.data, **other.data}
        self.execution_time += other.execution_time
        self.memory_usage += other.memory_usage
        self.recommendations = self.recommendations + other.recommendations

        if self.score is not None and other.score is not None:
            self.score = min(self.score, other.score)
        elif other.score is not None:
            self.score = other.score

        return self

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Convert ProbeResult to dict for JSON serialization."""
        return {
            "probe_name": self.probe_name,
            "status": self.status.value,
            "message": self.message,
            "data": self.data,
            "execution_time": self.execution_time,
            "memory_usage": self.memory_usage,
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "target": self.target,
            "context": self.context,
            "score": self.score,
            "recommendations": self.recommendations,
            "severity_level": self.severity_level,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProbeResult":
        result = cls(
            probe_name=data["probe_name"],
            status=data["status"],
            message=data.get("message", ""),
            data=data.get("data") or {},
            execution_time=data.get("execution_time", 0.0),
            memory_usage=data.get("memory_usage", 0),
            target=data.get("target"),
            context=data.get("context") or {},
            score=data.get("score"),
            recommendations=list(data.get("recommendations") or []),
        )
        if data.get("timestamp"):
            result.timestamp = datetime.strptime(data["timestamp"], TIMESTAMP_FORMAT)
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    @classmethod
    def from_json(cls, raw: str) -> "ProbeResult":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON provided: {e}") from e
        return cls.from_dict(data)

    def summary(self) -> str:
        """One-line display summary."""
        text = f"{self.status.value.upper()}: {self.probe_name}"
        if self.message:
            text += f" - {self.message}"
        text += f" [{self.execution_time * 1000:.2f}ms, {format_bytes(self.memory_usage)}]"
        if self.score is not None:
            text += f" [Score: {self.score}/100]"
        return text


@dataclass
class BatchResult:
    """Results of one batch, keyed by job id."""

    name: str
    target: str
    results: dict[str, ProbeResult]
    execution_time: float
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def passed(self) -> list[ProbeResult]:
        return [r for r in self.results.values() if r.is_passed()]

    @property
    def failed(self) -> list[ProbeResult]:
        return [r for r in self.results.values() if r.is_failed()]

    @property
    def success_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.passed) / self.total * 100

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in ResultStatus}
        for result in self.results.values():
            counts[result.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "execution_time": self.execution_time,
            "timestamp": self.timestamp.strftime(TIMESTAMP_FORMAT),
            "total_tests": self.total,
            "passed_tests": len(self.passed),
            "failed_tests": len(self.failed),
            "success_rate": self.success_rate,
            "results": {job_id: r.to_dict() for job_id, r in self.results.items()},
            "context": self.context,
        }
