"""Core type definitions."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class ResultStatus(Enum):
    """Valid probe result states."""

    PASS = "pass"
    FAIL = "fail"
    WARNING = "warning"
    ERROR = "error"
    SKIP = "skip"
    TIMEOUT = "timeout"


# Severity used for "worst status wins" merges (higher is worse)
SEVERITY: dict[ResultStatus, int] = {
    ResultStatus.PASS: 0,
    ResultStatus.WARNING: 1,
    ResultStatus.SKIP: 1,
    ResultStatus.FAIL: 2,
    ResultStatus.TIMEOUT: 3,
    ResultStatus.ERROR: 4,
}

# Statuses that block dependents and trigger fail_fast
PROBLEM_STATUSES: frozenset[ResultStatus] = frozenset(
    {ResultStatus.FAIL, ResultStatus.ERROR, ResultStatus.TIMEOUT}
)


def coerce_status(value: "ResultStatus | str") -> ResultStatus:
    """
    Convert a status string to ResultStatus.

    Raises:
        ValueError: If value is not one of the six valid statuses
    """
    if isinstance(value, ResultStatus):
        return value
    try:
        return ResultStatus(str(value).lower())
    except ValueError:
        raise ValueError(f"Invalid probe result status: {value}") from None


class EngineError(Exception):
    """Base class for errors raised by the execution engine."""

    pass


class CyclicDependencyError(EngineError):
    """Raised when a batch's dependency graph contains a cycle."""

    def __init__(self, message: str, edge: tuple[str, str] | None = None) -> None:
        super().__init__(message)
        self.edge = edge


class UnknownInversionRuleError(EngineError, ValueError):
    """Raised when an inversion rule name is not registered."""

    def __init__(self, message: str, rule_name: str | None = None) -> None:
        super().__init__(message)
        self.rule_name = rule_name


class ResourceExhaustedError(EngineError):
    """Raised when no pool handle becomes available within the wait ceiling."""

    def __init__(self, message: str, waited: float = 0.0) -> None:
        super().__init__(message)
        self.waited = waited


class ProbeTimeoutError(EngineError):
    """Raised when a probe call exceeds its time budget."""

    def __init__(self, message: str, timeout: float = 0.0, actual_time: float = 0.0) -> None:
        super().__init__(message)
        self.timeout = timeout
        self.actual_time = actual_time


@dataclass(frozen=True)
class Job:
    """One scheduled probe execution against one target within a batch."""

    id: str
    probe_name: str
    target: str
    dependencies: frozenset[str] = field(default_factory=frozenset)
    priority: int = 100
    complexity: float = 1.0
    estimated_duration: float = 1.0
    # Per-job overrides: timeout, max_retries, retry_delay, inversion_mode, probe_config
    options: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Job.id must be non-empty")
        # Accept any iterable of ids, store as frozenset
        object.__setattr__(self, "dependencies", frozenset(self.dependencies))
        object.__setattr__(self, "options", MappingProxyType(dict(self.options or {})))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        """Build a Job from a plain dict (unknown keys go to options)."""
        known = {
            "id", "probe_name", "target", "dependencies",
            "priority", "complexity", "estimated_duration", "options",
        }
        options = dict(data.get("options") or {})
        options.update({k: v for k, v in data.items() if k not in known})
        return cls(
            id=str(data["id"]),
            probe_name=data["probe_name"],
            target=data.get("target", ""),
            dependencies=frozenset(data.get("dependencies") or ()),
            priority=int(data.get("priority", 100)),
            complexity=float(data.get("complexity", 1.0)),
            estimated_duration=float(data.get("estimated_duration", 1.0)),
            options=options,
        )
