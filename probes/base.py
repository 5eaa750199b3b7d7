"""Probe interface abstraction for pluggable checks."""

import ipaddress
import importlib.util
import re
import sys
import time
import threading
from abc import ABC, abstractmethod
from typing import Any
from urllib.parse import urlparse

import httpx

from core.result import ProbeResult
from core.types import ResultStatus

DOMAIN_PATTERN = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)

# timeout, max_retries and retry_delay are optional per-probe overrides;
# when absent the engine's controller defaults apply
DEFAULT_PROBE_CONFIG: dict[str, Any] = {
    "enabled": True,
    "parallel_safe": True,
}


def is_cancelled(context: dict[str, Any] | None) -> bool:
    """True once the engine has abandoned the current call (timeout)."""
    event = (context or {}).get("cancel_event")
    return isinstance(event, threading.Event) and event.is_set()


class Probe(ABC):
    """
    Abstract base class for probes (SSL check, header check, etc.).

    Subclasses set the class attributes and implement run(). The engine
    calls execute(), which validates the target, times the call and fills
    in execution metadata. Exceptions raised by run() propagate so that
    retry and timeout wrappers can classify them.

    Context keys supplied by the engine:
        resource: leased ResourceHandle (its .client is an httpx.Client)
        cancel_event: threading.Event set when the call has been abandoned
        job_id, attempt: identifiers for logging
    """

    name: str = ""
    description: str = ""
    category: str = "general"
    tags: tuple[str, ...] = ("general",)
    # Requirements checked by should_skip: "module:<name>" or "python:<major>.<minor>"
    requires: tuple[str, ...] = ()

    def __init__(self, config: dict[str, Any] | None = None):
        self.config = {**DEFAULT_PROBE_CONFIG, **self.default_config(), **(config or {})}

    def default_config(self) -> dict[str, Any]:
        """Probe-specific defaults, merged over DEFAULT_PROBE_CONFIG."""
        return {}

    @property
    def timeout(self) -> float | None:
        value = self.config.get("timeout")
        return None if value is None else float(value)

    @property
    def max_retries(self) -> int | None:
        value = self.config.get("max_retries")
        return None if value is None else int(value)

    @property
    def enabled(self) -> bool:
        return bool(self.config["enabled"])

    @abstractmethod
    def run(self, target: str, context: dict[str, Any]) -> ProbeResult:
        """Perform the check and return its result."""
        pass

    def set_up(self) -> None:
        pass

    def tear_down(self) -> None:
        pass

    def execute(self, target: str, context: dict[str, Any] | None = None) -> ProbeResult:
        """
        Validate the target, run the probe and attach timing metadata.

        Invalid targets yield an error result without calling run().
        """
        context = context if context is not None else {}
        start = time.perf_counter()

        if not self.validate_target(target):
            result = self.error_result(f"Invalid target: {target}")
            result.target = target
            result.execution_time = time.perf_counter() - start
            return result

        self.set_up()
        try:
            result = self.run(target, context)
        finally:
            self.tear_down()

        if not isinstance(result, ProbeResult):
            raise TypeError(f"Probe {self.name} returned {type(result).__name__}, expected ProbeResult")

        result.execution_time = time.perf_counter() - start
        if result.target is None:
            result.target = target
        return result

    # -------------------------------------------------------------------------
    # Eligibility
    # -------------------------------------------------------------------------

    @staticmethod
    def validate_target(target: str) -> bool:
        """Accept URLs with scheme and host, IP addresses and domain names."""
        if not target:
            return False

        parsed = urlparse(target)
        if parsed.scheme and parsed.netloc:
            return True

        try:
            ipaddress.ip_address(target)
            return True
        except ValueError:
            pass

        return bool(DOMAIN_PATTERN.match(target))

    def should_skip(self, target: str, context: dict[str, Any] | None = None) -> bool:
        """Skip when disabled, the target is invalid, or a requirement is unmet."""
        if not self.enabled:
            return True
        if not self.validate_target(target):
            return True
        return not all(self._check_requirement(r) for r in self.requires)

    @staticmethod
    def _check_requirement(requirement: str) -> bool:
        kind, _, value = requirement.partition(":")
        if kind == "module":
            return importlib.util.find_spec(value) is not None
        if kind == "python":
            wanted = tuple(int(part) for part in value.split("."))
            return sys.version_info[: len(wanted)] >= wanted
        return True

    # -------------------------------------------------------------------------
    # HTTP helper
    # -------------------------------------------------------------------------

    def fetch(self, url: str, context: dict[str, Any], method: str = "GET", **kwargs) -> httpx.Response:
        """
        Issue an HTTP request through the leased pool handle.

        Falls back to a short-lived client when the probe runs outside the
        engine (no resource in context).
        """
        handle = context.get("resource")
        if handle is not None:
            return handle.client.request(method, url, **kwargs)

        with httpx.Client(timeout=self.timeout or 30.0, follow_redirects=True) as client:
            return client.request(method, url, **kwargs)

    # -------------------------------------------------------------------------
    # Result helpers
    # -------------------------------------------------------------------------

    def _result(self, status: ResultStatus, message: str, data: dict[str, Any] | None) -> ProbeResult:
        return ProbeResult(probe_name=self.name, status=status, message=message, data=dict(data or {}))

    def success_result(self, message: str = "", data: dict[str, Any] | None = None) -> ProbeResult:
        return self._result(ResultStatus.PASS, message or "Probe passed successfully", data)

    def failure_result(self, message: str = "", data: dict[str, Any] | None = None) -> ProbeResult:
        return self._result(ResultStatus.FAIL, message or "Probe failed", data)

    def warning_result(self, message: str = "", data: dict[str, Any] | None = None) -> ProbeResult:
        return self._result(ResultStatus.WARNING, message or "Probe completed with warnings", data)

    def error_result(self, message: str = "", data: dict[str, Any] | None = None) -> ProbeResult:
        return self._result(ResultStatus.ERROR, message or "Probe encountered an error", data)

    def skipped_result(self, message: str = "", data: dict[str, Any] | None = None) -> ProbeResult:
        return self._result(ResultStatus.SKIP, message or "Probe was skipped", data)

    def info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "tags": list(self.tags),
            "config": dict(self.config),
        }
