"""Engine configuration loaded from dicts or YAML files.

Config format (all keys optional):

    parallel_execution: false
    max_parallel_tests: 5
    enable_timeouts: true
    enable_retries: true
    enable_result_inversion: true
    fail_fast: false
    execution_timeout: 300
    adaptive_timeouts: false
    smart_retries: false
    timeouts:
      default_timeout: ${PROBE_TIMEOUT:-30}
      strategy: thread
    retries:
      default_max_retries: 3
    pool:
      max_connections: 10
    scheduler:
      load_balancing: true
    aggregator:
      category_weights:
        security: 0.4

Environment variable substitution: ${VAR_NAME} or ${VAR_NAME:-default}
"""

import os
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .types import ResultStatus, coerce_status

logger = logging.getLogger(__name__)


def expand_env(value: Any) -> Any:
    """
    Expand ${VAR} or ${VAR:-default} environment variables.

    Dicts and lists are expanded recursively; other non-string values
    are returned unchanged.

    Examples:
        ${PROBE_TIMEOUT} -> os.getenv("PROBE_TIMEOUT", "")
        ${PROBE_TIMEOUT:-30} -> os.getenv("PROBE_TIMEOUT", "30")
    """
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if not value or not isinstance(value, str):
        return value

    if value.startswith("${") and value.endswith("}"):
        inner = value[2:-1]
        if ":-" in inner:
            var_name, default = inner.split(":-", 1)
            return os.getenv(var_name, default)
        return os.getenv(inner, "")

    return value


def _coerce(value: Any, default: Any) -> Any:
    """Coerce a (possibly env-expanded string) value to the default's type."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    if isinstance(default, dict) and isinstance(value, dict):
        return {**default, **value}
    return value


def _build(cls, data: dict[str, Any] | None, section: str):
    """Instantiate a config dataclass from a dict, warning on unknown keys."""
    instance = cls()
    if not data:
        return instance
    if not isinstance(data, dict):
        logger.warning(f"Invalid config section '{section}': expected mapping, using defaults")
        return instance

    known = {f.name: f for f in fields(cls) if f.init}
    for key, value in expand_env(data).items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {section}.{key}")
            continue
        current = getattr(instance, key)
        try:
            setattr(instance, key, _coerce(value, current))
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid value for {section}.{key}: {value!r} ({e}), keeping default")
    return instance


@dataclass
class TimeoutConfig:
    """Timeout controller settings (seconds)."""

    default_timeout: float = 30.0
    min_timeout: float = 1.0
    max_timeout: float = 300.0
    strategy: str = "thread"  # thread | polling

    def __post_init__(self):
        if self.strategy not in ("thread", "polling"):
            raise ValueError(f"Unknown timeout strategy: {self.strategy}")


@dataclass
class RetryConfig:
    """Retry controller settings."""

    default_max_retries: int = 3
    default_retry_delay: float = 1.0
    exponential_backoff: bool = True
    backoff_multiplier: float = 2.0
    max_retry_delay: float = 60.0
    jitter: bool = True
    jitter_max: float = 0.1
    retryable_statuses: set[ResultStatus] = field(
        default_factory=lambda: {ResultStatus.ERROR, ResultStatus.TIMEOUT}
    )
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        self.retryable_statuses = {coerce_status(s) for s in self.retryable_statuses}


@dataclass
class PoolConfig:
    """Resource pool settings."""

    pool_size: int = 20
    max_connections: int = 10
    connection_timeout: float = 30.0
    idle_timeout: float = 300.0
    max_age: float = 3600.0
    acquire_timeout: float = 30.0
    poll_interval: float = 0.1
    health_check_interval: float = 60.0
    user_agent: str = "ProbeEngine/1.0"
    verify_ssl: bool = True
    follow_redirects: bool = True
    max_redirects: int = 5


@dataclass
class SchedulerConfig:
    """Scheduling strategy toggles."""

    dependency_resolution: bool = True
    priority_scheduling: bool = True
    load_balancing: bool = True
    adaptive_batching: bool = True


@dataclass
class AggregatorConfig:
    """Aggregation weights and recommendation thresholds."""

    category_weights: dict[str, float] = field(
        default_factory=lambda: {"security": 0.4, "performance": 0.3, "availability": 0.3}
    )
    default_weight: float = 0.1
    success_rate_threshold: float = 80.0
    slow_execution_threshold: float = 10.0


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    parallel_execution: bool = False
    max_parallel_tests: int = 5
    enable_timeouts: bool = True
    enable_retries: bool = True
    enable_result_inversion: bool = True
    fail_fast: bool = False
    execution_timeout: float = 300.0
    adaptive_timeouts: bool = False
    smart_retries: bool = False
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)

    _SECTIONS = {
        "timeouts": TimeoutConfig,
        "retries": RetryConfig,
        "pool": PoolConfig,
        "scheduler": SchedulerConfig,
        "aggregator": AggregatorConfig,
    }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EngineConfig":
        """Build an EngineConfig from a plain (possibly nested) dict."""
        data = dict(data or {})
        sections = {name: data.pop(name, None) for name in cls._SECTIONS}
        config = _build(cls, data, "engine")
        for name, section_cls in cls._SECTIONS.items():
            setattr(config, name, _build(section_cls, sections[name], name))

        # Re-run validation on sections whose fields were set after construction
        config.timeouts.__post_init__()
        config.retries.__post_init__()
        if config.max_parallel_tests < 1:
            raise ValueError("max_parallel_tests must be >= 1")
        return config


def load_config(path: str | Path) -> EngineConfig:
    """
    Load engine configuration from a YAML file.

    A missing or empty file yields the defaults.
    """
    config_file = Path(path)
    if not config_file.exists():
        logger.warning(f"Engine config not found: {config_file}, using defaults")
        return EngineConfig()

    with open(config_file) as f:
        data = yaml.safe_load(f)

    if not data:
        logger.warning(f"Empty engine config: {config_file}, using defaults")
        return EngineConfig()

    if not isinstance(data, dict):
        raise ValueError(f"Engine config must be a mapping: {config_file}")

    logger.info(f"Loaded engine config from {config_file}")
    return EngineConfig.from_dict(data)
