"""
Root pytest configuration for the probe engine test suite.

This conftest.py provides:
- Marker registration (unit, integration, slow)
- Directory-based marker application
- Shared fixtures for probes, registries, configs and engines

Test Layout:
    tests/unit/         [<1s each]   Single modules, mocked collaborators
    tests/integration/  [~seconds]   Full batches through ExecutionEngine
"""

from unittest.mock import MagicMock

import pytest

from core.config import EngineConfig
from core.result import ProbeResult
from core.types import ResultStatus
from engine.execution_engine import ExecutionEngine
from probes.base import Probe
from probes.mock_probe import MockProbe
from probes.registry import ProbeRegistry


def pytest_configure(config):
    """Register all custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests - single module, no threads beyond the module's own")
    config.addinivalue_line("markers", "integration: Integration tests - full batches through the engine")
    config.addinivalue_line("markers", "slow: Test takes more than a few seconds to complete")


def pytest_collection_modifyitems(config, items):
    """
    Auto-apply markers based on test location.

    Tests under tests/unit get the unit marker, tests under
    tests/integration get the integration marker.
    """
    for item in items:
        test_path = str(item.fspath)
        if "/tests/unit/" in test_path or "\\tests\\unit\\" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/tests/integration/" in test_path or "\\tests\\integration\\" in test_path:
            item.add_marker(pytest.mark.integration)


# =============================================================================
# Fast configuration
# =============================================================================

FAST_CONFIG = {
    "timeouts": {"default_timeout": 5.0, "min_timeout": 0.01},
    "retries": {"default_retry_delay": 0.0, "jitter": False},
    "pool": {"acquire_timeout": 1.0, "poll_interval": 0.01},
}


def build_fast_config(**overrides) -> EngineConfig:
    """EngineConfig with zero retry delay and sub-second timeout bounds."""
    data = {key: dict(value) for key, value in FAST_CONFIG.items()}
    for key, value in overrides.items():
        if isinstance(value, dict) and key in data:
            data[key].update(value)
        else:
            data[key] = value
    return EngineConfig.from_dict(data)


def build_result(name: str = "probe", status: ResultStatus | str = ResultStatus.PASS, **kwargs) -> ProbeResult:
    return ProbeResult(probe_name=name, status=status, **kwargs)


@pytest.fixture
def fast_config():
    """Builder for fast EngineConfigs: fast_config(parallel_execution=True, ...)."""
    return build_fast_config


@pytest.fixture
def make_result():
    """Builder for ProbeResults: make_result("ssl_check", "fail", score=40)."""
    return build_result


@pytest.fixture
def registry():
    """Registry with the default (mock) probe registered."""
    registry = ProbeRegistry()
    registry.register_defaults()
    return registry


@pytest.fixture
def shared_probe(registry):
    """
    Register a shared MockProbe instance and return a helper.

    Usage:
        probe = shared_probe("ssl_check", statuses=["fail"])
    """
    def _register(name: str, **config) -> MockProbe:
        probe = MockProbe(config, name=name)
        registry.register(name, lambda _config: probe, category=probe.category, tags=list(probe.tags))
        return probe

    return _register


@pytest.fixture
def engine_factory(registry):
    """Build engines on the shared registry and close them after the test."""
    engines = []

    def _make(config: EngineConfig | None = None, **kwargs) -> ExecutionEngine:
        engine = ExecutionEngine(registry, config or build_fast_config(), **kwargs)
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.close()


@pytest.fixture
def mock_probe():
    """MagicMock standing in for a Probe (name, config, execute)."""
    probe = MagicMock(spec=Probe)
    probe.name = "mock_probe"
    probe.config = {}
    return probe
