"""Probe registry with explicit registration.

Probes are registered by name with a factory (a Probe subclass or any
callable taking a config dict and returning a Probe). Per-probe options
can be loaded from YAML:

    probes:
      ssl_check:
        enabled: true
        timeout: ${SSL_CHECK_TIMEOUT:-15}
        max_retries: 2
      mock:
        enabled: false

Environment variable substitution: ${VAR_NAME} or ${VAR_NAME:-default}
"""

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from core.config import expand_env
from .base import Probe
from .mock_probe import MockProbe

logger = logging.getLogger(__name__)

ProbeFactory = Callable[[Dict[str, Any]], Probe]


class ProbeRegistry:
    """
    Registry of probe factories organized by category and tags.

    The registered name is the probe's identity: instances returned by
    create() carry it as their name, so one probe class can be registered
    several times under different names and configs.
    """

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        self._probes: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        if config_file is not None:
            self.configure_from_file(config_file)

    def register(
        self,
        name: str,
        factory: ProbeFactory,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Register a probe factory under name, replacing any previous entry.

        Category, tags and description default to the factory's class
        attributes when it is a Probe subclass.
        """
        if not name:
            raise ValueError("Probe name must not be empty")
        if not callable(factory):
            raise TypeError(f"Probe factory for {name} is not callable")

        entry = {
            "name": name,
            "factory": factory,
            "category": category or getattr(factory, "category", "general"),
            "tags": list(tags if tags is not None else getattr(factory, "tags", ())),
            "description": description if description is not None else getattr(factory, "description", ""),
            "config": dict(config or {}),
            "enabled": True,
        }
        with self._lock:
            if name in self._probes:
                logger.info(f"Replacing registered probe: {name}")
            self._probes[name] = entry

        logger.debug(f"Registered probe: {name} category={entry['category']} tags={entry['tags']}")

    def unregister(self, name: str) -> bool:
        with self._lock:
            removed = self._probes.pop(name, None) is not None
        if removed:
            logger.info(f"Unregistered probe: {name}")
        return removed

    def register_defaults(self) -> None:
        """Register the built-in probes."""
        self.register("mock", MockProbe)

    def has_probe(self, name: str) -> bool:
        with self._lock:
            return name in self._probes

    def create(self, name: str, config: Optional[Dict[str, Any]] = None) -> Optional[Probe]:
        """
        Instantiate a registered probe.

        Args:
            name: Registered probe name
            config: Options merged over the registered (file) options

        Returns:
            Probe instance, or None if name is not registered
        """
        with self._lock:
            entry = self._probes.get(name)
            if entry is None:
                return None
            merged = {**entry["config"], **(config or {})}
            merged.setdefault("enabled", entry["enabled"])
            factory = entry["factory"]

        probe = factory(merged)
        if not isinstance(probe, Probe):
            raise TypeError(f"Factory for {name} returned {type(probe).__name__}, expected Probe")
        probe.name = name
        return probe

    def get_info(self, name: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._probes.get(name)
            if entry is None:
                return None
            return {k: v for k, v in entry.items() if k != "factory"}

    def list_probes(
        self,
        category: Optional[str] = None,
        tag: Optional[str] = None,
        enabled_only: bool = False,
    ) -> List[str]:
        """Registered probe names, optionally filtered, in registration order."""
        with self._lock:
            entries = list(self._probes.values())
        return [
            e["name"]
            for e in entries
            if (category is None or e["category"] == category)
            and (tag is None or tag in e["tags"])
            and (not enabled_only or e["enabled"])
        ]

    def get_categories(self) -> List[str]:
        with self._lock:
            return sorted({e["category"] for e in self._probes.values()})

    def get_all_tags(self) -> List[str]:
        with self._lock:
            return sorted({tag for e in self._probes.values() for tag in e["tags"]})

    # -------------------------------------------------------------------------
    # Enable / disable
    # -------------------------------------------------------------------------

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        with self._lock:
            entry = self._probes.get(name)
            if entry is None:
                return False
            entry["enabled"] = enabled
            entry["config"]["enabled"] = enabled
        logger.info(f"Probe {name} {'enabled' if enabled else 'disabled'}")
        return True

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def is_enabled(self, name: str) -> bool:
        with self._lock:
            entry = self._probes.get(name)
            return bool(entry and entry["enabled"])

    def enable_category(self, category: str) -> int:
        return sum(self._set_enabled(name, True) for name in self.list_probes(category=category))

    def disable_category(self, category: str) -> int:
        return sum(self._set_enabled(name, False) for name in self.list_probes(category=category))

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def configure(self, name: str, **options: Any) -> bool:
        """Merge options into a registered probe's config."""
        with self._lock:
            entry = self._probes.get(name)
            if entry is None:
                return False
            entry["config"].update(options)
            if "enabled" in options:
                entry["enabled"] = bool(options["enabled"])
        return True

    def configure_from_file(self, config_file: Union[str, Path]) -> int:
        """
        Apply per-probe options from a YAML file.

        Returns:
            Number of registered probes configured
        """
        path = Path(config_file)
        if not path.exists():
            logger.warning(f"Probe config file not found: {path}")
            return 0

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        probes = raw.get("probes", {}) if isinstance(raw, dict) else None
        if not isinstance(probes, dict):
            raise ValueError(f"Invalid probe config in {path}: 'probes' must be a mapping")

        configured = 0
        for name, options in expand_env(probes).items():
            if not isinstance(options, dict):
                logger.warning(f"Invalid options for probe '{name}': expected mapping")
                continue
            if "enabled" in options and isinstance(options["enabled"], str):
                options["enabled"] = options["enabled"].strip().lower() in ("1", "true", "yes", "on")
            if not self.configure(name, **options):
                logger.warning(f"Config for unknown probe ignored: {name}")
                continue
            configured += 1

        logger.info(f"Loaded probe config from {path}: {configured} probe(s) configured")
        return configured

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._probes.values())

        categories: Dict[str, int] = {}
        for e in entries:
            categories[e["category"]] = categories.get(e["category"], 0) + 1

        enabled = sum(1 for e in entries if e["enabled"])
        return {
            "total_probes": len(entries),
            "enabled_probes": enabled,
            "disabled_probes": len(entries) - enabled,
            "categories": categories,
        }
