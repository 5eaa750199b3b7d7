"""Periodic resource pool maintenance.

Marks handles past max_age unhealthy and destroys unhealthy or idle-expired
available handles every health_check_interval seconds.
"""

import logging
import threading
import time
from typing import Optional

from .resource_pool import ResourcePool

logger = logging.getLogger(__name__)


class PoolHousekeeper:
    """
    Runs health_check() + cleanup() on a ResourcePool.

    Use run_once() for a synchronous pass, or start()/stop() to run
    passes on a daemon thread.
    """

    def __init__(self, pool: ResourcePool, interval: Optional[float] = None):
        """
        Initialize PoolHousekeeper.

        Args:
            pool: Pool to maintain
            interval: Seconds between passes (default: pool health_check_interval)
        """
        self.pool = pool
        self.interval = interval if interval is not None else pool.config.health_check_interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def run_once(self) -> dict:
        """
        Run one maintenance pass.

        Returns:
            Dict with:
                - healthy_resources / unhealthy_resources: after the health check
                - destroyed: Number of handles destroyed by cleanup
                - duration: Pass duration in seconds
        """
        start = time.perf_counter()
        health = self.pool.health_check()
        destroyed = self.pool.cleanup()
        self.runs += 1

        stats = {
            "healthy_resources": health["healthy_resources"],
            "unhealthy_resources": health["unhealthy_resources"],
            "destroyed": destroyed,
            "duration": time.perf_counter() - start,
        }
        if destroyed:
            logger.info(
                f"Pool housekeeping destroyed {destroyed} handle(s) "
                f"(unhealthy={health['unhealthy_resources']})"
            )
        return stats

    def _loop(self) -> None:
        logger.info(f"Pool housekeeper started (interval={self.interval}s)")
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Pool housekeeping failed: {e}", exc_info=True)
        logger.info("Pool housekeeper stopped")

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="pool-housekeeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
