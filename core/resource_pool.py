"""Bounded pool of reusable outbound HTTP connection handles.

Each ResourceHandle lazily owns an httpx.Client configured from the pool
settings. A handle lives in exactly one of two maps: available (idle,
owned by the pool) or in_use (leased to a caller). All mutation happens
under a single threading.Condition; waiters poll it every poll_interval
until acquire_timeout elapses.
"""

import itertools
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import httpx

from .config import PoolConfig
from .logging_config import get_logger
from .metrics import update_pool_metrics
from .types import EngineError, ResourceExhaustedError

logger = get_logger(__name__)


@dataclass
class ResourceHandle:
    """A reusable outbound connection leased from the pool."""

    id: int
    conn_config: dict[str, Any]
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    usage_count: int = 0
    healthy: bool = True
    _client: httpx.Client | None = field(default=None, init=False, repr=False)

    @property
    def client(self) -> httpx.Client:
        """HTTP client for this handle, created on first use."""
        if self._client is None:
            self._client = httpx.Client(
                verify=self.conn_config.get("verify", True),
                timeout=self.conn_config.get("timeout", 30.0),
                follow_redirects=self.conn_config.get("follow_redirects", True),
                max_redirects=self.conn_config.get("max_redirects", 5),
                headers={"User-Agent": self.conn_config.get("user_agent", "ProbeEngine/1.0")},
            )
        return self._client

    def age(self, now: float | None = None) -> float:
        return (now or time.time()) - self.created_at

    def idle_time(self, now: float | None = None) -> float:
        return (now or time.time()) - self.last_used

    def close(self) -> None:
        """Close the underlying HTTP client if one was created."""
        if self._client is not None:
            self._client.close()
            self._client = None


class ResourcePool:
    """
    Bounded, thread-safe pool of ResourceHandles.

    Usage:
        pool = ResourcePool(PoolConfig(max_connections=5))

        with pool.lease() as handle:
            response = handle.client.get("https://example.com")

    Invariants:
        - len(available) + len(in_use) == total_resources
        - len(in_use) <= max_connections
    """

    def __init__(self, config: PoolConfig | None = None):
        self.config = config or PoolConfig()
        self._available: dict[int, ResourceHandle] = {}
        self._in_use: dict[int, ResourceHandle] = {}
        self._ids = itertools.count(1)
        self._cond = threading.Condition()
        self._closed = False
        self._created_total = 0
        self._destroyed_total = 0
        self._wait_count = 0
        self._exhausted_count = 0

        logger.info(
            "resource_pool_initialized",
            pool_size=self.config.pool_size,
            max_connections=self.config.max_connections,
        )

    # -------------------------------------------------------------------------
    # Handle lifecycle (callers hold self._cond)
    # -------------------------------------------------------------------------

    def _conn_config(self) -> dict[str, Any]:
        return {
            "timeout": self.config.connection_timeout,
            "follow_redirects": self.config.follow_redirects,
            "max_redirects": self.config.max_redirects,
            "verify": self.config.verify_ssl,
            "user_agent": self.config.user_agent,
        }

    def _create(self) -> ResourceHandle:
        handle = ResourceHandle(id=next(self._ids), conn_config=self._conn_config())
        self._created_total += 1
        return handle

    def _destroy(self, handle: ResourceHandle) -> None:
        handle.close()
        self._destroyed_total += 1
        logger.debug("resource_destroyed", resource_id=handle.id, usage_count=handle.usage_count)

    def _is_expired(self, handle: ResourceHandle, now: float | None = None) -> bool:
        return handle.idle_time(now) > self.config.idle_timeout

    def _is_usable(self, handle: ResourceHandle, now: float | None = None) -> bool:
        return handle.healthy and not self._is_expired(handle, now)

    def _publish(self) -> None:
        update_pool_metrics(len(self._available), len(self._in_use), self.config.max_connections)

    def _try_acquire(self) -> ResourceHandle | None:
        if len(self._in_use) >= self.config.max_connections:
            return None

        now = time.time()
        for handle_id, handle in self._available.items():
            if self._is_usable(handle, now):
                del self._available[handle_id]
                handle.last_used = now
                handle.usage_count += 1
                self._in_use[handle_id] = handle
                logger.debug("resource_acquired", resource_id=handle_id, usage_count=handle.usage_count)
                return handle

        handle = self._create()
        handle.usage_count = 1
        self._in_use[handle.id] = handle
        logger.info("resource_created", resource_id=handle.id, total_in_use=len(self._in_use))
        return handle

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def acquire(self, timeout: float | None = None) -> ResourceHandle:
        """
        Lease a handle, waiting up to the acquire timeout for capacity.

        Raises:
            ResourceExhaustedError: If no handle becomes available in time
            EngineError: If the pool has been closed
        """
        wait_ceiling = self.config.acquire_timeout if timeout is None else timeout
        start = time.monotonic()
        deadline = start + wait_ceiling
        waited = False

        with self._cond:
            while True:
                if self._closed:
                    raise EngineError("Resource pool is closed")

                handle = self._try_acquire()
                if handle is not None:
                    self._publish()
                    return handle

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._exhausted_count += 1
                    elapsed = time.monotonic() - start
                    logger.warning(
                        "resource_pool_exhausted",
                        waited=round(elapsed, 3),
                        in_use=len(self._in_use),
                        max_connections=self.config.max_connections,
                    )
                    raise ResourceExhaustedError(
                        f"Timeout waiting for available resource after {elapsed:.2f}s",
                        waited=elapsed,
                    )

                if not waited:
                    self._wait_count += 1
                    waited = True
                self._cond.wait(min(self.config.poll_interval, remaining))

    def release(self, handle: ResourceHandle) -> None:
        """
        Return a leased handle to the pool.

        Releasing a handle that is not currently leased (unknown or already
        released) logs a warning and does nothing.
        """
        with self._cond:
            if self._in_use.get(handle.id) is not handle:
                logger.warning("release_of_untracked_resource", resource_id=handle.id)
                return

            del self._in_use[handle.id]
            handle.last_used = time.time()

            if (
                not self._closed
                and self._is_usable(handle)
                and len(self._available) < self.config.pool_size
            ):
                self._available[handle.id] = handle
                returned = True
            else:
                self._destroy(handle)
                returned = False

            logger.debug("resource_released", resource_id=handle.id, returned_to_pool=returned)
            self._publish()
            self._cond.notify_all()

    @contextmanager
    def lease(self, timeout: float | None = None) -> Iterator[ResourceHandle]:
        """Acquire a handle for the duration of a with-block."""
        handle = self.acquire(timeout=timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def health_check(self) -> dict[str, int]:
        """Mark handles older than max_age unhealthy and report counts."""
        with self._cond:
            now = time.time()
            healthy = 0
            unhealthy = 0
            for handle in itertools.chain(self._available.values(), self._in_use.values()):
                if handle.healthy and handle.age(now) >= self.config.max_age:
                    handle.healthy = False
                if handle.healthy:
                    healthy += 1
                else:
                    unhealthy += 1

            results = {
                "healthy_resources": healthy,
                "unhealthy_resources": unhealthy,
                "total_resources": healthy + unhealthy,
                "pool_size": len(self._available),
                "in_use": len(self._in_use),
            }

        logger.info("health_check_completed", **results)
        return results

    def cleanup(self) -> int:
        """Destroy unhealthy or idle-expired available handles."""
        with self._cond:
            now = time.time()
            stale = [h for h in self._available.values() if not self._is_usable(h, now)]
            for handle in stale:
                del self._available[handle.id]
                self._destroy(handle)
            self._publish()

        logger.info("pool_cleanup_completed", resources_cleaned=len(stale), pool_size=len(self._available))
        return len(stale)

    def resize(self, new_size: int) -> None:
        """
        Grow or shrink the idle set to new_size.

        Growth creates idle handles; shrinking destroys idle handles only,
        never handles currently in use.
        """
        if new_size < 0:
            raise ValueError("Pool size must be >= 0")

        with self._cond:
            old_size = len(self._available)
            if new_size > old_size:
                for _ in range(new_size - old_size):
                    handle = self._create()
                    self._available[handle.id] = handle
            elif new_size < old_size:
                for handle_id in list(self._available)[: old_size - new_size]:
                    self._destroy(self._available.pop(handle_id))

            self.config.pool_size = new_size
            self._publish()
            self._cond.notify_all()

        logger.info(
            "pool_resized",
            new_size=new_size,
            old_size=old_size,
            current_pool_size=len(self._available),
        )

    def get_resource(self, resource_id: int) -> ResourceHandle | None:
        with self._cond:
            return self._available.get(resource_id) or self._in_use.get(resource_id)

    def force_release_all(self) -> int:
        """Reclaim every leased handle (e.g. after abandoned probe threads)."""
        with self._cond:
            released = len(self._in_use)
            for handle in list(self._in_use.values()):
                del self._in_use[handle.id]
                if self._is_usable(handle) and len(self._available) < self.config.pool_size:
                    self._available[handle.id] = handle
                else:
                    self._destroy(handle)
            self._publish()
            self._cond.notify_all()

        logger.warning("force_released_all_resources", released_count=released)
        return released

    def get_stats(self) -> dict[str, Any]:
        """Pool statistics snapshot."""
        with self._cond:
            now = time.time()
            handles = list(self._available.values()) + list(self._in_use.values())
            total = len(handles)
            in_use = len(self._in_use)

            return {
                "pool_size": len(self._available),
                "in_use": in_use,
                "total_resources": total,
                "max_connections": self.config.max_connections,
                "utilization_rate": round(in_use / total * 100, 1) if total else 0.0,
                "average_usage": round(sum(h.usage_count for h in handles) / total, 2) if total else 0.0,
                "oldest_resource_age": max((h.age(now) for h in handles), default=0.0),
                "newest_resource_age": min((h.age(now) for h in handles), default=0.0),
                "created_total": self._created_total,
                "destroyed_total": self._destroyed_total,
                "wait_count": self._wait_count,
                "exhausted_count": self._exhausted_count,
                "closed": self._closed,
            }

    def close(self) -> None:
        """Destroy idle handles and refuse further acquires.

        Leased handles are destroyed when their borrowers release them.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            for handle in list(self._available.values()):
                self._destroy(handle)
            self._available.clear()
            self._publish()
            self._cond.notify_all()

        logger.info("resource_pool_closed", in_use=len(self._in_use))
