# coordinator.py
"""Cache and service coordination for running jobs."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Union

from .cache import CacheBackend
from .errors import CacheError, ServiceError
from .services import ServiceBackend, ServiceHandle

logger = logging.getLogger(__name__)


class CacheMiss:
    """Returned by Coordinator.restore when a key has no blob."""

    _instance: Optional["CacheMiss"] = None

    def __new__(cls) -> "CacheMiss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "CACHE_MISS"


CACHE_MISS = CacheMiss()


class Coordinator:
    """
    Shared by all jobs of a run.

    Cache access is best effort: backend failures are logged and reported as
    misses (restore) or as a negative ack (store), never raised into a job.
    """

    def __init__(self, cache: Optional[CacheBackend] = None, services: Optional[ServiceBackend] = None):
        self.cache = cache
        self.services = services

    # ---- cache ----

    def restore(self, key: str) -> Union[bytes, CacheMiss]:
        if self.cache is None:
            return CACHE_MISS
        try:
            data = self.cache.fetch(key)
        except CacheError as e:
            logger.warning("cache restore degraded to miss: %s", e)
            return CACHE_MISS
        return CACHE_MISS if data is None else data

    def store(self, key: str, data: bytes) -> bool:
        if self.cache is None:
            return False
        try:
            self.cache.put(key, data)
        except CacheError as e:
            logger.warning("cache store failed: %s", e)
            return False
        return True

    # ---- services ----

    def start_service(
        self, name: str, params: Sequence[str] = (), timeout: Optional[float] = None
    ) -> ServiceHandle:
        if self.services is None:
            raise ServiceError(f"cannot start {name}: no service backend configured")
        return self.services.start(name, params, timeout=timeout)

    def stop_service(self, handle: ServiceHandle) -> None:
        if self.services is None:
            return
        self.services.stop(handle)

    @contextmanager
    def service_scope(self) -> Iterator["ServiceScope"]:
        scope = ServiceScope(self)
        try:
            yield scope
        finally:
            scope.close()


class ServiceScope:
    """
    Services started by one job; all stopped when the job's agent goes away.
    A start that completes after the scope closed (the job timed out or was
    cancelled while it waited) is stopped straight away.
    """

    def __init__(self, coordinator: Coordinator):
        self._coordinator = coordinator
        self._lock = threading.Lock()
        self._closed = False
        self.handles: List[ServiceHandle] = []

    def start(self, name: str, params: Sequence[str] = (), timeout: Optional[float] = None) -> ServiceHandle:
        handle = self._coordinator.start_service(name, params, timeout=timeout)
        with self._lock:
            late = self._closed
            if not late:
                self.handles.append(handle)
        if late:
            logger.warning("service %s came up after its job finished, stopping it", handle.service_id)
            self._coordinator.stop_service(handle)
            raise ServiceError(f"service {name} started after its job finished")
        return handle

    def close(self) -> None:
        with self._lock:
            self._closed = True
            handles, self.handles = self.handles, []
        for handle in reversed(handles):
            try:
                self._coordinator.stop_service(handle)
            except Exception:
                # keep stopping the rest
                logger.exception("failed to stop service %s", handle.service_id)
