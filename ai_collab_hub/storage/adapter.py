"""
Storage Adapter for AI Collaboration Hub

Composes one durable primary backend with optional auxiliary backends
(caches, graph mirror, semantic index) and degrades gracefully when an
auxiliary backend fails.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from ..core.errors import BackendUnavailable, NotFound
from .backends import CacheBackend, StorageBackend

logger = logging.getLogger(__name__)

CACHE_COLLECTION = "cache"
_RESYNC = ("*", "*")


class _AuxiliaryState:
    """Health and work queue of one auxiliary backend."""

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self.healthy = True
        self.last_error: Optional[str] = None
        self.failed_at: Optional[datetime] = None
        self.recovered_at: Optional[datetime] = None
        self.failures = 0
        # One worker keeps this backend's writes in submission order.
        self.executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"aux-{backend.name}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = self.backend.describe()
        data.update({
            "healthy": self.healthy,
            "failures": self.failures,
            "last_error": self.last_error,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
            "recovered_at": self.recovered_at.isoformat() if self.recovered_at else None,
        })
        return data


class StorageAdapter:
    """
    Uniform storage interface over heterogeneous backends.

    Features:
    - Synchronous writes to the durable primary
    - Best-effort background writes to auxiliary backends
    - Reads from the fastest healthy backend, ending at the primary
    - Cache-aside helpers with TTL and tag invalidation
    - Background health probes that bring failed backends back
    """

    def __init__(self, primary: StorageBackend,
                 auxiliaries: Sequence[StorageBackend] = (),
                 health_check_interval: int = 15,
                 cache_ttl: int = 300):
        """
        Initialize the adapter.

        Args:
            primary: Durable system-of-record backend
            auxiliaries: Auxiliary backends in read priority order
            health_check_interval: Seconds between health probes
            cache_ttl: Default TTL for cache back-fills (seconds)
        """
        if not primary.durable:
            raise ValueError(f"Primary backend {primary.name} must be durable")

        self.primary = primary
        self.health_check_interval = health_check_interval
        self.cache_ttl = cache_ttl

        self._aux: List[_AuxiliaryState] = [_AuxiliaryState(b) for b in auxiliaries]
        self._lock = threading.RLock()
        self._pending: Dict[Tuple[str, str], int] = {}
        self._versions: Dict[Tuple[str, str], int] = {}
        self._cache_generation = 0
        self._pending_invalidations = 0

        self._running = False
        self._stop_event = threading.Event()
        self._health_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the background health probe."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop_event.clear()
            self._health_thread = threading.Thread(
                target=self._health_loop, daemon=True, name="storage-health"
            )
            self._health_thread.start()
            logger.info("Storage health monitor started")

    def stop(self):
        """Stop probes, drain auxiliary work and close backends."""
        with self._lock:
            if self._running:
                self._running = False
                self._stop_event.set()
        if self._health_thread:
            self._health_thread.join(timeout=5)
            self._health_thread = None

        for state in self._aux:
            state.executor.shutdown(wait=True)
            try:
                state.backend.close()
            except Exception as e:
                logger.warning(f"Error closing backend {state.backend.name}: {e}")
        self.primary.close()

    def _health_loop(self):
        logger.info("Storage health loop started")
        while not self._stop_event.wait(self.health_check_interval):
            try:
                self.probe_backends()
            except Exception as e:
                logger.error(f"Error in storage health loop: {e}")
        logger.info("Storage health loop stopped")

    def probe_backends(self) -> Dict[str, bool]:
        """Ping every auxiliary backend once; recover the ones that answer."""
        results = {}
        for state in self._aux:
            try:
                alive = bool(state.backend.ping())
            except Exception as e:
                alive = False
                error = str(e)
            else:
                error = "ping returned false"

            if alive and not state.healthy:
                self._recover(state)
            elif not alive and state.healthy:
                self._mark_failed(state, error)
            results[state.backend.name] = state.healthy
        return results

    def _recover(self, state: _AuxiliaryState):
        """Bring a backend back after it missed writes while offline."""
        backend = state.backend
        if isinstance(backend, CacheBackend):
            try:
                backend.clear()
            except Exception as e:
                logger.warning(f"Cache {backend.name} answered but could not be cleared: {e}")
                state.last_error = str(e)
                return
            state.healthy = True
        else:
            # Queue the resync ahead of any write submitted from now on.
            with self._lock:
                state.healthy = True
                self._pending[_RESYNC] = self._pending.get(_RESYNC, 0) + 1
            state.executor.submit(self._resync, state)

        state.recovered_at = datetime.now()
        logger.info(f"Auxiliary backend {backend.name} is healthy again")

    def _resync(self, state: _AuxiliaryState):
        backend = state.backend
        try:
            collections = backend.mirrors or self.primary.collections()
            backend.clear()
            count = 0
            for collection in collections:
                for key, value in self.primary.items(collection):
                    backend.put(collection, key, value)
                    count += 1
            logger.info(f"Resynchronised {count} records into {backend.name}")
        except Exception as e:
            self._mark_failed(state, e)
        finally:
            with self._lock:
                remaining = self._pending.get(_RESYNC, 1) - 1
                if remaining > 0:
                    self._pending[_RESYNC] = remaining
                else:
                    self._pending.pop(_RESYNC, None)

    def _mark_failed(self, state: _AuxiliaryState, error: Any):
        if state.healthy:
            logger.warning(f"Auxiliary backend {state.backend.name} marked unhealthy: {error}")
        state.healthy = False
        state.failures += 1
        state.last_error = str(error)
        state.failed_at = datetime.now()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        """Write to the primary, then fan out to auxiliaries in the background."""
        try:
            self.primary.put(collection, key, value)
        except Exception as e:
            logger.error(f"Primary write failed for {collection}/{key}: {e}")
            raise BackendUnavailable(
                f"Primary store unavailable: {e}", collection=collection, key=key
            ) from e
        self._fan_out(collection, key, value)

    def delete(self, collection: str, key: str) -> bool:
        """Delete from the primary, then from auxiliaries in the background."""
        try:
            removed = self.primary.delete(collection, key)
        except Exception as e:
            logger.error(f"Primary delete failed for {collection}/{key}: {e}")
            raise BackendUnavailable(
                f"Primary store unavailable: {e}", collection=collection, key=key
            ) from e
        self._fan_out(collection, key, None)
        return removed

    def _fan_out(self, collection: str, key: str, value: Optional[Dict[str, Any]]):
        entry_key = (collection, key)
        with self._lock:
            self._versions[entry_key] = self._versions.get(entry_key, 0) + 1
            targets = [s for s in self._aux if s.healthy and s.backend.accepts(collection)]
            if targets:
                self._pending[entry_key] = self._pending.get(entry_key, 0) + len(targets)

        for state in targets:
            state.executor.submit(self._apply, state, collection, key, value)

    def _apply(self, state: _AuxiliaryState, collection: str, key: str,
               value: Optional[Dict[str, Any]]):
        try:
            if value is None:
                state.backend.delete(collection, key)
            elif isinstance(state.backend, CacheBackend):
                state.backend.put_entry(collection, key, value, ttl=self.cache_ttl)
            else:
                state.backend.put(collection, key, value)
        except Exception as e:
            self._mark_failed(state, e)
        finally:
            with self._lock:
                entry_key = (collection, key)
                remaining = self._pending.get(entry_key, 1) - 1
                if remaining > 0:
                    self._pending[entry_key] = remaining
                else:
                    self._pending.pop(entry_key, None)

    def flush(self, timeout: Optional[float] = 10.0) -> None:
        """Block until queued auxiliary work has been applied."""
        futures = []
        for state in self._aux:
            try:
                futures.append(state.executor.submit(lambda: None))
            except RuntimeError:
                continue  # executor already shut down
        for future in futures:
            future.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def _read_order(self, collection: str) -> List[_AuxiliaryState]:
        healthy = [s for s in self._aux if s.healthy and s.backend.accepts(collection)]
        caches = [s for s in healthy if s.backend.is_cache]
        mirrors = [s for s in healthy if not s.backend.is_cache]
        return caches + mirrors

    def get(self, collection: str, key: str) -> Dict[str, Any]:
        """
        Read a value, preferring healthy auxiliary backends.

        Raises:
            NotFound: the primary has no such record
            BackendUnavailable: the primary failed
        """
        entry_key = (collection, key)
        with self._lock:
            dirty = entry_key in self._pending
            version = self._versions.get(entry_key, 0)

        if not dirty:
            for state in self._read_order(collection):
                try:
                    return state.backend.get(collection, key)
                except NotFound:
                    continue
                except Exception as e:
                    self._mark_failed(state, e)

        try:
            value = self.primary.get(collection, key)
        except NotFound:
            raise
        except Exception as e:
            logger.error(f"Primary read failed for {collection}/{key}: {e}")
            raise BackendUnavailable(
                f"Primary store unavailable: {e}", collection=collection, key=key
            ) from e

        self._backfill(collection, key, value, version)
        return value

    def _backfill(self, collection: str, key: str, value: Dict[str, Any], version: int):
        for state in self._aux:
            if not (state.healthy and state.backend.is_cache and state.backend.accepts(collection)):
                continue

            def write(state=state):
                with self._lock:
                    if self._versions.get((collection, key), 0) != version:
                        return  # a newer write owns the cache entry
                try:
                    state.backend.put_entry(collection, key, value, ttl=self.cache_ttl)
                except Exception as e:
                    self._mark_failed(state, e)

            state.executor.submit(write)

    def exists(self, collection: str, key: str) -> bool:
        try:
            self.get(collection, key)
            return True
        except NotFound:
            return False

    def query(self, collection: str,
              filter: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Query the primary, the only backend guaranteed to be complete."""
        try:
            return self.primary.query(collection, filter)
        except Exception as e:
            logger.error(f"Primary query failed for {collection}: {e}")
            raise BackendUnavailable(
                f"Primary store unavailable: {e}", collection=collection
            ) from e

    def count(self, collection: str) -> int:
        counter = getattr(self.primary, "count", None)
        if counter is not None:
            try:
                return counter(collection)
            except Exception as e:
                raise BackendUnavailable(
                    f"Primary store unavailable: {e}", collection=collection
                ) from e
        return len(self.query(collection))

    # ------------------------------------------------------------------
    # Capability-specific reads
    # ------------------------------------------------------------------

    def search(self, collection: str, text: str,
               limit: int = 10) -> Optional[List[Tuple[str, float]]]:
        """
        Similarity search through the first healthy searchable backend.

        Returns None when no searchable backend is available so callers
        can fall back to keyword matching.
        """
        for state in self._aux:
            if not (state.healthy and state.backend.searchable):
                continue
            try:
                return state.backend.search(collection, text, limit)
            except Exception as e:
                self._mark_failed(state, e)
        return None

    def neighbors(self, name: str, depth: int = 1) -> Optional[Dict[str, int]]:
        """Neighbourhood query through a healthy graph backend, or None."""
        for state in self._aux:
            if not (state.healthy and state.backend.graph_capable):
                continue
            with self._lock:
                if self._pending:
                    return None  # mirror is behind the primary
            try:
                return state.backend.neighbors(name, depth)
            except NotFound:
                return None
            except Exception as e:
                self._mark_failed(state, e)
        return None

    # ------------------------------------------------------------------
    # Cache-aside helpers
    # ------------------------------------------------------------------

    def cache_generation(self) -> int:
        """Token taken before computing a value that will be cached."""
        with self._lock:
            return self._cache_generation

    def cache_get(self, key: str) -> Optional[Any]:
        """Return a cached value, or None on miss or cache trouble."""
        with self._lock:
            if self._pending_invalidations:
                return None
        for state in self._aux:
            if not (state.healthy and state.backend.is_cache):
                continue
            try:
                return state.backend.get(CACHE_COLLECTION, key)
            except NotFound:
                continue
            except Exception as e:
                self._mark_failed(state, e)
        return None

    def cache_put(self, key: str, value: Any, ttl: Optional[int] = None,
                  tags: Iterable[str] = (), generation: Optional[int] = None) -> None:
        """
        Cache a value in the background.

        When ``generation`` is given, the entry is dropped if any tag
        invalidation happened since that token was taken.
        """
        tags = list(tags)
        for state in self._aux:
            if not (state.healthy and state.backend.is_cache):
                continue

            def write(state=state):
                with self._lock:
                    if generation is not None and generation != self._cache_generation:
                        return
                try:
                    state.backend.put_entry(CACHE_COLLECTION, key, value,
                                            ttl=ttl or self.cache_ttl, tags=tags)
                except Exception as e:
                    self._mark_failed(state, e)

            state.executor.submit(write)

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        """Invalidate cached entries by tag, in the background."""
        tags = sorted(set(tags))
        if not tags:
            return
        caches = [s for s in self._aux if s.healthy and s.backend.is_cache]
        with self._lock:
            self._cache_generation += 1
            self._pending_invalidations += len(caches)

        for state in caches:
            def invalidate(state=state):
                try:
                    count = state.backend.invalidate_tags(tags)
                    if count:
                        logger.debug(f"Invalidated {count} cache entries in {state.backend.name}")
                except Exception as e:
                    self._mark_failed(state, e)
                finally:
                    with self._lock:
                        self._pending_invalidations -= 1

            state.executor.submit(invalidate)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        """Per-backend health flags."""
        try:
            primary_healthy = bool(self.primary.ping())
            primary_error = None
        except Exception as e:
            primary_healthy = False
            primary_error = str(e)

        primary = self.primary.describe()
        primary.update({"healthy": primary_healthy, "last_error": primary_error})
        return {
            "primary": primary,
            "auxiliaries": [state.to_dict() for state in self._aux],
            "degraded": not all(state.healthy for state in self._aux),
            "checked_at": datetime.now().isoformat(),
        }

    def is_healthy(self, name: str) -> bool:
        for state in self._aux:
            if state.backend.name == name:
                return state.healthy
        raise NotFound("Unknown backend", backend=name)
