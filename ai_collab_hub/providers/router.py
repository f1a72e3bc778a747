"""
AI Request Router for AI Collaboration Hub

Dispatches inference requests to the configured providers in priority
order, with a circuit breaker per provider and a per-call timeout.
"""

import logging
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from ..core.errors import ProviderUnavailable
from .backends import AIProvider, AIRequest, AIResponse, coerce_request

logger = logging.getLogger(__name__)

_END = object()


class _Saturated(Exception):
    """Every worker of the provider was busy; the call never started."""


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Per-provider failure tracking.

    ``failure_threshold`` consecutive failures inside ``failure_window``
    seconds open the circuit. After ``cooldown`` seconds a single trial
    call is let through; its success closes the circuit and its failure
    opens it again.
    """

    def __init__(self, failure_threshold: int = 3, failure_window: float = 60,
                 cooldown: float = 30, clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.cooldown = cooldown
        self.clock = clock

        self._lock = threading.Lock()
        self._failures = deque()
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state()

    def _state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self.clock() - self._opened_at >= self.cooldown:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def allow(self) -> bool:
        """Whether a call may go through now; claims the trial slot when half-open."""
        with self._lock:
            state = self._state()
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def release(self):
        """Give back a trial slot whose call ended without a verdict."""
        with self._lock:
            self._trial_in_flight = False

    def record_success(self):
        with self._lock:
            self._failures.clear()
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self):
        with self._lock:
            now = self.clock()
            if self._opened_at is not None:
                # failed trial
                self._opened_at = now
                self._trial_in_flight = False
                return
            self._failures.append(now)
            while self._failures and now - self._failures[0] > self.failure_window:
                self._failures.popleft()
            if len(self._failures) >= self.failure_threshold:
                self._opened_at = now
                self._failures.clear()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state()
            remaining = None
            if state == CircuitState.OPEN:
                remaining = round(self.cooldown - (self.clock() - self._opened_at), 3)
            return {
                "state": state.value,
                "recentFailures": len(self._failures),
                "cooldownRemaining": remaining,
            }


class AIRequestRouter:
    """
    Routes AI requests across providers.

    Features:
    - Preferred provider first, then configured priority order
    - Circuit breaker per provider with half-open retry
    - Per-call timeout, counted from the moment the call starts
    - Worker pool per provider, so a hung provider cannot starve the others
    - Streaming with failover before the first chunk only
    - Prompt release of the upstream response when a stream is abandoned
    """

    def __init__(self, providers: Sequence[AIProvider], failure_threshold: int = 3,
                 failure_window: float = 60, cooldown: float = 30,
                 call_timeout: float = 30.0, max_workers: int = 8,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize the router.

        Args:
            providers: Providers in priority order
            failure_threshold: Consecutive failures that open a circuit
            failure_window: Seconds over which failures are counted
            cooldown: Seconds a circuit stays open
            call_timeout: Per-call timeout in seconds
            max_workers: Threads per provider
            clock: Monotonic clock, injectable for tests
        """
        self._providers: "OrderedDict[str, AIProvider]" = OrderedDict()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._stats: Dict[str, Dict[str, Any]] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            self._providers[provider.name] = provider
            self._breakers[provider.name] = CircuitBreaker(
                failure_threshold, failure_window, cooldown, clock
            )
            self._stats[provider.name] = {
                "calls": 0, "failures": 0, "lastError": None, "lastLatencyMs": None,
            }
            self._executors[provider.name] = ThreadPoolExecutor(
                max_workers=max_workers, thread_name_prefix=f"ai-{provider.name}"
            )

        self.call_timeout = call_timeout
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _candidates(self, preferred: Optional[str]) -> List[Tuple[str, AIProvider]]:
        order = list(self._providers.items())
        if preferred:
            if preferred in self._providers:
                order.sort(key=lambda item: item[0] != preferred)
            else:
                logger.warning(f"Unknown preferred provider {preferred}, using priority order")
        return order

    def _record(self, name: str, error: Any = None, latency: Optional[float] = None):
        with self._lock:
            stats = self._stats[name]
            stats["calls"] += 1
            if error is not None:
                stats["failures"] += 1
                stats["lastError"] = str(error)
            if latency is not None:
                stats["lastLatencyMs"] = round(latency * 1000, 2)
        if error is None:
            self._breakers[name].record_success()
        else:
            self._breakers[name].record_failure()
            logger.warning(f"Provider {name} failed: {error}")

    def _start(self, name: str, fn: Callable, *args) -> Future:
        """
        Run ``fn`` on the provider's own workers once one is free.

        Returns the running future, so the caller's timeout covers the
        call itself and not the wait for a worker.

        Raises:
            _Saturated: no worker freed up within the call timeout
        """
        started = threading.Event()

        def call():
            started.set()
            return fn(*args)

        future = self._executors[name].submit(call)
        if not started.wait(self.call_timeout) and future.cancel():
            raise _Saturated(name)
        return future

    def _saturated(self, name: str):
        # no verdict on the provider; hand back a half-open trial slot
        self._breakers[name].release()
        logger.warning(f"Provider {name} has no free worker, skipping")

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def execute(self, request: Union[AIRequest, Dict[str, Any], str],
                preferred_provider: Optional[str] = None) -> AIResponse:
        """
        Run a request on the first provider that answers.

        Raises:
            ProviderUnavailable: every provider failed or is excluded
        """
        request = coerce_request(request)
        attempts: Dict[str, str] = {}

        for name, provider in self._candidates(preferred_provider):
            breaker = self._breakers[name]
            if not breaker.allow():
                attempts[name] = "circuit open"
                continue

            try:
                future = self._start(name, provider.complete, request)
            except _Saturated:
                attempts[name] = "busy"
                self._saturated(name)
                continue

            started = time.monotonic()
            try:
                response = future.result(timeout=self.call_timeout)
            except FutureTimeout:
                attempts[name] = "timeout"
                self._record(name, f"timed out after {self.call_timeout}s")
                continue
            except Exception as e:
                attempts[name] = str(e)
                self._record(name, e)
                continue

            self._record(name, latency=time.monotonic() - started)
            logger.debug(f"Request served by {name}")
            return response

        raise ProviderUnavailable("All AI providers failed", attempts=attempts)

    def stream(self, request: Union[AIRequest, Dict[str, Any], str],
               preferred_provider: Optional[str] = None) -> Iterator[str]:
        """
        Stream a response as text chunks.

        Fails over to the next provider only until the first chunk has
        been produced. Closing the returned generator closes the
        provider stream and its HTTP response.
        """
        request = coerce_request(request)
        return self._stream(request, preferred_provider)

    def _stream(self, request: AIRequest, preferred_provider: Optional[str]) -> Iterator[str]:
        attempts: Dict[str, str] = {}

        for name, provider in self._candidates(preferred_provider):
            breaker = self._breakers[name]
            if not breaker.allow():
                attempts[name] = "circuit open"
                continue

            chunks = provider.stream(request)
            try:
                future = self._start(name, next, chunks, _END)
            except _Saturated:
                chunks.close()
                attempts[name] = "busy"
                self._saturated(name)
                continue

            started = time.monotonic()
            try:
                first = future.result(timeout=self.call_timeout)
            except FutureTimeout:
                # the generator is still running on the worker; close it once it returns
                future.add_done_callback(lambda f, chunks=chunks: chunks.close())
                attempts[name] = "timeout"
                self._record(name, f"no first chunk after {self.call_timeout}s")
                continue
            except Exception as e:
                chunks.close()
                attempts[name] = str(e)
                self._record(name, e)
                continue

            self._record(name, latency=time.monotonic() - started)
            try:
                if first is _END:
                    return
                yield first
                for chunk in chunks:
                    yield chunk
            except Exception as e:
                self._record(name, e)
                raise ProviderUnavailable("Provider failed mid-stream",
                                          provider=name) from e
            finally:
                chunks.close()
            return

        raise ProviderUnavailable("All AI providers failed", attempts=attempts)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def provider_names(self) -> List[str]:
        return list(self._providers)

    def provider_status(self) -> List[Dict[str, Any]]:
        status = []
        with self._lock:
            stats = {name: dict(s) for name, s in self._stats.items()}
        for name, provider in self._providers.items():
            entry = provider.describe()
            entry.update(self._breakers[name].to_dict())
            entry.update(stats[name])
            entry["healthy"] = entry["state"] != CircuitState.OPEN.value
            status.append(entry)
        return status

    def close(self):
        for executor in self._executors.values():
            executor.shutdown(wait=False)
        for provider in self._providers.values():
            try:
                provider.close()
            except Exception as e:
                logger.warning(f"Error closing provider {provider.name}: {e}")
