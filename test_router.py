#!/usr/bin/env python3
"""
AI request router tests for AI Collaboration Hub.
"""

import time

import pytest

from ai_collab_hub.core.errors import InvalidArgument, ProviderUnavailable
from ai_collab_hub.providers.backends import (AIProvider, AIResponse, EchoProvider,
                                              ProviderError, coerce_request)
from ai_collab_hub.providers.router import AIRequestRouter, CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class ScriptedProvider(AIProvider):
    """Provider whose behaviour the test switches at will."""

    kind = "scripted"

    def __init__(self, name, fail=False, delay=0.0, chunks=("a", "b", "c"), fail_after=None):
        super().__init__(name, model="scripted")
        self.fail = fail
        self.delay = delay
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.calls = 0
        self.stream_closed = False

    def complete(self, request):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ProviderError(f"{self.name} is down")
        return AIResponse(content=f"{self.name}: {request.prompt}", provider=self.name,
                          usage={"totalTokens": 5})

    def stream(self, request):
        self.calls += 1
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.fail:
                raise ProviderError(f"{self.name} is down")
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise ProviderError(f"{self.name} dropped the connection")
                yield chunk
        finally:
            self.stream_closed = True


def test_failover_and_circuit_breaker():
    """Test provider exclusion after repeated failures."""
    print("🔌 Testing circuit breaker...")

    clock = FakeClock()
    p1, p2 = ScriptedProvider("p1", fail=True), ScriptedProvider("p2")
    router = AIRequestRouter([p1, p2], failure_threshold=3, failure_window=60,
                             cooldown=30, clock=clock)
    try:
        for _ in range(3):
            assert router.execute("hi").provider == "p2"
        assert p1.calls == 3

        response = router.execute("hi")
        assert response.provider == "p2" and response.content == "p2: hi"
        assert p1.calls == 3, "An open circuit must not be called"

        status = {s["name"]: s for s in router.provider_status()}
        assert status["p1"]["state"] == "open" and status["p1"]["healthy"] is False
        assert status["p1"]["failures"] == 3
        assert status["p2"]["state"] == "closed" and status["p2"]["calls"] == 4

        clock.now += 30
        p1.fail = False
        assert router.execute("hi").provider == "p1", "Half-open circuit gets a trial call"
        assert {s["name"]: s["state"] for s in router.provider_status()}["p1"] == "closed"

        print("  ✓ Failing provider excluded after three failures")
        print("  ✓ Circuit closes after a successful trial")

    finally:
        router.close()


def test_failed_trial_reopens_circuit():
    clock = FakeClock()
    p1, p2 = ScriptedProvider("p1", fail=True), ScriptedProvider("p2")
    router = AIRequestRouter([p1, p2], failure_threshold=1, cooldown=10, clock=clock)
    try:
        router.execute("hi")
        clock.now += 10
        router.execute("hi")
        assert p1.calls == 2
        assert {s["name"]: s["state"] for s in router.provider_status()}["p1"] == "open"

        clock.now += 5
        router.execute("hi")
        assert p1.calls == 2, "Cooldown restarts after a failed trial"
    finally:
        router.close()


def test_breaker_counts_failures_inside_window():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, failure_window=10, cooldown=30, clock=clock)

    for step in (0, 5, 20):
        clock.now = 1000.0 + step
        breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED, "Stale failures must expire"

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.allow() is False
    assert breaker.to_dict()["cooldownRemaining"] == 30

    clock.now += 30
    assert breaker.allow() is True
    assert breaker.allow() is False, "Only one trial call at a time"
    breaker.release()
    assert breaker.allow() is True
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_timeouts_count_as_failures():
    """Test the per-call timeout."""
    print("⏱️ Testing call timeouts...")

    slow, fast = ScriptedProvider("slow", delay=1.0), ScriptedProvider("fast")
    router = AIRequestRouter([slow, fast], call_timeout=0.2)
    try:
        started = time.monotonic()
        response = router.execute("hi")
        assert response.provider == "fast"
        assert time.monotonic() - started < 0.9, "Router waited for the slow provider"
        status = {s["name"]: s for s in router.provider_status()}
        assert "timed out" in status["slow"]["lastError"]

        print("  ✓ Slow provider skipped")

    finally:
        router.close()


def test_hung_provider_does_not_starve_the_next_one():
    """Test worker pools per provider."""
    print("🧵 Testing worker isolation...")

    slow, fast = ScriptedProvider("slow", delay=1.0), ScriptedProvider("fast")
    router = AIRequestRouter([slow, fast], call_timeout=0.3, max_workers=1)
    try:
        response = router.execute("hi")
        assert response.provider == "fast" and response.content == "fast: hi"
        assert fast.calls == 1

        status = {s["name"]: s for s in router.provider_status()}
        assert status["slow"]["failures"] == 1
        assert status["fast"]["failures"] == 0 and status["fast"]["lastError"] is None, \
            "A provider that was never called must not be charged a timeout"

        print("  ✓ Healthy provider served while another hangs")

    finally:
        router.close()


def test_busy_workers_are_not_provider_failures():
    clock = FakeClock()
    slow = ScriptedProvider("slow", delay=2.0)
    router = AIRequestRouter([slow], failure_threshold=1, cooldown=10, call_timeout=0.2,
                             max_workers=1, clock=clock)
    try:
        with pytest.raises(ProviderUnavailable) as info:
            router.execute("hi")
        assert info.value.keys["attempts"] == {"slow": "timeout"}

        clock.now += 10
        # the only worker is still stuck in the first call
        for _ in range(2):
            with pytest.raises(ProviderUnavailable) as info:
                router.execute("hi")
            assert info.value.keys["attempts"] == {"slow": "busy"}, \
                "Trial slot must be handed back when the call never started"

        status = router.provider_status()[0]
        assert status["failures"] == 1
        assert status["state"] == "half_open"
        assert slow.calls == 1
    finally:
        router.close()


def test_all_providers_failing():
    p1, p2 = ScriptedProvider("p1", fail=True), ScriptedProvider("p2", fail=True)
    router = AIRequestRouter([p1, p2])
    try:
        with pytest.raises(ProviderUnavailable) as info:
            router.execute("hi")
        assert set(info.value.keys["attempts"]) == {"p1", "p2"}

        with pytest.raises(InvalidArgument):
            router.execute({})
        with pytest.raises(InvalidArgument):
            router.stream({"maxTokens": 10})
    finally:
        router.close()


def test_preferred_provider_goes_first():
    p1, p2 = ScriptedProvider("p1"), ScriptedProvider("p2")
    router = AIRequestRouter([p1, p2])
    try:
        assert router.execute("hi", preferred_provider="p2").provider == "p2"
        assert router.execute("hi", preferred_provider="unknown").provider == "p1"
        assert router.provider_names() == ["p1", "p2"]
    finally:
        router.close()

    with pytest.raises(ValueError):
        AIRequestRouter([ScriptedProvider("dup"), ScriptedProvider("dup")])


def test_stream_fails_over_before_first_chunk():
    """Test streaming failover."""
    print("🌊 Testing streaming...")

    broken, healthy = ScriptedProvider("broken", fail=True), ScriptedProvider("healthy")
    router = AIRequestRouter([broken, healthy])
    try:
        assert list(router.stream("hi")) == ["a", "b", "c"]
        assert broken.calls == 1 and broken.stream_closed

        print("  ✓ Failover before the first chunk")

    finally:
        router.close()


def test_stream_failure_after_first_chunk_is_surfaced():
    flaky = ScriptedProvider("flaky", fail_after=1)
    backup = ScriptedProvider("backup")
    router = AIRequestRouter([flaky, backup])
    try:
        received = []
        with pytest.raises(ProviderUnavailable) as info:
            for chunk in router.stream("hi"):
                received.append(chunk)
        assert received == ["a"]
        assert info.value.keys["provider"] == "flaky"
        assert backup.calls == 0, "No failover once output has started"
    finally:
        router.close()


def test_stream_timeout_before_first_chunk():
    slow = ScriptedProvider("slow", delay=1.0)
    fast = ScriptedProvider("fast", chunks=("x",))
    router = AIRequestRouter([slow, fast], call_timeout=0.2)
    try:
        assert list(router.stream("hi")) == ["x"]
    finally:
        router.close()


def test_closing_a_stream_releases_the_provider():
    """Test early termination by the consumer."""
    print("🧯 Testing stream cancellation...")

    provider = ScriptedProvider("p1", chunks=("a", "b", "c", "d"))
    router = AIRequestRouter([provider])
    try:
        stream = router.stream("hi")
        assert next(stream) == "a"
        assert not provider.stream_closed
        stream.close()
        assert provider.stream_closed, "Provider stream left open after the consumer stopped"

        print("  ✓ Upstream closed on cancellation")

    finally:
        router.close()


def test_echo_provider_and_request_coercion():
    echo = EchoProvider()
    request = coerce_request({"prompt": "hello there", "system": "be brief", "maxTokens": 16})
    assert request.max_tokens == 16
    assert [m["role"] for m in request.as_messages()] == ["system", "user"]

    response = echo.complete(request)
    assert response.content == "echo: hello there"
    assert response.total_tokens == response.usage["promptTokens"] + response.usage["completionTokens"]
    assert "".join(echo.stream(request)) == "echo: hello there"

    assert coerce_request(request) is request
    with pytest.raises(InvalidArgument):
        coerce_request(None)
