#!/usr/bin/env python3
"""
Autonomous scheduler tests for AI Collaboration Hub.
"""

import shutil
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ai_collab_hub.communication.message_hub import MessageHub
from ai_collab_hub.core.autonomous import AutonomousScheduler
from ai_collab_hub.core.errors import BudgetExceeded, InvalidArgument, NotFound
from ai_collab_hub.core.knowledge_graph import KnowledgeGraph
from ai_collab_hub.providers.backends import EchoProvider
from ai_collab_hub.providers.router import AIRequestRouter
from ai_collab_hub.storage import MemoryCacheBackend, SQLiteBackend, StorageAdapter


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Harness:
    def __init__(self, temp_dir, clock=None, **kwargs):
        self.storage = StorageAdapter(SQLiteBackend(str(temp_dir / "autonomous.db")),
                                      [MemoryCacheBackend()])
        self.kg = KnowledgeGraph(self.storage)
        self.hub = MessageHub(self.storage)
        self.router = AIRequestRouter([EchoProvider()])
        extra = {"clock": clock} if clock else {}
        extra.update(kwargs)
        self.scheduler = AutonomousScheduler(self.storage, self.hub, self.kg,
                                             router=self.router, **extra)

    def close(self):
        self.scheduler.stop()
        self.router.close()
        self.storage.stop()


def test_budget_is_never_exceeded():
    """Test the daily token budget."""
    print("💰 Testing token budgets...")

    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir, action_costs={"log": 60})
    try:
        scheduler = harness.scheduler
        profile = scheduler.start_autonomous_mode("worker", {"tick": "log"}, {"tokensPerDay": 100})
        assert profile["tokenBudget"] == 100 and profile["autonomousEnabled"] is True

        first = scheduler.trigger("worker", "tick")
        assert first["status"] == "executed"
        assert first["cost"] == 60 and first["tokensUsed"] == 60 and first["tokensRemaining"] == 40

        with pytest.raises(BudgetExceeded) as info:
            scheduler.trigger("worker", "tick")
        assert info.value.keys == {
            "agentId": "worker", "action": "log", "cost": 60,
            "tokensUsed": 60, "tokenBudget": 100,
        }
        assert scheduler.get_profile("worker")["tokensUsed"] == 60, "A refused action costs nothing"

        notices = harness.hub.get_messages("worker", message_type="budget_exceeded").to_list()
        assert len(notices) == 1
        assert notices[0]["payload"]["cost"] == 60

        print("  ✓ Second action refused")
        print("  ✓ Agent notified of the exceeded budget")

    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_concurrent_triggers_cannot_overspend():
    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir, action_costs={"log": 60})
    try:
        scheduler = harness.scheduler
        scheduler.start_autonomous_mode("worker", {"tick": "log"}, {"tokensPerDay": 100})

        outcomes = []

        def fire():
            try:
                outcomes.append(scheduler.trigger("worker", "tick")["status"])
            except BudgetExceeded:
                outcomes.append("refused")

        threads = [threading.Thread(target=fire) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("executed") == 1, f"Outcomes: {outcomes}"
        assert outcomes.count("refused") == 7
        assert scheduler.get_profile("worker")["tokensUsed"] == 60
    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_disabled_and_unmapped_events():
    """Test events that do not run an action."""
    print("⏸️ Testing disabled agents...")

    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir)
    try:
        scheduler = harness.scheduler
        profile = scheduler.set_token_budget("idle", 500)
        assert profile["autonomousEnabled"] is False and profile["tokenBudget"] == 500

        result = scheduler.trigger("idle", "tick")
        assert result["status"] == "skipped" and result["reason"] == "disabled"

        audit = harness.kg.get_entity("autonomous:idle")
        assert audit.entity_type == "autonomous_log"
        assert any("disabled" in o for o in audit.observations)

        scheduler.start_autonomous_mode("idle", {"tick": "log"})
        assert scheduler.trigger("idle", "other")["status"] == "ignored"
        assert scheduler.trigger("idle", "tick")["status"] == "executed"

        scheduler.stop_autonomous_mode("idle")
        assert scheduler.trigger("idle", "tick")["status"] == "skipped"

        with pytest.raises(NotFound):
            scheduler.trigger("ghost", "tick")
        with pytest.raises(NotFound):
            scheduler.get_profile("ghost")

        print("  ✓ Disabled agents are skipped and audited")

    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_invalid_configuration_is_rejected():
    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir)
    try:
        scheduler = harness.scheduler
        with pytest.raises(InvalidArgument):
            scheduler.start_autonomous_mode("a", {"tick": "launch_rockets"})
        with pytest.raises(InvalidArgument):
            scheduler.start_autonomous_mode("a", ["tick"])
        with pytest.raises(InvalidArgument):
            scheduler.start_autonomous_mode("a", {"tick": {"action": "log", "cost": -1}})
        with pytest.raises(InvalidArgument):
            scheduler.set_token_budget("a", -5)
        with pytest.raises(InvalidArgument):
            scheduler.start_autonomous_mode("a", {"tick": "log"}, {"tokensPerDay": "lots"})
    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_budget_window_resets_at_utc_midnight():
    """Test the daily reset."""
    print("🌅 Testing budget window reset...")

    temp_dir = Path(tempfile.mkdtemp())
    clock = FakeClock(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
    harness = Harness(temp_dir, clock=clock, action_costs={"log": 60})
    try:
        scheduler = harness.scheduler
        scheduler.start_autonomous_mode("worker", {"tick": "log"}, {"tokensPerDay": 100})
        scheduler.trigger("worker", "tick")
        with pytest.raises(BudgetExceeded):
            scheduler.trigger("worker", "tick")

        assert scheduler.reset_expired_budgets() == 0
        clock.advance(minutes=2)
        assert scheduler.reset_expired_budgets() == 1

        profile = scheduler.get_profile("worker")
        assert profile["tokensUsed"] == 0 and profile["windowStart"] == "2026-03-02"
        assert scheduler.trigger("worker", "tick")["tokensUsed"] == 60

        # the window also rolls on access, without the background job
        clock.advance(days=1)
        assert scheduler.trigger("worker", "tick")["tokensUsed"] == 60

        print("  ✓ Budget restored in the new window")

    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_ai_request_is_charged_actual_usage():
    """Test reconciliation of reserved tokens."""
    print("🤖 Testing ai_request actions...")

    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir)
    try:
        scheduler = harness.scheduler
        scheduler.start_autonomous_mode("thinker", {
            "question": {"action": "ai_request", "prompt": "hello world", "replyTo": "asker"},
        }, {"tokensPerDay": 1000})

        estimate = scheduler.estimate_cost({"action": "ai_request", "prompt": "hello world"})
        assert estimate == len("hello world") // 4 + 512

        result = scheduler.trigger("thinker", "question")
        assert result["result"]["content"] == "echo: hello world"
        assert result["result"]["provider"] == "echo"
        expected = len("hello world") // 4 + len("echo: hello world") // 4
        assert result["cost"] == expected and result["tokensUsed"] == expected

        replies = harness.hub.get_messages("asker", message_type="ai_response").to_list()
        assert [m["payload"] for m in replies] == ["echo: hello world"]

        print("  ✓ Reservation reconciled to provider usage")

    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_failed_action_is_refunded():
    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir, action_costs={"send_message": 10})
    try:
        scheduler = harness.scheduler
        scheduler.start_autonomous_mode("courier", {"ping": {"action": "send_message",
                                                             "message": "pong"}})

        with pytest.raises(InvalidArgument):
            scheduler.trigger("courier", "ping")  # no recipient anywhere
        assert scheduler.get_profile("courier")["tokensUsed"] == 0

        result = scheduler.trigger("courier", {"type": "ping", "from": "caller"})
        assert result["result"]["to"] == "caller"
        assert [m["payload"] for m in harness.hub.get_messages("caller")] == ["pong"]
        assert scheduler.get_profile("courier")["tokensUsed"] == 10
    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_custom_actions_and_observations():
    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir)
    try:
        scheduler = harness.scheduler
        calls = []
        scheduler.register_action("count", lambda agent, spec, event: (calls.append(agent), 7),
                                  cost=20)
        scheduler.start_autonomous_mode("notes", {
            "count": "count",
            "*": {"action": "record_observation", "entityName": "notes-log"},
        })

        assert scheduler.trigger("notes", "count")["cost"] == 7
        assert calls == ["notes"]

        scheduler.trigger("notes", {"type": "anything", "payload": "saw a deploy"})
        assert harness.kg.get_entity("notes-log").observations == ["saw a deploy"]
    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_background_job_lifecycle():
    temp_dir = Path(tempfile.mkdtemp())
    harness = Harness(temp_dir, reset_check_interval=1)
    try:
        harness.scheduler.start()
        harness.scheduler.start()  # second start is a no-op
        harness.scheduler.stop()
        harness.scheduler.stop()
    finally:
        harness.close()
        shutil.rmtree(temp_dir, ignore_errors=True)
