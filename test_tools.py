#!/usr/bin/env python3
"""
Tool dispatcher tests for AI Collaboration Hub.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from ai_collab_hub.core.errors import (BudgetExceeded, DanglingReference, InvalidArgument,
                                       NotFound, ProposalClosed)
from ai_collab_hub.main import CollabHubWorkspace
from ai_collab_hub.utils.config import HubConfig

EXPECTED_TOOLS = {
    "create_entities", "search_entities", "add_observations", "create_relations",
    "read_graph", "open_nodes", "get_related_entities", "delete_entity",
    "send_ai_message", "get_ai_messages", "broadcast_message", "get_message_stats",
    "register_agent", "mark_messages_read",
    "execute_ai_request", "stream_ai_response", "get_provider_status",
    "start_autonomous_mode", "stop_autonomous_mode", "set_token_budget",
    "trigger_agent_action", "get_agent_profile",
    "create_consensus_proposal", "submit_consensus_vote", "get_consensus_status",
    "get_system_health",
}


@pytest.fixture
def workspace():
    temp_dir = Path(tempfile.mkdtemp())
    workspace = CollabHubWorkspace(HubConfig(data_dir=str(temp_dir)))
    try:
        yield workspace
    finally:
        workspace.stop()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_tool_catalogue(workspace):
    """Test the tool listing."""
    print("🧰 Testing tool catalogue...")

    tools = {t["name"]: t for t in workspace.dispatcher.list_tools()}
    assert set(tools) == EXPECTED_TOOLS, f"Catalogue mismatch: {set(tools) ^ EXPECTED_TOOLS}"
    schema = tools["send_ai_message"]["inputSchema"]
    assert {"to", "type"} <= set(schema.get("required", [])), f"Schema: {schema}"

    with pytest.raises(NotFound) as info:
        workspace.dispatcher.call_tool("drop_database", {})
    assert info.value.keys["tool"] == "drop_database"

    print("  ✓ Every tool listed with a schema")


def test_argument_validation(workspace):
    """Test argument checks at the tool boundary."""
    print("🧪 Testing argument validation...")

    call = workspace.dispatcher.call_tool

    with pytest.raises(InvalidArgument) as info:
        call("send_ai_message", {"to": "coder", "message": "hi"})
    assert info.value.keys["tool"] == "send_ai_message"
    assert "type" in info.value.keys["fields"]

    with pytest.raises(InvalidArgument) as info:
        call("send_ai_message", {"message": "hi", "type": "task"})
    assert "to" in info.value.keys["fields"]

    with pytest.raises(InvalidArgument):
        call("send_ai_message", {"to": "coder", "message": "hi", "type": "task",
                                 "priority": "whenever"})
    with pytest.raises(InvalidArgument):
        call("search_entities", {"query": "x", "limit": 0})
    with pytest.raises(InvalidArgument):
        call("create_entities", {"entities": []})
    with pytest.raises(InvalidArgument):
        call("read_graph", ["not", "an", "object"])
    with pytest.raises(InvalidArgument):
        call("start_autonomous_mode", {"agentId": "a", "triggers": {"tick": "log"}})

    print("  ✓ Missing and malformed arguments rejected")


def test_knowledge_graph_tools(workspace):
    call = workspace.dispatcher.call_tool

    created = call("create_entities", {"entities": [
        {"name": "api", "entityType": "service", "observations": ["serves REST"]},
        {"name": "db", "entityType": "database"},
    ]})
    assert len(created["created"]) == 2

    single = call("add_observations", {"entityName": "db", "observations": ["postgres"]})
    assert single == {"entityName": "db", "addedObservations": ["postgres"]}

    batch = call("add_observations", {"observations": [
        {"entityName": "api", "contents": ["python"]},
        {"entityName": "db", "contents": ["postgres", "replicated"]},
    ]})
    assert [r["addedObservations"] for r in batch["results"]] == [["python"], ["replicated"]]

    with pytest.raises(InvalidArgument):
        call("add_observations", {"observations": ["orphan"]})

    call("create_relations", {"relations": [{"from": "api", "to": "db", "relationType": "uses"}]})
    with pytest.raises(DanglingReference):
        call("create_relations", {"relations": [{"from": "api", "to": "cache",
                                                 "relationType": "uses"}]})

    found = call("search_entities", {"query": "postgres"})
    assert found["count"] >= 1 and "db" in [e["name"] for e in found["entities"]]

    workspace.storage.flush()
    related = call("get_related_entities", {"name": "api"})
    assert [e["name"] for e in related["related"]] == ["db"]

    nodes = call("open_nodes", {"names": ["api", "db"]})
    assert len(nodes["relations"]) == 1
    assert call("delete_entity", {"entityName": "db"})["relationsRemoved"] == 1
    assert [e["name"] for e in call("read_graph")["entities"]] == ["api"]


def test_messaging_tools(workspace):
    call = workspace.dispatcher.call_tool

    for agent in ["planner", "coder", "reviewer"]:
        call("register_agent", {"agentId": agent})

    sent = call("send_ai_message", {"from": "planner", "to": "coder", "content": "build it",
                                    "messageType": "task", "priority": "high"})
    assert sent["type"] == "task" and sent["priority"] == "high" and sent["from"] == "planner"

    inbox = call("get_ai_messages", {"agentId": "coder"})
    assert inbox["count"] == 1 and inbox["messages"][0]["payload"] == "build it"
    assert call("get_ai_messages", {"agentId": "coder"})["count"] == 0, "Unread only by default"
    assert call("get_ai_messages", {"agentId": "coder", "unreadOnly": False})["count"] == 1

    broadcast = call("broadcast_message", {"from": "planner", "message": "standup",
                                           "type": "announcement"})
    assert broadcast["recipients"] == ["coder", "reviewer"]

    assert call("mark_messages_read", {"agentId": "reviewer"}) == {"agentId": "reviewer",
                                                                    "marked": 1}
    stats = call("get_message_stats", {})
    assert stats["total"] == 2 and stats["broadcasts"] == 1


def test_ai_tools(workspace):
    call = workspace.dispatcher.call_tool

    response = call("execute_ai_request", {"request": "hi there"})
    assert response["content"] == "echo: hi there" and response["provider"] == "echo"

    streamed = call("stream_ai_response", {"request": {"prompt": "hi there"}})
    assert streamed["content"] == "echo: hi there"
    assert len(streamed["chunks"]) == 3

    assert "".join(workspace.dispatcher.stream({"request": "hi"})) == "echo: hi"

    providers = call("get_provider_status")["providers"]
    assert providers[0]["name"] == "echo" and providers[0]["state"] == "closed"


def test_autonomous_and_consensus_tools(workspace):
    call = workspace.dispatcher.call_tool

    call("start_autonomous_mode", {"agentId": "bot", "triggers": {"tick": "log"},
                                   "config": {"tokensPerDay": 15}})
    result = call("trigger_agent_action", {"agentId": "bot", "event": "tick"})
    assert result["cost"] == 10 and result["tokensRemaining"] == 5
    with pytest.raises(BudgetExceeded):
        call("trigger_agent_action", {"agentId": "bot", "event": "tick"})

    call("set_token_budget", {"agentId": "bot", "tokensPerDay": 100})
    assert call("get_agent_profile", {"agentId": "bot"})["tokensRemaining"] == 90
    assert call("stop_autonomous_mode", {"agentId": "bot"})["autonomousEnabled"] is False

    proposal = call("create_consensus_proposal", {
        "description": "Merge?", "options": ["yes", "no"], "quorum": 1, "timeoutSeconds": 60,
    })
    decided = call("submit_consensus_vote", {"proposalId": proposal["id"],
                                             "voterAgentId": "bot", "value": "yes"})
    assert decided["status"] == "decided" and decided["outcome"] == "yes"
    with pytest.raises(ProposalClosed):
        call("submit_consensus_vote", {"proposalId": proposal["id"],
                                       "voterAgentId": "other", "value": "no"})
    assert call("get_consensus_status", {"proposalId": proposal["id"]})["outcome"] == "yes"

    health = call("get_system_health")
    assert health["counts"]["proposals"] == 1 and health["counts"]["openProposals"] == 0
