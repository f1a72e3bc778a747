#!/usr/bin/env python3
"""
HTTP/WebSocket transport tests for AI Collaboration Hub.
"""

import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from ai_collab_hub.communication.server import create_app, status_code_for
from ai_collab_hub.core.errors import (BackendUnavailable, BudgetExceeded, Conflict,
                                       CoordinationError, DanglingReference, InvalidArgument,
                                       NotFound, ProposalClosed, ProviderUnavailable)
from ai_collab_hub.main import CollabHubWorkspace
from ai_collab_hub.utils.config import HubConfig


@pytest.fixture
def hub():
    temp_dir = Path(tempfile.mkdtemp())
    workspace = CollabHubWorkspace(HubConfig(data_dir=str(temp_dir)))
    try:
        with TestClient(create_app(workspace)) as client:
            yield workspace, client
    finally:
        workspace.stop()
        shutil.rmtree(temp_dir, ignore_errors=True)


def test_status_codes():
    expected = {
        NotFound: 404,
        DanglingReference: 409,
        Conflict: 409,
        ProposalClosed: 409,
        BudgetExceeded: 429,
        InvalidArgument: 400,
        BackendUnavailable: 503,
        ProviderUnavailable: 503,
        CoordinationError: 500,
    }
    for kind, code in expected.items():
        assert status_code_for(kind("x")) == code, f"{kind.__name__} mapped wrongly"


def test_tool_endpoints(hub):
    """Test tool calls over HTTP."""
    print("🌐 Testing HTTP tool endpoints...")

    workspace, client = hub

    response = client.get("/tools")
    assert response.status_code == 200
    assert len(response.json()["tools"]) == 26

    response = client.post("/tools/create_entities", json={"entities": [
        {"name": "api", "entityType": "service"},
    ]})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["tool"] == "create_entities"
    assert body["result"]["created"][0]["name"] == "api"

    response = client.post("/tools/read_graph")
    assert response.status_code == 200
    assert [e["name"] for e in response.json()["result"]["entities"]] == ["api"]

    print("  ✓ Tool listing and calls")


def test_errors_map_to_status_codes(hub):
    """Test typed error responses."""
    print("🚦 Testing error responses...")

    workspace, client = hub

    response = client.post("/tools/get_consensus_status", json={"proposalId": "missing"})
    assert response.status_code == 404
    assert response.json() == {"error": {
        "kind": "NotFound", "message": "Proposal does not exist",
        "keys": {"proposalId": "missing"},
    }}

    response = client.post("/tools/no_such_tool", json={})
    assert response.status_code == 404 and response.json()["error"]["keys"]["tool"] == "no_such_tool"

    response = client.post("/tools/send_ai_message", json={"to": "x"})
    assert response.status_code == 400
    assert response.json()["error"]["kind"] == "InvalidArgument"

    client.post("/tools/create_entities", json={"entities": [{"name": "a", "entityType": "t"}]})
    response = client.post("/tools/create_relations", json={"relations": [
        {"from": "a", "to": "ghost", "relationType": "links"},
    ]})
    assert response.status_code == 409
    assert response.json()["error"]["keys"]["missing"] == ["ghost"]

    client.post("/tools/start_autonomous_mode", json={
        "agentId": "bot", "triggers": {"tick": "log"}, "config": {"tokensPerDay": 5},
    })
    response = client.post("/tools/trigger_agent_action", json={"agentId": "bot", "event": "tick"})
    assert response.status_code == 429
    assert response.json()["error"]["keys"]["tokenBudget"] == 5

    print("  ✓ NotFound → 404, InvalidArgument → 400")
    print("  ✓ DanglingReference → 409, BudgetExceeded → 429")


def test_streaming_endpoint(hub):
    workspace, client = hub

    response = client.post("/tools/stream_ai_response/stream", json={"request": "hi there"})
    assert response.status_code == 200
    assert response.text == "echo: hi there"

    response = client.post("/tools/stream_ai_response/stream", json={})
    assert response.status_code == 400


def test_health_endpoint(hub):
    workspace, client = hub

    response = client.get("/health")
    assert response.status_code == 200
    health = response.json()
    assert health["status"] == "healthy"
    assert health["storage"]["primary"]["healthy"] is True
    assert health["providers"][0]["name"] == "echo"
    assert "entities" in health["counts"]


def test_websocket_push_and_tool_calls(hub):
    """Test the live agent channel."""
    print("🔌 Testing WebSocket channel...")

    workspace, client = hub

    with client.websocket_connect("/ws/coder") as websocket:
        hello = websocket.receive_json()
        assert hello == {"type": "connected", "agentId": "coder"}
        assert workspace.message_hub.is_registered("coder")

        response = client.post("/tools/send_ai_message", json={
            "from": "planner", "to": "coder", "message": "build it", "type": "task",
        })
        assert response.json()["result"]["delivered"] is True

        pushed = websocket.receive_json()
        assert pushed["type"] == "message"
        assert pushed["message"]["payload"] == "build it"
        assert pushed["message"]["from"] == "planner"

        websocket.send_json({"type": "tool", "id": "1", "name": "get_ai_messages",
                             "arguments": {"agentId": "coder", "unreadOnly": False}})
        reply = websocket.receive_json()
        assert reply["type"] == "tool_result" and reply["id"] == "1"
        assert reply["result"]["count"] == 1

        websocket.send_json({"type": "tool", "id": "2", "name": "nope"})
        reply = websocket.receive_json()
        assert reply["type"] == "error" and reply["id"] == "2"
        assert reply["error"]["kind"] == "NotFound"

        websocket.send_json({"type": "chat", "id": "3"})
        reply = websocket.receive_json()
        assert reply["type"] == "error" and reply["error"]["kind"] == "InvalidArgument"

    print("  ✓ Messages pushed to connected agents")
    print("  ✓ Tool calls over the socket")
