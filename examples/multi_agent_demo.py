#!/usr/bin/env python3
"""
Multi-Agent Demo for AI Collaboration Hub

Three agents share knowledge, exchange messages and vote on a decision
through the tool surface of an in-process hub.
"""

import shutil
import sys
import tempfile
from pathlib import Path

# Add the parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from ai_collab_hub.core.errors import CoordinationError
from ai_collab_hub.main import CollabHubWorkspace
from ai_collab_hub.utils.config import HubConfig

AGENTS = ["claude-desktop", "cursor", "codex"]


def main():
    """Run the demo against a throwaway data directory."""
    data_dir = tempfile.mkdtemp(prefix="ai_collab_hub_demo_")
    workspace = CollabHubWorkspace(HubConfig(data_dir=data_dir))
    workspace.start()
    call = workspace.dispatcher.call_tool

    print("🤖 AI Collaboration Hub - Multi-Agent Demo")
    print("=" * 50)

    try:
        for agent_id in AGENTS:
            call("register_agent", {"agentId": agent_id, "capabilities": ["code"]})
        print(f"✓ Registered agents: {', '.join(AGENTS)}")

        # Shared memory
        call("create_entities", {"entities": [
            {"name": "payments-service", "entityType": "service",
             "observations": ["written in Python", "owns the refunds API"]},
            {"name": "ledger-db", "entityType": "database",
             "observations": ["PostgreSQL 15"]},
        ]})
        call("create_relations", {"relations": [
            {"from": "payments-service", "to": "ledger-db", "relationType": "writes_to"},
        ]})
        call("add_observations", {"entityName": "payments-service",
                                  "observations": ["refunds need idempotency keys"]})
        found = call("search_entities", {"query": "refunds"})
        print(f"✓ Knowledge graph search for 'refunds': {[e['name'] for e in found['entities']]}")

        # Messaging
        call("send_ai_message", {"from": "cursor", "to": "codex", "type": "request",
                                 "message": "Can you review the refunds patch?"})
        call("broadcast_message", {"from": "claude-desktop", "type": "status",
                                   "message": "Starting the payments refactor"})
        inbox = call("get_ai_messages", {"agentId": "codex"})
        for message in inbox["messages"]:
            print(f"  📨 codex <- {message['from']}: {message['payload']}")

        # Consensus
        proposal = call("create_consensus_proposal", {
            "description": "Adopt idempotency keys for refunds",
            "options": ["yes", "no"],
            "quorum": 2,
            "participants": AGENTS,
            "proposer": "claude-desktop",
        })
        for voter, value in [("cursor", "yes"), ("codex", "yes")]:
            status = call("submit_consensus_vote", {
                "proposalId": proposal["id"], "voterAgentId": voter, "value": value,
            })
        print(f"✓ Proposal {status['status']} with outcome '{status['outcome']}'")

        # Budgeted autonomy
        call("start_autonomous_mode", {
            "agentId": "codex",
            "triggers": {"review_requested": {"action": "send_message", "to": "cursor",
                                              "message": "Review queued"}},
            "config": {"tokensPerDay": 200},
        })
        result = call("trigger_agent_action", {"agentId": "codex", "event": "review_requested"})
        print(f"✓ Autonomous action {result['action']} cost {result['cost']} tokens")
        try:
            call("trigger_agent_action", {"agentId": "codex", "event": "review_requested"})
        except CoordinationError as e:
            print(f"✓ Second trigger refused: {e.kind}")

        # AI routing (offline echo provider by default)
        response = call("execute_ai_request", {"request": "Summarise the refunds decision"})
        print(f"✓ AI response from {response['provider']}: {response['content']}")

        health = call("get_system_health")
        print(f"\n📊 Health: {health['status']} | counts: {health['counts']}")

    finally:
        workspace.stop()
        shutil.rmtree(data_dir, ignore_errors=True)
        print("✅ Shutdown complete")


if __name__ == "__main__":
    main()
