"""
Data Model for AI Collaboration Hub

Records exchanged between the core components. Field names are
snake_case in Python and camelCase on the wire.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    """Message priority enumeration."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class ProposalStatus(str, Enum):
    """Consensus proposal lifecycle."""
    OPEN = "open"
    DECIDED = "decided"
    EXPIRED = "expired"


class ConsensusMode(str, Enum):
    """How a proposal is decided once quorum is met."""
    PLURALITY = "plurality"   # quorum of distinct voters, majority value wins
    AGREEMENT = "agreement"   # one value alone must gather quorum votes


class HubModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with wire (camelCase) names and JSON-safe values."""
        return self.model_dump(by_alias=True, mode="json")


class Entity(HubModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(alias="entityType", min_length=1)
    observations: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    def merge_observations(self, observations: List[str]) -> List[str]:
        """Append observations not already present; returns the ones added."""
        seen = set(self.observations)
        added = []
        for observation in observations:
            if observation not in seen:
                seen.add(observation)
                self.observations.append(observation)
                added.append(observation)
        if added:
            self.updated_at = utcnow()
        return added


class Relation(HubModel):
    from_entity: str = Field(alias="from", min_length=1)
    to_entity: str = Field(alias="to", min_length=1)
    relation_type: str = Field(alias="relationType", min_length=1)
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @property
    def key(self) -> str:
        return relation_key(self.from_entity, self.relation_type, self.to_entity)


def relation_key(from_entity: str, relation_type: str, to_entity: str) -> str:
    # Unit separator keeps arbitrary names from colliding.
    return "\x1f".join((from_entity, relation_type, to_entity))


class Message(HubModel):
    id: str
    seq: int
    sender: str = Field(alias="from")
    to: str
    recipients: List[str] = Field(default_factory=list)
    type: str = "info"
    priority: Priority = Priority.NORMAL
    payload: Any = None
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    delivered: bool = False
    delivered_at: Optional[datetime] = Field(default=None, alias="deliveredAt")
    delivered_to: List[str] = Field(default_factory=list, alias="deliveredTo")

    def is_delivered_to(self, agent_id: str) -> bool:
        return agent_id in self.delivered_to

    def mark_delivered(self, agent_id: str) -> bool:
        """Record delivery to one recipient; returns False if already delivered."""
        if agent_id in self.delivered_to:
            return False
        self.delivered_to.append(agent_id)
        if set(self.recipients) <= set(self.delivered_to):
            self.delivered = True
            self.delivered_at = utcnow()
        return True


class ConsensusVote(HubModel):
    proposal_id: str = Field(alias="proposalId")
    voter_agent_id: str = Field(alias="voterAgentId")
    value: str
    cast_at: datetime = Field(default_factory=utcnow, alias="castAt")


class ConsensusProposal(HubModel):
    id: str
    description: str
    options: List[str] = Field(min_length=1)
    quorum: int = Field(ge=1)
    deadline: datetime
    status: ProposalStatus = ProposalStatus.OPEN
    mode: ConsensusMode = ConsensusMode.PLURALITY
    participants: List[str] = Field(default_factory=list)
    proposer: Optional[str] = None
    votes: Dict[str, ConsensusVote] = Field(default_factory=dict)
    outcome: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    closed_at: Optional[datetime] = Field(default=None, alias="closedAt")

    @property
    def is_open(self) -> bool:
        return self.status == ProposalStatus.OPEN


class AgentProfile(HubModel):
    agent_id: str = Field(alias="agentId")
    token_budget: int = Field(alias="tokenBudget", ge=0)
    tokens_used: int = Field(default=0, alias="tokensUsed", ge=0)
    window_start: str = Field(alias="windowStart")
    triggers: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    autonomous_enabled: bool = Field(default=True, alias="autonomousEnabled")
    config: Dict[str, Any] = Field(default_factory=dict)

    @property
    def tokens_remaining(self) -> int:
        return max(0, self.token_budget - self.tokens_used)
