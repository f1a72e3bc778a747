"""
Tool Dispatch for AI Collaboration Hub

Maps a tool name and a JSON argument object onto one core operation.
Arguments are validated with pydantic; results are always JSON objects.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..core.autonomous import AutonomousScheduler
from ..core.consensus import ConsensusCoordinator
from ..core.errors import InvalidArgument, NotFound
from ..core.knowledge_graph import KnowledgeGraph
from ..core.models import Priority
from ..providers.router import AIRequestRouter
from .message_hub import MessageHub

logger = logging.getLogger(__name__)


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NoArgs(ToolArgs):
    pass


# Knowledge graph

class CreateEntitiesArgs(ToolArgs):
    entities: List[Dict[str, Any]] = Field(min_length=1)


class SearchEntitiesArgs(ToolArgs):
    query: str
    entity_types: Optional[List[str]] = Field(default=None, alias="entityTypes")
    limit: Optional[int] = Field(default=None, ge=1)


class ObservationBatchItem(ToolArgs):
    entity_name: str = Field(alias="entityName", min_length=1)
    contents: List[str]


class AddObservationsArgs(ToolArgs):
    entity_name: Optional[str] = Field(default=None, alias="entityName")
    observations: List[Union[str, ObservationBatchItem]] = Field(min_length=1)

    @model_validator(mode="after")
    def check_form(self):
        plain = [o for o in self.observations if isinstance(o, str)]
        if self.entity_name:
            if len(plain) != len(self.observations):
                raise ValueError("observations must be strings when entityName is given")
        elif plain:
            raise ValueError("entityName is required for plain observations")
        return self


class CreateRelationsArgs(ToolArgs):
    relations: List[Dict[str, Any]] = Field(min_length=1)


class OpenNodesArgs(ToolArgs):
    names: List[str] = Field(min_length=1)


class RelatedEntitiesArgs(ToolArgs):
    name: str
    depth: int = Field(default=1, ge=1)


class DeleteEntityArgs(ToolArgs):
    entity_name: str = Field(alias="entityName")


# Messaging

class SendMessageArgs(ToolArgs):
    to: str = Field(min_length=1)
    message: Any = Field(validation_alias=AliasChoices("message", "content"))
    type: str = Field(validation_alias=AliasChoices("type", "messageType"))
    priority: Priority = Priority.NORMAL
    sender: str = Field(default="anonymous", alias="from")


class GetMessagesArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    since_id: Optional[Union[int, str]] = Field(default=None, alias="sinceId")
    unread_only: bool = Field(default=True, alias="unreadOnly")
    message_type: Optional[str] = Field(default=None, alias="messageType")
    limit: Optional[int] = Field(default=None, ge=1)


class BroadcastArgs(ToolArgs):
    message: Any = Field(validation_alias=AliasChoices("message", "content"))
    type: str = Field(validation_alias=AliasChoices("type", "messageType"))
    priority: Priority = Priority.NORMAL
    sender: str = Field(default="anonymous", alias="from")


class MessageStatsArgs(ToolArgs):
    window_seconds: Optional[int] = Field(default=None, alias="windowSeconds", ge=1)


class RegisterAgentArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    name: Optional[str] = None
    capabilities: Optional[List[str]] = None


class MarkReadArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    message_ids: Optional[List[str]] = Field(default=None, alias="messageIds")


# AI routing

class AIRequestArgs(ToolArgs):
    request: Union[str, Dict[str, Any]]
    preferred_provider: Optional[str] = Field(default=None, alias="preferredProvider")


# Autonomous mode

class StartAutonomousArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    triggers: Dict[str, Any]
    config: Dict[str, Any]


class AgentArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)


class SetBudgetArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    tokens_per_day: int = Field(alias="tokensPerDay", ge=0)


class TriggerArgs(ToolArgs):
    agent_id: str = Field(alias="agentId", min_length=1)
    event: Union[str, Dict[str, Any]]


# Consensus

class CreateProposalArgs(ToolArgs):
    description: str
    options: List[str] = Field(min_length=1)
    quorum: int = Field(ge=1)
    timeout_seconds: Optional[float] = Field(default=None, alias="timeoutSeconds", gt=0)
    participants: Optional[List[str]] = None
    proposer: Optional[str] = None
    mode: Optional[str] = None


class VoteArgs(ToolArgs):
    proposal_id: str = Field(alias="proposalId", min_length=1)
    voter_agent_id: str = Field(alias="voterAgentId", min_length=1)
    value: str


class ProposalArgs(ToolArgs):
    proposal_id: str = Field(alias="proposalId", min_length=1)


class Tool:
    """A catalogue entry."""

    def __init__(self, name: str, description: str, args: Type[ToolArgs],
                 handler: Callable[[Any], Dict[str, Any]]):
        self.name = name
        self.description = description
        self.args = args
        self.handler = handler

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.args.model_json_schema(by_alias=True),
        }


class ToolDispatcher:
    """
    Request/response surface over the core components.

    Every call either returns a JSON object or raises a
    CoordinationError carrying the tool name and the offending keys.
    """

    def __init__(self, knowledge_graph: KnowledgeGraph, message_hub: MessageHub,
                 consensus: ConsensusCoordinator, scheduler: AutonomousScheduler,
                 router: AIRequestRouter,
                 health: Optional[Callable[[], Dict[str, Any]]] = None):
        self.knowledge_graph = knowledge_graph
        self.message_hub = message_hub
        self.consensus = consensus
        self.scheduler = scheduler
        self.router = router
        self.health = health

        self._tools: Dict[str, Tool] = {}
        for name, description, args, handler in [
            ("create_entities", "Create entities in the shared knowledge graph; existing names are merged",
             CreateEntitiesArgs, self._create_entities),
            ("search_entities", "Search entities by keyword or similarity",
             SearchEntitiesArgs, self._search_entities),
            ("add_observations", "Append observations to existing entities",
             AddObservationsArgs, self._add_observations),
            ("create_relations", "Create typed relations between existing entities",
             CreateRelationsArgs, self._create_relations),
            ("read_graph", "Return the whole knowledge graph",
             NoArgs, self._read_graph),
            ("open_nodes", "Return named entities and the relations among them",
             OpenNodesArgs, self._open_nodes),
            ("get_related_entities", "Entities within a number of hops of an entity",
             RelatedEntitiesArgs, self._related_entities),
            ("delete_entity", "Delete an entity and its relations",
             DeleteEntityArgs, self._delete_entity),
            ("send_ai_message", "Send a message to another agent",
             SendMessageArgs, self._send_message),
            ("get_ai_messages", "Read messages addressed to an agent",
             GetMessagesArgs, self._get_messages),
            ("broadcast_message", "Send a message to every registered agent",
             BroadcastArgs, self._broadcast),
            ("get_message_stats", "Message counts over a trailing window",
             MessageStatsArgs, self._message_stats),
            ("register_agent", "Register an agent so it receives broadcasts",
             RegisterAgentArgs, self._register_agent),
            ("mark_messages_read", "Mark messages delivered to an agent",
             MarkReadArgs, self._mark_read),
            ("execute_ai_request", "Run an inference request with provider failover",
             AIRequestArgs, self._execute_ai_request),
            ("stream_ai_response", "Stream an inference response",
             AIRequestArgs, self._stream_ai_response),
            ("get_provider_status", "Circuit state and statistics per AI provider",
             NoArgs, self._provider_status),
            ("start_autonomous_mode", "Enable autonomous actions for an agent",
             StartAutonomousArgs, self._start_autonomous),
            ("stop_autonomous_mode", "Disable autonomous actions for an agent",
             AgentArgs, self._stop_autonomous),
            ("set_token_budget", "Set an agent's daily token budget",
             SetBudgetArgs, self._set_budget),
            ("trigger_agent_action", "Deliver a trigger event to an agent",
             TriggerArgs, self._trigger),
            ("get_agent_profile", "Autonomous profile and budget of an agent",
             AgentArgs, self._agent_profile),
            ("create_consensus_proposal", "Open a proposal for agents to vote on",
             CreateProposalArgs, self._create_proposal),
            ("submit_consensus_vote", "Vote on an open proposal",
             VoteArgs, self._submit_vote),
            ("get_consensus_status", "Current state of a proposal",
             ProposalArgs, self._proposal_status),
            ("get_system_health", "Backend health and aggregate counts",
             NoArgs, self._system_health),
        ]:
            self._tools[name] = Tool(name, description, args, handler)

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.describe() for tool in self._tools.values()]

    def _parse(self, name: str, arguments: Optional[Dict[str, Any]]):
        tool = self._tools.get(name)
        if tool is None:
            raise NotFound("Unknown tool", tool=name)
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidArgument("Arguments must be an object", tool=name)
        try:
            return tool, tool.args.model_validate(arguments or {})
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "arguments"
                             for err in e.errors()})
            raise InvalidArgument(f"Invalid arguments: {e.errors()[0]['msg']}",
                                  tool=name, fields=fields) from None

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Run a tool.

        Raises:
            NotFound: unknown tool, or a referenced record is absent
            InvalidArgument: missing or malformed arguments
            CoordinationError: any other typed failure from the core
        """
        tool, args = self._parse(name, arguments)
        logger.debug(f"Tool call: {name}")
        return tool.handler(args)

    def stream(self, arguments: Optional[Dict[str, Any]]) -> Iterator[str]:
        """Validated streaming entry point for ``stream_ai_response``."""
        _, args = self._parse("stream_ai_response", arguments)
        return self.router.stream(args.request, args.preferred_provider)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _create_entities(self, args: CreateEntitiesArgs):
        return self.knowledge_graph.create_entities(args.entities)

    def _search_entities(self, args: SearchEntitiesArgs):
        results = self.knowledge_graph.search_entities(args.query, args.entity_types, args.limit)
        return {"entities": results, "count": len(results)}

    def _add_observations(self, args: AddObservationsArgs):
        if args.entity_name:
            return self.knowledge_graph.add_observations(args.entity_name, args.observations)
        results = self.knowledge_graph.add_observations_batch(
            [item.model_dump(by_alias=True) for item in args.observations]
        )
        return {"results": results}

    def _create_relations(self, args: CreateRelationsArgs):
        return self.knowledge_graph.create_relations(args.relations)

    def _read_graph(self, args: NoArgs):
        return self.knowledge_graph.read_graph()

    def _open_nodes(self, args: OpenNodesArgs):
        return self.knowledge_graph.open_nodes(args.names)

    def _related_entities(self, args: RelatedEntitiesArgs):
        return self.knowledge_graph.related_entities(args.name, args.depth)

    def _delete_entity(self, args: DeleteEntityArgs):
        return self.knowledge_graph.delete_entity(args.entity_name)

    def _send_message(self, args: SendMessageArgs):
        return self.message_hub.send(args.sender, args.to, args.message,
                                     type=args.type, priority=args.priority)

    def _get_messages(self, args: GetMessagesArgs):
        messages = self.message_hub.get_messages(
            args.agent_id, since_id=args.since_id, unread_only=args.unread_only,
            message_type=args.message_type, limit=args.limit,
        ).to_list()
        return {"agentId": args.agent_id, "messages": messages, "count": len(messages)}

    def _broadcast(self, args: BroadcastArgs):
        return self.message_hub.broadcast(args.sender, args.message,
                                          type=args.type, priority=args.priority)

    def _message_stats(self, args: MessageStatsArgs):
        return self.message_hub.stats(args.window_seconds)

    def _register_agent(self, args: RegisterAgentArgs):
        return self.message_hub.register_agent(args.agent_id, args.name, args.capabilities)

    def _mark_read(self, args: MarkReadArgs):
        marked = self.message_hub.mark_read(args.agent_id, args.message_ids)
        return {"agentId": args.agent_id, "marked": marked}

    def _execute_ai_request(self, args: AIRequestArgs):
        return self.router.execute(args.request, args.preferred_provider).to_dict()

    def _stream_ai_response(self, args: AIRequestArgs):
        chunks = list(self.router.stream(args.request, args.preferred_provider))
        return {"chunks": chunks, "content": "".join(chunks)}

    def _provider_status(self, args: NoArgs):
        return {"providers": self.router.provider_status()}

    def _start_autonomous(self, args: StartAutonomousArgs):
        return self.scheduler.start_autonomous_mode(args.agent_id, args.triggers, args.config)

    def _stop_autonomous(self, args: AgentArgs):
        return self.scheduler.stop_autonomous_mode(args.agent_id)

    def _set_budget(self, args: SetBudgetArgs):
        return self.scheduler.set_token_budget(args.agent_id, args.tokens_per_day)

    def _trigger(self, args: TriggerArgs):
        return self.scheduler.trigger(args.agent_id, args.event)

    def _agent_profile(self, args: AgentArgs):
        return self.scheduler.get_profile(args.agent_id)

    def _create_proposal(self, args: CreateProposalArgs):
        return self.consensus.create_proposal(
            args.description, args.options, args.quorum,
            timeout_seconds=args.timeout_seconds, participants=args.participants,
            proposer=args.proposer, mode=args.mode,
        )

    def _submit_vote(self, args: VoteArgs):
        return self.consensus.submit_vote(args.proposal_id, args.voter_agent_id, args.value)

    def _proposal_status(self, args: ProposalArgs):
        return self.consensus.get_status(args.proposal_id)

    def _system_health(self, args: NoArgs):
        if self.health is None:
            return {"status": "unknown"}
        return self.health()
