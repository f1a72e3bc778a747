"""
Consensus Coordinator for AI Collaboration Hub

Quorum/plurality voting between agents. A proposal is open until it is
decided by its votes or its deadline passes; closing it announces the
outcome to every participant and records an audit entity in the
knowledge graph.
"""

import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..communication.message_hub import MessageHub
from ..storage.adapter import StorageAdapter
from .errors import CoordinationError, InvalidArgument, NotFound, ProposalClosed
from .knowledge_graph import KnowledgeGraph
from .locks import KeyedLock
from .models import (ConsensusMode, ConsensusProposal, ConsensusVote,
                     ProposalStatus, utcnow)

logger = logging.getLogger(__name__)

PROPOSALS = "proposals"
COORDINATOR_ID = "consensus-coordinator"


def tally(votes: Sequence[ConsensusVote]) -> Dict[str, int]:
    return dict(Counter(vote.value for vote in votes))


def resolve(votes: Sequence[ConsensusVote], candidates: Sequence[str]) -> str:
    """
    Pick one value among equally strong candidates.

    The candidate chosen by the lowest-sorted voter id wins.
    """
    if len(candidates) == 1:
        return candidates[0]
    for vote in sorted(votes, key=lambda v: v.voter_agent_id):
        if vote.value in candidates:
            return vote.value
    return sorted(candidates)[0]


def decide(proposal: ConsensusProposal) -> Optional[str]:
    """
    Return the winning value if the proposal can be decided now.

    Plurality: decided once ``quorum`` distinct agents voted, majority
    value wins. Agreement: decided once a single value has ``quorum``
    votes.
    """
    votes = list(proposal.votes.values())
    counts = tally(votes)
    if not counts:
        return None

    if proposal.mode == ConsensusMode.AGREEMENT:
        eligible = {value: n for value, n in counts.items() if n >= proposal.quorum}
    elif len(votes) >= proposal.quorum:
        eligible = counts
    else:
        return None

    if not eligible:
        return None
    top = max(eligible.values())
    return resolve(votes, [value for value, n in eligible.items() if n == top])


class ConsensusCoordinator:
    """
    Coordinates proposals and votes between agents.

    Features:
    - Plurality and agreement decision modes with deterministic tie-break
    - Deadline enforcement by a background sweeper and on access
    - Serialized vote casting per proposal
    - Outcome announcements through the message hub
    - Audit entities recording every closed proposal
    """

    def __init__(self, storage: StorageAdapter, message_hub: MessageHub,
                 knowledge_graph: KnowledgeGraph, default_timeout: int = 300,
                 sweep_interval: int = 5, default_mode: str = "plurality"):
        """
        Initialize the consensus coordinator.

        Args:
            storage: Storage adapter holding proposals
            message_hub: Hub used to announce proposals and outcomes
            knowledge_graph: Graph receiving the audit entities
            default_timeout: Proposal lifetime when none is given (seconds)
            sweep_interval: Seconds between expiry sweeps
            default_mode: Decision mode when none is given
        """
        self.storage = storage
        self.message_hub = message_hub
        self.knowledge_graph = knowledge_graph
        self.default_timeout = default_timeout
        self.sweep_interval = sweep_interval
        self.default_mode = ConsensusMode(default_mode)

        self._locks = KeyedLock()
        self._lock = threading.RLock()
        self._running = False
        self._stop_event = threading.Event()
        self._sweeper_thread = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the deadline sweeper."""
        with self._lock:
            if self._running:
                logger.warning("Consensus sweeper already running")
                return
            self._running = True
            self._stop_event.clear()
            self._sweeper_thread = threading.Thread(
                target=self._sweep_loop, daemon=True, name="consensus-sweeper"
            )
            self._sweeper_thread.start()

    def stop(self):
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
        if self._sweeper_thread:
            self._sweeper_thread.join(timeout=5)
            self._sweeper_thread = None

    def _sweep_loop(self):
        logger.info("Consensus sweeper started")
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.expire_overdue()
            except Exception as e:
                logger.error(f"Error in consensus sweep: {e}")
        logger.info("Consensus sweeper stopped")

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def _load(self, proposal_id: str) -> ConsensusProposal:
        try:
            return ConsensusProposal.model_validate(self.storage.get(PROPOSALS, proposal_id))
        except NotFound:
            raise NotFound("Proposal does not exist", proposalId=proposal_id) from None

    def _save(self, proposal: ConsensusProposal):
        self.storage.put(PROPOSALS, proposal.id, proposal.to_dict())

    def create_proposal(self, description: str, options: Sequence[str], quorum: int,
                        timeout_seconds: Optional[float] = None,
                        deadline: Optional[datetime] = None,
                        participants: Optional[Sequence[str]] = None,
                        proposer: Optional[str] = None,
                        mode: Optional[str] = None) -> Dict[str, Any]:
        """
        Open a new proposal.

        Args:
            description: What is being decided
            options: Allowed vote values
            quorum: Distinct voters (plurality) or matching votes
                (agreement) needed to decide
            timeout_seconds: Lifetime; ignored when ``deadline`` is given
            deadline: Absolute deadline
            participants: Agents allowed to vote; anyone may vote when empty
            proposer: Agent opening the proposal
            mode: ``plurality`` or ``agreement``

        Returns:
            Proposal status
        """
        options = list(dict.fromkeys(options or []))
        if not options or not all(isinstance(o, str) and o for o in options):
            raise InvalidArgument("options must be a non-empty list of strings")
        if not isinstance(quorum, int) or quorum < 1:
            raise InvalidArgument("quorum must be a positive integer", quorum=quorum)
        try:
            mode = ConsensusMode(mode) if mode else self.default_mode
        except ValueError:
            raise InvalidArgument(f"Unknown consensus mode: {mode}", mode=mode) from None

        if deadline is None:
            timeout = self.default_timeout if timeout_seconds is None else timeout_seconds
            if timeout <= 0:
                raise InvalidArgument("timeoutSeconds must be positive", timeoutSeconds=timeout)
            deadline = utcnow() + timedelta(seconds=timeout)

        proposal = ConsensusProposal(
            id=uuid.uuid4().hex,
            description=description,
            options=options,
            quorum=quorum,
            deadline=deadline,
            mode=mode,
            participants=sorted(set(participants or [])),
            proposer=proposer,
        )
        self._save(proposal)
        logger.info(f"Proposal {proposal.id} opened: {description}")

        for agent_id in proposal.participants:
            if agent_id == proposer:
                continue
            self._notify(agent_id, "consensus_proposal", {
                "proposalId": proposal.id,
                "description": description,
                "options": options,
                "quorum": quorum,
                "deadline": proposal.deadline.isoformat(),
            }, sender=proposer)

        return self._describe(proposal)

    def submit_vote(self, proposal_id: str, voter_agent_id: str, value: str) -> Dict[str, Any]:
        """
        Cast or replace a vote.

        A later vote from the same agent replaces its earlier one.

        Raises:
            NotFound: unknown proposal
            ProposalClosed: the proposal is decided or expired
            InvalidArgument: value outside the options, or voter not a participant
        """
        if not voter_agent_id:
            raise InvalidArgument("voterAgentId is required", proposalId=proposal_id)

        with self._locks.hold(proposal_id):
            proposal = self._load(proposal_id)
            if proposal.is_open and proposal.deadline <= utcnow():
                self._close(proposal, ProposalStatus.EXPIRED)
            if not proposal.is_open:
                raise ProposalClosed(
                    f"Proposal is {proposal.status.value}",
                    proposalId=proposal_id, status=proposal.status.value,
                )
            if value not in proposal.options:
                raise InvalidArgument(
                    "Vote value is not one of the proposal options",
                    proposalId=proposal_id, value=value,
                )
            if proposal.participants and voter_agent_id not in proposal.participants:
                raise InvalidArgument(
                    "Voter is not a participant",
                    proposalId=proposal_id, voterAgentId=voter_agent_id,
                )

            proposal.votes[voter_agent_id] = ConsensusVote(
                proposal_id=proposal_id, voter_agent_id=voter_agent_id, value=value,
            )
            outcome = decide(proposal)
            if outcome is None:
                self._save(proposal)
            else:
                self._close(proposal, ProposalStatus.DECIDED, outcome)

        logger.debug(f"Vote on {proposal_id} by {voter_agent_id}: {value}")
        return self._describe(proposal)

    def get_status(self, proposal_id: str) -> Dict[str, Any]:
        """Current state of a proposal, expiring it first if overdue."""
        proposal = self._load(proposal_id)
        if proposal.is_open and proposal.deadline <= utcnow():
            with self._locks.hold(proposal_id):
                proposal = self._load(proposal_id)
                if proposal.is_open and proposal.deadline <= utcnow():
                    self._close(proposal, ProposalStatus.EXPIRED)
        return self._describe(proposal)

    def list_proposals(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        filter = {"status": status} if status else None
        return [
            self._describe(ConsensusProposal.model_validate(r))
            for r in self.storage.query(PROPOSALS, filter)
        ]

    def expire_overdue(self) -> List[str]:
        """
        Expire every open proposal whose deadline has passed.

        Returns:
            Ids of the proposals expired by this call
        """
        now = utcnow()
        expired = []
        for record in self.storage.query(PROPOSALS, {"status": ProposalStatus.OPEN.value}):
            proposal = ConsensusProposal.model_validate(record)
            if proposal.deadline > now:
                continue
            with self._locks.hold(proposal.id):
                proposal = self._load(proposal.id)
                if proposal.is_open and proposal.deadline <= utcnow():
                    self._close(proposal, ProposalStatus.EXPIRED)
                    expired.append(proposal.id)
        if expired:
            logger.info(f"Expired {len(expired)} overdue proposals")
        return expired

    # ------------------------------------------------------------------
    # Closing
    # ------------------------------------------------------------------

    def _close(self, proposal: ConsensusProposal, status: ProposalStatus,
               outcome: Optional[str] = None):
        proposal.status = status
        proposal.outcome = outcome
        proposal.closed_at = utcnow()
        self._save(proposal)
        logger.info(f"Proposal {proposal.id} {status.value}"
                    + (f" with outcome {outcome}" if outcome else ""))

        counts = tally(list(proposal.votes.values()))
        audience = sorted(set(proposal.participants) | set(proposal.votes))
        payload = {
            "proposalId": proposal.id,
            "description": proposal.description,
            "status": status.value,
            "outcome": outcome,
            "tally": counts,
        }
        for agent_id in audience:
            self._notify(agent_id, f"consensus_{status.value}", payload)

        votes = ", ".join(f"{v.voter_agent_id}={v.value}"
                          for v in sorted(proposal.votes.values(),
                                          key=lambda v: v.voter_agent_id))
        try:
            self.knowledge_graph.record(
                f"consensus:{proposal.id}", "consensus_decision", [
                    f"description: {proposal.description}",
                    f"status: {status.value}",
                    f"outcome: {outcome}",
                    f"votes: {votes or 'none'}",
                    f"closed_at: {proposal.closed_at.isoformat()}",
                ],
            )
        except CoordinationError as e:
            logger.error(f"Failed to record audit entity for proposal {proposal.id}: {e}")

    def _notify(self, agent_id: str, message_type: str, payload: Dict[str, Any],
                sender: Optional[str] = None):
        try:
            self.message_hub.send(sender or COORDINATOR_ID, agent_id, payload,
                                  type=message_type, priority="high")
        except CoordinationError as e:
            logger.error(f"Failed to notify {agent_id} about {payload.get('proposalId')}: {e}")

    def _describe(self, proposal: ConsensusProposal) -> Dict[str, Any]:
        data = proposal.to_dict()
        data["tally"] = tally(list(proposal.votes.values()))
        data["voters"] = len(proposal.votes)
        return data
