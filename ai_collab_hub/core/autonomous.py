"""
Autonomous Scheduler for AI Collaboration Hub

Runs actions on behalf of agents when trigger events arrive, under a
daily token budget per agent. Every event, executed or not, leaves an
observation on the agent's audit entity.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union

import schedule

from ..communication.message_hub import MessageHub
from ..providers.backends import coerce_request
from ..providers.router import AIRequestRouter
from ..storage.adapter import StorageAdapter
from .errors import BudgetExceeded, CoordinationError, InvalidArgument, NotFound
from .knowledge_graph import KnowledgeGraph
from .locks import KeyedLock
from .models import AgentProfile, utcnow

logger = logging.getLogger(__name__)

PROFILES = "agent_profiles"
SCHEDULER_ID = "autonomous-scheduler"

# handler(agent_id, action spec, event) -> (result, actual cost or None)
ActionHandler = Callable[[str, Dict[str, Any], Dict[str, Any]], Tuple[Any, Optional[int]]]


def _summary(value: Any, limit: int = 200) -> str:
    text = str(value)
    return text if len(text) <= limit else text[:limit] + "..."


class AutonomousScheduler:
    """
    Event-driven action runner with per-agent token budgets.

    Features:
    - Trigger maps from event type to action, per agent
    - Fixed cost per action type, overridable per trigger
    - Atomic check-and-reserve against the daily budget
    - Reservation reconciled to the actual cost after execution
    - Budget window reset at UTC midnight by a background job
    - Audit trail in the knowledge graph
    """

    def __init__(self, storage: StorageAdapter, message_hub: MessageHub,
                 knowledge_graph: KnowledgeGraph, router: Optional[AIRequestRouter] = None,
                 default_tokens_per_day: int = 100000,
                 action_costs: Optional[Dict[str, int]] = None,
                 default_action_cost: int = 50, reset_check_interval: int = 60,
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize the scheduler.

        Args:
            storage: Storage adapter holding agent profiles
            message_hub: Hub for message actions and notifications
            knowledge_graph: Graph for observation actions and audit entities
            router: Router serving ``ai_request`` actions
            default_tokens_per_day: Budget for agents without one
            action_costs: Fixed cost per action type
            default_action_cost: Cost of action types not listed
            reset_check_interval: Seconds between budget window checks
            clock: Returns the current UTC time, injectable for tests
        """
        self.storage = storage
        self.message_hub = message_hub
        self.knowledge_graph = knowledge_graph
        self.router = router
        self.default_tokens_per_day = default_tokens_per_day
        self.action_costs = dict(action_costs or {})
        self.default_action_cost = default_action_cost
        self.reset_check_interval = reset_check_interval
        self.clock = clock

        self._locks = KeyedLock()
        self._lock = threading.RLock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread = None
        self._jobs = schedule.Scheduler()
        self._jobs.every(reset_check_interval).seconds.do(self.reset_expired_budgets)

        self._actions: Dict[str, ActionHandler] = {
            "send_message": self._send_message,
            "broadcast": self._broadcast,
            "record_observation": self._record_observation,
            "ai_request": self._ai_request,
            "log": self._log,
            "status_update": self._status_update,
            "get_messages": self._get_messages,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the budget window job."""
        with self._lock:
            if self._running:
                logger.warning("Autonomous scheduler already running")
                return
            self._running = True
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop, daemon=True, name="autonomous-scheduler"
            )
            self._thread.start()

    def stop(self):
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    def _run_loop(self):
        logger.info("Autonomous scheduler loop started")
        while not self._stop_event.wait(1):
            try:
                self._jobs.run_pending()
            except Exception as e:
                logger.error(f"Error in autonomous scheduler loop: {e}")
        logger.info("Autonomous scheduler loop stopped")

    def register_action(self, name: str, handler: ActionHandler, cost: Optional[int] = None):
        """Add or replace an action type."""
        self._actions[name] = handler
        if cost is not None:
            self.action_costs[name] = cost

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def _today(self) -> str:
        return self.clock().date().isoformat()

    def _load(self, agent_id: str) -> AgentProfile:
        try:
            return AgentProfile.model_validate(self.storage.get(PROFILES, agent_id))
        except NotFound:
            raise NotFound("Agent profile does not exist", agentId=agent_id) from None

    def _load_or_new(self, agent_id: str) -> AgentProfile:
        try:
            return self._load(agent_id)
        except NotFound:
            return AgentProfile(
                agent_id=agent_id,
                token_budget=self.default_tokens_per_day,
                window_start=self._today(),
                autonomous_enabled=False,
            )

    def _save(self, profile: AgentProfile):
        self.storage.put(PROFILES, profile.agent_id, profile.to_dict())

    def _roll_window(self, profile: AgentProfile) -> bool:
        today = self._today()
        if profile.window_start == today:
            return False
        profile.window_start = today
        profile.tokens_used = 0
        return True

    def _describe(self, profile: AgentProfile) -> Dict[str, Any]:
        data = profile.to_dict()
        data["tokensRemaining"] = profile.tokens_remaining
        return data

    def _validate_triggers(self, triggers: Any) -> Dict[str, Dict[str, Any]]:
        if not isinstance(triggers, dict):
            raise InvalidArgument("triggers must map event types to actions")
        validated = {}
        for event_type, spec in triggers.items():
            if isinstance(spec, str):
                spec = {"action": spec}
            if not isinstance(spec, dict) or spec.get("action") not in self._actions:
                raise InvalidArgument("Unknown trigger action",
                                      event=event_type,
                                      action=spec.get("action") if isinstance(spec, dict) else spec)
            cost = spec.get("cost")
            if cost is not None and (not isinstance(cost, int) or cost < 0):
                raise InvalidArgument("cost must be a non-negative integer", event=event_type)
            validated[event_type] = dict(spec)
        return validated

    def start_autonomous_mode(self, agent_id: str, triggers: Dict[str, Any],
                              config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Enable autonomous mode with a trigger map.

        ``config["tokensPerDay"]``, when given, sets the budget.
        """
        if not agent_id:
            raise InvalidArgument("agentId is required")
        triggers = self._validate_triggers(triggers)
        config = dict(config or {})

        with self._locks.hold(agent_id):
            profile = self._load_or_new(agent_id)
            self._roll_window(profile)
            profile.triggers = triggers
            profile.config.update(config)
            profile.autonomous_enabled = True
            if "tokensPerDay" in config:
                profile.token_budget = self._budget(config["tokensPerDay"], agent_id)
            self._save(profile)

        if not self.message_hub.is_registered(agent_id):
            self.message_hub.register_agent(agent_id)
        self._audit(agent_id, f"autonomous mode started with triggers {sorted(triggers)}")
        logger.info(f"Autonomous mode started for {agent_id}")
        return self._describe(profile)

    def stop_autonomous_mode(self, agent_id: str) -> Dict[str, Any]:
        with self._locks.hold(agent_id):
            profile = self._load(agent_id)
            profile.autonomous_enabled = False
            self._save(profile)
        self._audit(agent_id, "autonomous mode stopped")
        logger.info(f"Autonomous mode stopped for {agent_id}")
        return self._describe(profile)

    @staticmethod
    def _budget(value: Any, agent_id: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidArgument("tokensPerDay must be a non-negative integer",
                                  agentId=agent_id, tokensPerDay=value)
        return value

    def set_token_budget(self, agent_id: str, tokens_per_day: int) -> Dict[str, Any]:
        """Set the daily budget, creating a disabled profile if needed."""
        budget = self._budget(tokens_per_day, agent_id)
        with self._locks.hold(agent_id):
            profile = self._load_or_new(agent_id)
            self._roll_window(profile)
            profile.token_budget = budget
            self._save(profile)
        logger.info(f"Token budget for {agent_id} set to {budget}/day")
        return self._describe(profile)

    def get_profile(self, agent_id: str) -> Dict[str, Any]:
        with self._locks.hold(agent_id):
            profile = self._load(agent_id)
            if self._roll_window(profile):
                self._save(profile)
        return self._describe(profile)

    def reset_expired_budgets(self) -> int:
        """
        Start a new window for every profile whose window is not today.

        Returns:
            Number of profiles reset
        """
        today = self._today()
        reset = 0
        for record in self.storage.query(PROFILES):
            if record.get("windowStart") == today:
                continue
            agent_id = record["agentId"]
            with self._locks.hold(agent_id):
                profile = self._load(agent_id)
                if self._roll_window(profile):
                    self._save(profile)
                    reset += 1
        if reset:
            logger.info(f"Reset token budgets for {reset} agents")
        return reset

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def estimate_cost(self, spec: Dict[str, Any]) -> int:
        """Token cost charged up front for an action spec."""
        if spec.get("cost") is not None:
            return int(spec["cost"])
        action = spec.get("action")
        if action == "ai_request":
            request = coerce_request(spec.get("request") or spec.get("prompt") or "")
            return request.estimated_tokens()
        return self.action_costs.get(action, self.default_action_cost)

    def trigger(self, agent_id: str, event: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
        """
        Deliver an event to an agent.

        Raises:
            NotFound: the agent has no profile
            BudgetExceeded: the mapped action would exceed the daily budget
        """
        if isinstance(event, str):
            event = {"type": event}
        if not isinstance(event, dict) or not event.get("type"):
            raise InvalidArgument("event must have a type", agentId=agent_id)
        event_type = event["type"]

        profile = self._load(agent_id)
        if not profile.autonomous_enabled:
            self._audit(agent_id, f"event {event_type} received while autonomous mode disabled")
            return {"status": "skipped", "reason": "disabled", "agentId": agent_id,
                    "event": event_type}

        spec = profile.triggers.get(event_type) or profile.triggers.get("*")
        if spec is None:
            self._audit(agent_id, f"event {event_type} has no trigger")
            return {"status": "ignored", "reason": "no_trigger", "agentId": agent_id,
                    "event": event_type}

        action = spec["action"]
        estimate = self.estimate_cost(spec)
        window = self._reserve(agent_id, event_type, action, estimate)

        try:
            result, actual = self._actions[action](agent_id, spec, event)
        except Exception as e:
            self._settle(agent_id, window, estimate, 0)
            self._audit(agent_id, f"event {event_type} -> {action} failed: {e}")
            raise

        cost = estimate if actual is None else actual
        profile = self._settle(agent_id, window, estimate, cost)
        self._audit(agent_id, f"event {event_type} -> {action} cost {cost}: {_summary(result)}")

        return {
            "status": "executed",
            "agentId": agent_id,
            "event": event_type,
            "action": action,
            "cost": cost,
            "tokensUsed": profile.tokens_used,
            "tokensRemaining": profile.tokens_remaining,
            "result": result,
        }

    def _reserve(self, agent_id: str, event_type: str, action: str, estimate: int) -> str:
        with self._locks.hold(agent_id):
            profile = self._load(agent_id)
            self._roll_window(profile)
            if profile.tokens_used + estimate > profile.token_budget:
                self._save(profile)
                exceeded = profile
            else:
                profile.tokens_used += estimate
                self._save(profile)
                return profile.window_start

        self._notify_budget_exceeded(exceeded, event_type, action, estimate)
        raise BudgetExceeded(
            "Action would exceed the daily token budget",
            agentId=agent_id, action=action, cost=estimate,
            tokensUsed=exceeded.tokens_used, tokenBudget=exceeded.token_budget,
        )

    def _settle(self, agent_id: str, window: str, reserved: int, actual: int) -> AgentProfile:
        with self._locks.hold(agent_id):
            profile = self._load(agent_id)
            if profile.window_start == window:
                used = profile.tokens_used - reserved + actual
                profile.tokens_used = max(0, min(used, profile.token_budget))
                self._save(profile)
            return profile

    def _notify_budget_exceeded(self, profile: AgentProfile, event_type: str,
                                action: str, cost: int):
        self._audit(profile.agent_id,
                    f"event {event_type} -> {action} skipped: cost {cost} exceeds budget "
                    f"({profile.tokens_used}/{profile.token_budget} used)")
        try:
            self.message_hub.send(SCHEDULER_ID, profile.agent_id, {
                "event": event_type,
                "action": action,
                "cost": cost,
                "tokensUsed": profile.tokens_used,
                "tokenBudget": profile.token_budget,
            }, type="budget_exceeded", priority="high")
        except CoordinationError as e:
            logger.error(f"Failed to notify {profile.agent_id} of exceeded budget: {e}")
        logger.warning(f"Token budget exceeded for {profile.agent_id}: {action} costs {cost}")

    def _audit(self, agent_id: str, observation: str):
        stamp = self.clock().isoformat()
        try:
            self.knowledge_graph.record(f"autonomous:{agent_id}", "autonomous_log",
                                        [f"{stamp} {observation}"])
        except CoordinationError as e:
            logger.error(f"Failed to record audit for {agent_id}: {e}")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _send_message(self, agent_id, spec, event):
        to = spec.get("to") or event.get("from")
        if not to:
            raise InvalidArgument("send_message needs a recipient", agentId=agent_id)
        message = self.message_hub.send(
            agent_id, to, spec.get("message", event.get("payload")),
            type=spec.get("type", "info"), priority=spec.get("priority", "normal"),
        )
        return {"messageId": message["id"], "to": to}, None

    def _broadcast(self, agent_id, spec, event):
        message = self.message_hub.broadcast(
            agent_id, spec.get("message", event.get("payload")),
            type=spec.get("type", "broadcast"), priority=spec.get("priority", "normal"),
        )
        return {"messageId": message["id"], "recipients": message["recipients"]}, None

    def _record_observation(self, agent_id, spec, event):
        observations = spec.get("observations")
        if observations is None:
            observation = spec.get("observation", event.get("payload"))
            observations = [] if observation is None else [str(observation)]
        entity = self.knowledge_graph.record(
            spec.get("entityName", f"agent:{agent_id}"),
            spec.get("entityType", "agent_notes"),
            observations,
        )
        return {"entityName": entity["name"], "observations": len(entity["observations"])}, None

    def _ai_request(self, agent_id, spec, event):
        if self.router is None:
            raise InvalidArgument("No AI router configured", agentId=agent_id)
        response = self.router.execute(spec.get("request") or spec.get("prompt"),
                                       spec.get("preferredProvider"))
        if spec.get("replyTo"):
            self.message_hub.send(agent_id, spec["replyTo"], response.content,
                                  type="ai_response")
        return {"provider": response.provider, "content": response.content}, response.total_tokens

    def _log(self, agent_id, spec, event):
        text = spec.get("message") or f"event {event['type']}"
        logger.info(f"[{agent_id}] {text}")
        return {"logged": text}, None

    def _status_update(self, agent_id, spec, event):
        status = spec.get("status", event.get("payload"))
        message = self.message_hub.broadcast(agent_id, {"status": status}, type="status_update")
        return {"messageId": message["id"], "status": status}, None

    def _get_messages(self, agent_id, spec, event):
        messages = self.message_hub.get_messages(agent_id, unread_only=True,
                                                 limit=spec.get("limit")).to_list()
        return {"count": len(messages), "messageIds": [m["id"] for m in messages]}, None
