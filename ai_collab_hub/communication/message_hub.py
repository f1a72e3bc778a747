"""
Message Hub for AI Collaboration Hub

Routes messages between agents, persists them through the storage
adapter and pushes them to live subscribers. Messages that cannot be
pushed stay queued until the recipient polls for them.
"""

import logging
import threading
import time
import uuid
from collections import Counter
from datetime import timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Union

from ..core.errors import InvalidArgument, NotFound
from ..core.locks import KeyedLock
from ..core.models import Message, Priority, utcnow
from ..storage.adapter import StorageAdapter

logger = logging.getLogger(__name__)

MESSAGES = "messages"
AGENTS = "agents"
BROADCAST = "*"

Channel = Callable[[Dict[str, Any]], None]


class MessageCursor:
    """
    Lazy view over one agent's inbox.

    Nothing is read until iteration starts, and every pass re-reads the
    store, so the cursor can be iterated again. A pass never goes past
    the last message that existed when the cursor was created. Messages
    are marked delivered to the agent as they are yielded; one evicted
    by retention after the pass started is skipped.
    """

    def __init__(self, hub: "MessageHub", agent_id: str, after_seq: int = 0,
                 unread_only: bool = False, message_type: Optional[str] = None,
                 limit: Optional[int] = None):
        self.hub = hub
        self.agent_id = agent_id
        self.after_seq = after_seq
        self.unread_only = unread_only
        self.message_type = message_type
        self.limit = limit
        self.until_seq = hub.last_seq

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        records = self.hub.storage.query(MESSAGES, {"recipients": self.agent_id})
        messages = sorted(
            (Message.model_validate(r) for r in records),
            key=lambda m: m.seq,
        )
        yielded = 0
        for message in messages:
            if message.seq <= self.after_seq or message.seq > self.until_seq:
                continue
            if self.message_type and message.type != self.message_type:
                continue
            if self.unread_only and message.is_delivered_to(self.agent_id):
                continue
            if self.limit is not None and yielded >= self.limit:
                return
            try:
                record = self.hub._mark_delivered(message.id, self.agent_id)
            except NotFound:
                continue
            yield record
            yielded += 1

    def to_list(self) -> List[Dict[str, Any]]:
        return list(self)


class MessageHub:
    """
    Message hub for inter-agent communication.

    Features:
    - Direct and broadcast messages, one stored record per message
    - Push delivery through a subscriber registry checked at send time
    - Durable queued retrieval through restartable inbox cursors
    - Per-recipient ordering by monotonic sequence number
    - Agent registry used for broadcast fan-out
    - Retention by age and count, evicted lazily on write
    """

    def __init__(self, storage: StorageAdapter, retention_days: int = 7,
                 max_messages: int = 10000, eviction_interval: int = 60,
                 stats_window: int = 86400):
        """
        Initialize message hub.

        Args:
            storage: Storage adapter used for persistence
            retention_days: Days to retain messages
            max_messages: Upper bound on stored messages
            eviction_interval: Minimum seconds between eviction passes
            stats_window: Default trailing window for stats, in seconds
        """
        self.storage = storage
        self.retention_days = retention_days
        self.max_messages = max_messages
        self.eviction_interval = eviction_interval
        self.stats_window = stats_window

        self._recipient_locks = KeyedLock()
        self._message_locks = KeyedLock()
        self._lock = threading.RLock()
        self._cleanup_lock = threading.Lock()
        self._subscribers: Dict[str, Channel] = {}
        self._last_cleanup = 0.0

        self._seq = max((r.get("seq", 0) for r in storage.query(MESSAGES)), default=0)

    @property
    def last_seq(self) -> int:
        with self._lock:
            return self._seq

    def _next_seq(self) -> int:
        with self._lock:
            self._seq += 1
            return self._seq

    # ------------------------------------------------------------------
    # Agent and subscriber registry
    # ------------------------------------------------------------------

    def register_agent(self, agent_id: str, name: Optional[str] = None,
                       capabilities: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Register or refresh an agent; broadcasts reach registered agents."""
        if not agent_id:
            raise InvalidArgument("agentId is required")
        now = utcnow().isoformat()
        try:
            record = self.storage.get(AGENTS, agent_id)
        except NotFound:
            record = {"agentId": agent_id, "registeredAt": now}
        if name is not None:
            record["name"] = name
        if capabilities is not None:
            record["capabilities"] = list(capabilities)
        record.setdefault("name", agent_id)
        record.setdefault("capabilities", [])
        record["lastSeen"] = now
        self.storage.put(AGENTS, agent_id, record)
        logger.info(f"Agent registered: {agent_id}")
        return record

    def unregister_agent(self, agent_id: str) -> bool:
        self.unsubscribe(agent_id)
        removed = self.storage.delete(AGENTS, agent_id)
        if removed:
            logger.info(f"Agent unregistered: {agent_id}")
        return removed

    def list_agents(self) -> List[Dict[str, Any]]:
        return self.storage.query(AGENTS)

    def is_registered(self, agent_id: str) -> bool:
        return self.storage.exists(AGENTS, agent_id)

    def subscribe(self, agent_id: str, channel: Channel):
        """
        Attach a live channel for an agent.

        The channel is called synchronously from ``send`` with the
        message dict and must not block. Raising from it drops the
        channel and leaves the message queued.
        """
        with self._lock:
            self._subscribers[agent_id] = channel
        logger.debug(f"Agent {agent_id} subscribed to messages")

    def unsubscribe(self, agent_id: str, channel: Optional[Channel] = None):
        with self._lock:
            current = self._subscribers.get(agent_id)
            if current is not None and (channel is None or current is channel):
                del self._subscribers[agent_id]

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, sender: str, to: str, payload: Any = None, type: str = "info",
             priority: Union[str, Priority] = Priority.NORMAL) -> Dict[str, Any]:
        """
        Send a message to one agent, or to every registered agent when
        ``to`` is ``"*"``.

        Returns:
            The stored message, including its delivery state
        """
        if not to:
            raise InvalidArgument("Recipient is required")
        try:
            priority = Priority(priority)
        except ValueError:
            raise InvalidArgument(f"Unknown priority: {priority}", priority=priority) from None

        if to == BROADCAST:
            recipients = sorted(
                a["agentId"] for a in self.list_agents() if a["agentId"] != sender
            )
        else:
            recipients = [to]

        with self._recipient_locks.hold_many(recipients):
            message = Message(
                id=uuid.uuid4().hex,
                seq=self._next_seq(),
                sender=sender or "anonymous",
                to=to,
                recipients=recipients,
                type=type or "info",
                priority=priority,
                payload=payload,
            )
            self.storage.put(MESSAGES, message.id, message.to_dict())
            self._push(message)

        logger.debug(f"Message sent: {message.id} from {message.sender} to {to}")
        self._maybe_cleanup()
        return self.get_message(message.id)

    def broadcast(self, sender: str, payload: Any = None, type: str = "broadcast",
                  priority: Union[str, Priority] = Priority.NORMAL) -> Dict[str, Any]:
        return self.send(sender, BROADCAST, payload, type=type, priority=priority)

    def _push(self, message: Message):
        data = message.to_dict()
        for recipient in message.recipients:
            with self._lock:
                channel = self._subscribers.get(recipient)
            if channel is None:
                continue
            try:
                channel(data)
            except Exception as e:
                logger.warning(f"Push to {recipient} failed, dropping channel: {e}")
                self.unsubscribe(recipient, channel)
                continue
            try:
                self._mark_delivered(message.id, recipient)
            except NotFound:
                return  # evicted while pushing
            logger.debug(f"Pushed message {message.id} to {recipient}")

    def _mark_delivered(self, message_id: str, agent_id: str) -> Dict[str, Any]:
        # eviction deletes under the same lock, so the write below never
        # brings back a deleted message
        with self._message_locks.hold(message_id):
            message = Message.model_validate(self.storage.get(MESSAGES, message_id))
            if agent_id in message.recipients and message.mark_delivered(agent_id):
                self.storage.put(MESSAGES, message.id, message.to_dict())
            return message.to_dict()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _resolve_since(self, since_id: Union[str, int, None]) -> int:
        if since_id is None or since_id == "":
            return 0
        if isinstance(since_id, int):
            return since_id
        # ids win over sequence numbers; a hex id can be all digits
        try:
            return self.storage.get(MESSAGES, since_id)["seq"]
        except NotFound:
            if since_id.isdigit():
                return int(since_id)
            raise NotFound("Message does not exist", messageId=since_id) from None

    def get_messages(self, agent_id: str, since_id: Union[str, int, None] = None,
                     unread_only: bool = False, message_type: Optional[str] = None,
                     limit: Optional[int] = None) -> MessageCursor:
        """
        Messages addressed to ``agent_id`` in send order.

        Args:
            agent_id: Recipient agent
            since_id: Message id or sequence number; only later messages are returned
            unread_only: Skip messages already delivered to the agent
            message_type: Optional type filter
            limit: Maximum messages per pass

        Returns:
            A lazy, restartable cursor
        """
        if not agent_id:
            raise InvalidArgument("agentId is required")
        if limit is not None and limit < 1:
            raise InvalidArgument("limit must be positive", limit=limit)
        return MessageCursor(self, agent_id, self._resolve_since(since_id),
                             unread_only, message_type, limit)

    def get_message(self, message_id: str) -> Dict[str, Any]:
        try:
            return self.storage.get(MESSAGES, message_id)
        except NotFound:
            raise NotFound("Message does not exist", messageId=message_id) from None

    def mark_read(self, agent_id: str,
                  message_ids: Optional[Sequence[str]] = None) -> int:
        """
        Mark messages delivered to an agent.

        With no ids, every message still unread by the agent is marked.

        Returns:
            Number of messages newly marked
        """
        if message_ids is None:
            records = self.storage.query(MESSAGES, {"recipients": agent_id})
            message_ids = [r["id"] for r in records if agent_id not in r.get("deliveredTo", [])]

        marked = 0
        for message_id in message_ids:
            record = self.get_message(message_id)
            if agent_id not in record.get("recipients", []):
                raise NotFound("Message not addressed to agent",
                               messageId=message_id, agentId=agent_id)
            if agent_id in record.get("deliveredTo", []):
                continue
            try:
                self._mark_delivered(message_id, agent_id)
            except NotFound:
                continue
            marked += 1
        return marked

    # ------------------------------------------------------------------
    # Statistics and retention
    # ------------------------------------------------------------------

    def stats(self, window_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Counts by type, priority and agent over a trailing window."""
        window = self.stats_window if window_seconds is None else window_seconds
        horizon = utcnow() - timedelta(seconds=window)

        messages = [Message.model_validate(r) for r in self.storage.query(MESSAGES)]
        recent = [m for m in messages if m.created_at >= horizon]

        by_recipient = Counter()
        for message in recent:
            by_recipient.update(message.recipients)

        return {
            "windowSeconds": window,
            "total": len(recent),
            "byType": dict(Counter(m.type for m in recent)),
            "byPriority": dict(Counter(m.priority.value for m in recent)),
            "bySender": dict(Counter(m.sender for m in recent)),
            "byRecipient": dict(by_recipient),
            "broadcasts": sum(1 for m in recent if m.to == BROADCAST),
            "undelivered": sum(1 for m in recent if not m.delivered),
            "stored": len(messages),
            "agents": self.storage.count(AGENTS),
            "subscribers": self.subscriber_count(),
        }

    def _maybe_cleanup(self):
        if time.monotonic() - self._last_cleanup < self.eviction_interval:
            return
        if not self._cleanup_lock.acquire(blocking=False):
            return
        try:
            self._last_cleanup = time.monotonic()
            self._evict()
        finally:
            self._cleanup_lock.release()

    def cleanup(self) -> int:
        """
        Evict messages past the retention horizon or over the count bound.

        Returns:
            Number of messages deleted
        """
        with self._cleanup_lock:
            self._last_cleanup = time.monotonic()
            return self._evict()

    def _evict(self) -> int:
        horizon = utcnow() - timedelta(days=self.retention_days)
        messages = sorted(
            (Message.model_validate(r) for r in self.storage.query(MESSAGES)),
            key=lambda m: m.seq,
        )
        expired = [m for m in messages if m.created_at < horizon]
        kept = [m for m in messages if m.created_at >= horizon]
        overflow = max(0, len(kept) - self.max_messages)
        doomed = expired + kept[:overflow]

        for message in doomed:
            with self._message_locks.hold(message.id):
                self.storage.delete(MESSAGES, message.id)
        if doomed:
            logger.info(f"Cleaned up {len(doomed)} old messages")
        return len(doomed)
