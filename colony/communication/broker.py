"""
Message broker for routing inter-agent communications.
"""

from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union
from collections import defaultdict, deque
from dataclasses import dataclass, field
import datetime
import logging
import threading

from colony.config import Settings
from colony.errors import ValidationError
from .protocol import Envelope, MessageProtocol, TOPIC_PREFIX
from .monitor import MessageMonitor, MessageStatus

logger = logging.getLogger(__name__)

Handler = Callable[[Envelope], Any]
Resolver = Callable[[Envelope], Iterable[str]]


@dataclass
class Subscription:
    """One (subscriber, topic, handler) registration."""
    subscriber_id: str
    topic: str
    handler: Handler
    created_at: datetime.datetime = field(default_factory=datetime.datetime.now)


@dataclass
class QueuedMessage:
    message: Envelope
    queued_at: datetime.datetime = field(default_factory=datetime.datetime.now)


class MessageBroker:
    """
    In-process broker routing envelopes between agents.

    Handles:
    - Topic fan-out (``topic:<name>`` recipients) in subscription order
    - Direct delivery to every subscription of an agent id, queueing while
      the agent has none
    - Prefix resolvers (``team:``, ``role:``) that expand to agent ids
    - Handler error isolation, statistics and history

    All handlers of one publish run to completion before ``publish_message``
    returns. A re-entrant lock guards the tables, so handlers may publish or
    (un)subscribe while being invoked.
    """

    def __init__(self, protocol: MessageProtocol, settings: Optional[Settings] = None,
                 monitor: Optional[MessageMonitor] = None):
        self.protocol = protocol
        self.settings = settings or protocol.settings
        self.monitor = monitor or MessageMonitor(log_dir=self.settings.log_dir)

        # topic -> subscriptions in registration order
        self._topics: Dict[str, List[Subscription]] = defaultdict(list)
        # subscriber -> topic -> subscription
        self._subscribers: Dict[str, Dict[str, Subscription]] = defaultdict(dict)

        # Undeliverable direct messages per recipient
        self._queues: Dict[str, Deque[QueuedMessage]] = {}
        self._max_queue_size = self.settings.broker.max_queue_size

        self._resolvers: Dict[str, Resolver] = {}

        # Message history for debugging
        self._history: Deque[Envelope] = deque(maxlen=self.settings.broker.max_history_size)

        self._lock = threading.RLock()

        # Statistics
        self._stats = {
            "messages_published": 0,
            "messages_rejected": 0,
            "messages_delivered": 0,
            "messages_queued": 0,
            "messages_evicted": 0,
            "handler_errors": 0,
        }

    # Subscriptions

    def subscribe(self, subscriber_id: str, topic: str, handler: Handler) -> int:
        """
        Subscribe ``subscriber_id`` to ``topic`` and flush its queued messages.

        Args:
            subscriber_id: Subscribing agent id
            topic: ``topic:<name>`` for pub-sub, or the subscriber's own id
                for its direct channel. Envelopes addressed to the subscriber
                id reach all of its subscriptions.
            handler: Called with every envelope routed to this subscription

        Returns:
            Number of queued messages redelivered
        """
        with self._lock:
            existing = self._subscribers[subscriber_id].get(topic)
            if existing is not None:
                existing.handler = handler
                logger.debug("Replaced handler of %s on %s", subscriber_id, topic)
            else:
                subscription = Subscription(subscriber_id, topic, handler)
                self._topics[topic].append(subscription)
                self._subscribers[subscriber_id][topic] = subscription
                logger.debug("Subscribed %s to %s", subscriber_id, topic)

            return self._flush_queue(subscriber_id)

    def unsubscribe(self, subscriber_id: str, topic: str) -> bool:
        """
        Remove exactly one subscription; every other subscription to the same
        topic keeps its place in the delivery order.
        """
        with self._lock:
            subscription = self._subscribers.get(subscriber_id, {}).pop(topic, None)
            if subscription is None:
                logger.warning("Subscription %s:%s not found", subscriber_id, topic)
                return False

            listeners = self._topics[topic]
            for index, candidate in enumerate(listeners):
                if candidate is subscription:
                    del listeners[index]
                    break

            if not listeners:
                del self._topics[topic]
            if not self._subscribers[subscriber_id]:
                del self._subscribers[subscriber_id]

            logger.debug("Unsubscribed %s from %s", subscriber_id, topic)
            return True

    def get_subscriptions(self, subscriber_id: str) -> List[Dict[str, Any]]:
        """Get all subscriptions held by a subscriber."""
        with self._lock:
            return [
                {"topic": s.topic, "timestamp": s.created_at}
                for s in self._subscribers.get(subscriber_id, {}).values()
            ]

    def get_subscribers(self, topic: str) -> List[str]:
        """Get subscriber ids of a topic in delivery order."""
        with self._lock:
            return [s.subscriber_id for s in self._topics.get(topic, [])]

    # Resolvers

    def register_resolver(self, prefix: str, resolver: Resolver) -> None:
        """
        Route recipients starting with ``prefix`` through ``resolver``, which
        maps the envelope to the agent ids that should receive it directly.
        """
        if prefix == TOPIC_PREFIX:
            raise ValueError(f"'{TOPIC_PREFIX}' is reserved for pub-sub topics")
        with self._lock:
            self._resolvers[prefix] = resolver

    def unregister_resolver(self, prefix: str) -> bool:
        with self._lock:
            return self._resolvers.pop(prefix, None) is not None

    # Publishing

    def publish_message(self, message: Union[Envelope, Mapping[str, Any]]) -> int:
        """
        Route a message to its subscribers.

        Args:
            message: Envelope (or its mapping form) to route

        Returns:
            Number of handlers invoked

        Raises:
            ValidationError: If the message does not conform to the protocol
        """
        reason = self.protocol.explain(message)
        if reason is not None:
            self._stats["messages_rejected"] += 1
            if isinstance(message, Envelope):
                self.monitor.record_event(message.id, MessageStatus.REJECTED, "Rejected by protocol", error=reason)
            logger.warning("Rejected message: %s", reason)
            raise ValidationError(reason)

        if not isinstance(message, Envelope):
            message = Envelope.model_validate(message)

        with self._lock:
            self.monitor.start_trace(message.id, message.sender, message.recipient, message.kind)
            self._history.append(message)
            self._stats["messages_published"] += 1

            logger.debug("Publishing %s from %s to %s", message.kind, message.sender, message.recipient)

            if message.is_topic:
                return self._publish_to_topic(message)

            resolver = self._resolver_for(message.recipient)
            if resolver is not None:
                return self._publish_resolved(message, resolver)

            return self._publish_to_direct(message, message.recipient)

    def _publish_to_topic(self, message: Envelope) -> int:
        listeners = list(self._topics.get(message.recipient, ()))
        if not listeners:
            self.monitor.record_event(message.id, MessageStatus.NO_SUBSCRIBERS,
                                      f"No subscribers on {message.recipient}")
            return 0

        for subscription in listeners:
            self._invoke(subscription, message)
        return len(listeners)

    def _publish_resolved(self, message: Envelope, resolver: Resolver) -> int:
        recipients = list(dict.fromkeys(resolver(message)))
        if not recipients:
            self.monitor.record_event(message.id, MessageStatus.NO_SUBSCRIBERS,
                                      f"{message.recipient} resolved to no agents")
            return 0

        return sum(self._publish_to_direct(message, recipient) for recipient in recipients)

    def _publish_to_direct(self, message: Envelope, recipient: str) -> int:
        listeners = self._direct_listeners(recipient)
        if not listeners:
            self._queue_message(recipient, message)
            return 0

        for subscription in listeners:
            self._invoke(subscription, message)
        return len(listeners)

    def _direct_listeners(self, recipient: str) -> List[Subscription]:
        # every live subscription of the recipient, one per distinct handler
        seen = set()
        listeners = []
        for subscription in self._subscribers.get(recipient, {}).values():
            if id(subscription.handler) in seen:
                continue
            seen.add(id(subscription.handler))
            listeners.append(subscription)
        return listeners

    def _invoke(self, subscription: Subscription, message: Envelope) -> bool:
        # each handler gets its own copy; history and queues keep the original
        try:
            subscription.handler(message.model_copy(deep=True))
        except Exception as e:
            self._stats["handler_errors"] += 1
            logger.exception(
                "Error in handler of %s on %s for message %s",
                subscription.subscriber_id, subscription.topic, message.id
            )
            self.monitor.record_event(
                message.id,
                MessageStatus.FAILED,
                f"Handler of {subscription.subscriber_id} raised",
                error=str(e)
            )
            return False

        self._stats["messages_delivered"] += 1
        self.monitor.record_event(
            message.id,
            MessageStatus.DELIVERED,
            f"Delivered to {subscription.subscriber_id} via {subscription.topic}"
        )
        return True

    # Queueing

    def _queue_message(self, recipient: str, message: Envelope) -> None:
        queue = self._queues.setdefault(recipient, deque())
        if len(queue) >= self._max_queue_size:
            evicted = queue.popleft()
            self._stats["messages_evicted"] += 1
            self.monitor.record_event(
                evicted.message.id,
                MessageStatus.EVICTED,
                f"Evicted from full queue of {recipient}"
            )
            logger.warning("Queue for %s full; evicted message %s", recipient, evicted.message.id)

        queue.append(QueuedMessage(message))
        self._stats["messages_queued"] += 1
        self.monitor.record_event(message.id, MessageStatus.QUEUED, f"Queued for {recipient}")
        logger.debug("Queued message %s for %s (%d waiting)", message.id, recipient, len(queue))

    def _flush_queue(self, subscriber_id: str) -> int:
        pending = self._queues.pop(subscriber_id, None)
        if not pending:
            return 0

        logger.debug("Redelivering %d queued messages to %s", len(pending), subscriber_id)
        for item in pending:
            self.monitor.record_event(item.message.id, MessageStatus.FLUSHED,
                                      f"Redelivering to {subscriber_id}")
            self._publish_to_direct(item.message, subscriber_id)
        return len(pending)

    def queued_messages(self, recipient: str) -> List[Envelope]:
        """Get messages waiting for ``recipient``, oldest first."""
        with self._lock:
            return [item.message for item in self._queues.get(recipient, ())]

    def _resolver_for(self, recipient: str) -> Optional[Resolver]:
        for prefix, resolver in self._resolvers.items():
            if recipient.startswith(prefix):
                return resolver
        return None

    # Introspection

    def get_stats(self) -> Dict[str, Any]:
        """Get broker statistics."""
        with self._lock:
            return {
                **self._stats,
                "topics": len(self._topics),
                "subscribers": len(self._subscribers),
                "queued_messages": sum(len(q) for q in self._queues.values()),
                "message_history_size": len(self._history),
            }

    def get_history(self, limit: Optional[int] = None) -> List[Envelope]:
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit else history

    def shutdown(self) -> None:
        """Shutdown the message broker."""
        with self._lock:
            self._topics.clear()
            self._subscribers.clear()
            self._queues.clear()
            self._resolvers.clear()
            self._history.clear()
