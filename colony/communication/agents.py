"""
Agent registry and correlated request/response messaging.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional
from pydantic import BaseModel, Field
import asyncio
import datetime
import logging
import threading

from colony.config import Settings
from colony.errors import NotFoundError, RequestError, RequestTimeoutError, StateError
from colony.utils import utcnow
from .broker import MessageBroker
from .protocol import Envelope, MessageKind, MessageProtocol

logger = logging.getLogger(__name__)

AgentHandler = Callable[[Envelope], Any]


class AgentRecord(BaseModel):
    """Liveness record of a registered agent."""
    id: str
    info: Dict[str, Any] = Field(default_factory=dict)
    capabilities: Dict[str, float] = Field(default_factory=dict, description="capability -> level")
    status: str = "registered"
    registered_at: datetime.datetime = Field(default_factory=utcnow)
    last_active: datetime.datetime = Field(default_factory=utcnow)


class RequestState(Enum):
    WAITING = "waiting"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


class PendingRequest:
    """
    An in-flight request awaiting exactly one settlement.

    The first call to ``settle`` moves the request out of WAITING and
    completes its future; every later call returns False and changes nothing.
    """

    def __init__(self, request_id: str, loop: asyncio.AbstractEventLoop, timeout_ms: int):
        self.request_id = request_id
        self.timeout_ms = timeout_ms
        self.created_at = utcnow()
        self.deadline = self.created_at + datetime.timedelta(milliseconds=timeout_ms)
        self.state = RequestState.WAITING
        self.future: asyncio.Future = loop.create_future()
        self._loop = loop
        self._timer: Optional[asyncio.TimerHandle] = None
        self._guard = threading.Lock()

    def arm(self, on_timeout: Callable[[], Any]) -> None:
        self._timer = self._loop.call_later(self.timeout_ms / 1000, on_timeout)

    def settle(self, state: RequestState, value: Any) -> bool:
        """
        Args:
            state: RESOLVED (value is the result), REJECTED or TIMED_OUT
                (value is the exception)

        Returns:
            True if this call settled the request
        """
        if state is RequestState.WAITING:
            raise ValueError("Cannot settle a request back to WAITING")

        with self._guard:
            if self.state is not RequestState.WAITING:
                return False
            self.state = state

        self._call_in_loop(self._complete, state, value)
        return True

    def discard(self) -> None:
        """Drop the timer of a request nobody is waiting for any more."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _complete(self, state: RequestState, value: Any) -> None:
        self.discard()
        if self.future.done():
            return
        if state is RequestState.RESOLVED:
            self.future.set_result(value)
        else:
            self.future.set_exception(value)

    def _call_in_loop(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            fn(*args)
        else:
            self._loop.call_soon_threadsafe(fn, *args)


class AgentCommunication:
    """
    Tracks registered agents and carries their messages over the broker.

    Every agent is subscribed to its own direct channel and to the broadcast
    topic. Response and error envelopes that answer a pending request settle
    it; everything else goes to the agent's own handler, if it has one.
    """

    def __init__(self, protocol: MessageProtocol, broker: MessageBroker, settings: Optional[Settings] = None):
        self.protocol = protocol
        self.broker = broker
        self.settings = settings or protocol.settings
        self.agents: Dict[str, AgentRecord] = {}
        self._handlers: Dict[str, AgentHandler] = {}
        self._pending: Dict[str, PendingRequest] = {}

    @property
    def broadcast_topic(self) -> str:
        return self.settings.communication.broadcast_topic

    # Registry

    def register_agent(self, agent_id: str, info: Optional[Mapping[str, Any]] = None,
                       handler: Optional[AgentHandler] = None,
                       capabilities: Optional[Mapping[str, float]] = None) -> AgentRecord:
        """
        Register an agent and subscribe it to its direct channel and the
        broadcast topic.

        Raises:
            StateError: If the id is already registered
        """
        if agent_id in self.agents:
            raise StateError(f"Agent {agent_id} is already registered")

        logger.info("Registering agent %s", agent_id)
        record = AgentRecord(id=agent_id, info=dict(info or {}), capabilities=dict(capabilities or {}))
        self.agents[agent_id] = record
        if handler is not None:
            self._handlers[agent_id] = handler

        def _on_message(message: Envelope) -> None:
            self._handle_agent_message(agent_id, message)

        self.broker.subscribe(agent_id, agent_id, _on_message)
        self.broker.subscribe(agent_id, self.broadcast_topic, _on_message)
        return record

    def unregister_agent(self, agent_id: str) -> bool:
        if agent_id not in self.agents:
            logger.warning("Agent %s not registered", agent_id)
            return False

        logger.info("Unregistering agent %s", agent_id)
        self.broker.unsubscribe(agent_id, agent_id)
        self.broker.unsubscribe(agent_id, self.broadcast_topic)
        del self.agents[agent_id]
        self._handlers.pop(agent_id, None)
        return True

    def set_handler(self, agent_id: str, handler: Optional[AgentHandler]) -> None:
        self._require_registered(agent_id)
        if handler is None:
            self._handlers.pop(agent_id, None)
        else:
            self._handlers[agent_id] = handler

    def is_registered(self, agent_id: str) -> bool:
        return agent_id in self.agents

    def get_agents(self) -> List[AgentRecord]:
        return list(self.agents.values())

    def get_agent_info(self, agent_id: str) -> AgentRecord:
        return self._require_registered(agent_id)

    def update_agent_capabilities(self, agent_id: str, capabilities: Mapping[str, float]) -> AgentRecord:
        """Merge ``capabilities`` into the agent's capability levels."""
        record = self._require_registered(agent_id)
        record.capabilities.update(capabilities)
        return record

    def get_agent_capabilities(self, agent_id: str) -> Dict[str, float]:
        return dict(self._require_registered(agent_id).capabilities)

    def find_agents_by_capability(self, capability: str, min_level: float = 0.0) -> List[str]:
        """Ids of agents having ``capability`` at ``min_level`` or above."""
        return [
            agent_id for agent_id, record in self.agents.items()
            if capability in record.capabilities and record.capabilities[capability] >= min_level
        ]

    # Messaging

    def send_message(self, from_agent_id: str, to_agent_id: str, kind: Any,
                     content: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        """
        Send a fire-and-forget message.

        Raises:
            NotFoundError: If the sender is not registered
            ValidationError: If the envelope is rejected by the broker
        """
        self._require_registered(from_agent_id)
        logger.debug("Sending message from %s to %s", from_agent_id, to_agent_id)

        message = self.protocol.create_message(from_agent_id, to_agent_id, kind, content, **options)
        self.broker.publish_message(message)
        self._touch(from_agent_id)
        return message

    def broadcast_message(self, from_agent_id: str, kind: Any,
                          content: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        """Send a message to every agent listening on the broadcast topic."""
        return self.send_message(from_agent_id, self.broadcast_topic, kind, content, **options)

    async def send_request(self, from_agent_id: str, to_agent_id: str, action: str,
                           params: Optional[Mapping[str, Any]] = None,
                           timeout_ms: Optional[int] = None, **options) -> Any:
        """
        Send a request and wait for the correlated response.

        Args:
            from_agent_id: Registered sender
            to_agent_id: Recipient id (or any routable address)
            action: Requested action
            params: Action parameters
            timeout_ms: Deadline; ``communication.request_timeout_ms`` when omitted

        Returns:
            The ``result`` carried by the matching response

        Raises:
            RequestError: If the request is answered with an error envelope
            RequestTimeoutError: If nothing settles it before the deadline
            ValueError: If ``timeout_ms`` is not positive
        """
        self._require_registered(from_agent_id)
        logger.debug("Sending request from %s to %s: %s", from_agent_id, to_agent_id, action)

        if timeout_ms is None:
            timeout_ms = self.settings.communication.request_timeout_ms
        elif timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

        message = self.protocol.create_request_message(from_agent_id, to_agent_id, action, params, **options)

        pending = PendingRequest(message.id, asyncio.get_running_loop(), timeout_ms)
        self._pending[message.id] = pending
        pending.arm(lambda: self._expire(message.id))

        try:
            self.broker.publish_message(message)
            self._touch(from_agent_id)
            return await pending.future
        finally:
            # Settled, failed to publish, or the waiting task was cancelled
            if self._pending.get(message.id) is pending:
                del self._pending[message.id]
            pending.discard()

    def send_response(self, from_agent_id: str, request: Envelope, result: Any, **options) -> Envelope:
        """Answer ``request`` with a response envelope addressed to its sender."""
        self._require_registered(from_agent_id)
        message = self.protocol.create_response_message(from_agent_id, request.sender, request.id, result, **options)
        self.broker.publish_message(message)
        self._touch(from_agent_id)
        return message

    def send_error(self, from_agent_id: str, request: Envelope, error: str,
                   details: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        """Answer ``request`` with an error envelope addressed to its sender."""
        self._require_registered(from_agent_id)
        message = self.protocol.create_error_message(from_agent_id, request.sender, request.id, error,
                                                     details, **options)
        self.broker.publish_message(message)
        self._touch(from_agent_id)
        return message

    def pending_request_ids(self) -> List[str]:
        return list(self._pending)

    def get_pending_request(self, request_id: str) -> Optional[PendingRequest]:
        return self._pending.get(request_id)

    def shutdown(self) -> None:
        """Unregister every agent and stop the timers of pending requests."""
        for agent_id in list(self.agents):
            self.unregister_agent(agent_id)
        for pending in list(self._pending.values()):
            pending.discard()
        self._pending.clear()

    # Internals

    def _handle_agent_message(self, agent_id: str, message: Envelope) -> None:
        record = self.agents.get(agent_id)
        if record is not None:
            record.last_active = utcnow()

        if message.kind == MessageKind.RESPONSE.value:
            if self._settle(message.content["requestId"], RequestState.RESOLVED, message.content.get("result")):
                return
        elif message.kind == MessageKind.ERROR.value:
            request_id = message.content["requestId"]
            error = RequestError(request_id, message.content.get("error"), message.content.get("details"))
            if self._settle(request_id, RequestState.REJECTED, error):
                return

        handler = self._handlers.get(agent_id)
        if handler is not None:
            handler(message)

    def _settle(self, request_id: str, state: RequestState, value: Any) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.warning("No pending request found for %s", request_id)
            return False
        settled = pending.settle(state, value)
        if settled:
            logger.debug("Request %s %s", request_id, state.value)
        return settled

    def _expire(self, request_id: str) -> None:
        pending = self._pending.get(request_id)
        if pending is None:
            return
        self._settle(request_id, RequestState.TIMED_OUT, RequestTimeoutError(request_id, pending.timeout_ms))

    def _require_registered(self, agent_id: str) -> AgentRecord:
        record = self.agents.get(agent_id)
        if record is None:
            raise NotFoundError(f"Agent {agent_id} not registered")
        return record

    def _touch(self, agent_id: str) -> None:
        record = self.agents.get(agent_id)
        if record is not None:
            record.last_active = utcnow()
