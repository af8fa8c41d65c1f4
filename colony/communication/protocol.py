"""
Message protocol definitions for inter-agent communication.

Envelopes are immutable pydantic models. The set of message kinds and the
content rules attached to each kind live in an open registry, so higher layers
(see ``collaboration.py``) can add kinds without touching this module.
"""

from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError
import datetime
import logging
import random

from colony.config import Settings, get_settings
from colony.errors import ValidationError

logger = logging.getLogger(__name__)

ContentValidator = Callable[[Mapping[str, Any]], bool]

TOPIC_PREFIX = "topic:"


class MessageKind(str, Enum):
    """Kinds every protocol instance understands out of the box."""
    REQUEST = "request"              # Request for action/information
    RESPONSE = "response"            # Response to a request
    ERROR = "error"                  # Request failed
    NOTIFICATION = "notification"    # One-way event
    DATA = "data"                    # Typed data payload
    CONTROL = "control"              # Command for the receiving agent


def requires(*required: str, present: Iterable[str] = ()) -> ContentValidator:
    """
    Build a content validator.

    Args:
        required: Keys that must exist and hold a truthy value
        present: Keys that must exist but may hold any value (including None)

    Returns:
        Validator returning True when the content satisfies both lists
    """
    present = tuple(present)

    def _validator(content: Mapping[str, Any]) -> bool:
        if any(not content.get(key) for key in required):
            return False
        return all(key in content for key in present)

    return _validator


def any_of(*validators: ContentValidator) -> ContentValidator:
    """Content is valid when at least one validator accepts it."""
    def _validator(content: Mapping[str, Any]) -> bool:
        return any(v(content) for v in validators)
    return _validator


def all_of(*validators: ContentValidator) -> ContentValidator:
    """Content is valid when every validator accepts it."""
    def _validator(content: Mapping[str, Any]) -> bool:
        return all(v(content) for v in validators)
    return _validator


BASE_KINDS: Dict[str, ContentValidator] = {
    MessageKind.REQUEST.value: requires("action", present=("params",)),
    MessageKind.RESPONSE.value: requires("requestId", present=("result",)),
    MessageKind.ERROR.value: requires("requestId", "error"),
    MessageKind.NOTIFICATION.value: requires("event", present=("data",)),
    MessageKind.DATA.value: requires("dataType", present=("payload",)),
    MessageKind.CONTROL.value: requires("command", present=("params",)),
}


class MessageKindRegistry:
    """
    Registry of message kinds and their content validators.

    Registering an existing kind replaces nothing unless ``replace`` is set;
    use ``extend`` to layer an additional rule on top of an existing kind.
    """

    def __init__(self, validators: Optional[Mapping[str, ContentValidator]] = None):
        self._validators: Dict[str, ContentValidator] = dict(validators or {})

    @classmethod
    def with_base_kinds(cls) -> "MessageKindRegistry":
        return cls(BASE_KINDS)

    def register(self, kind: Union[str, Enum], validator: ContentValidator, replace: bool = False) -> None:
        name = _kind_name(kind)
        if name in self._validators and not replace:
            raise ValueError(f"Message kind '{name}' is already registered")
        self._validators[name] = validator

    def extend(self, kind: Union[str, Enum], validator: ContentValidator) -> None:
        """Require ``validator`` in addition to the kind's current rule."""
        name = _kind_name(kind)
        current = self._validators.get(name)
        self._validators[name] = all_of(current, validator) if current else validator

    def unregister(self, kind: Union[str, Enum]) -> bool:
        return self._validators.pop(_kind_name(kind), None) is not None

    def is_registered(self, kind: Union[str, Enum]) -> bool:
        return _kind_name(kind) in self._validators

    def kinds(self) -> List[str]:
        return list(self._validators)

    def validate(self, kind: Union[str, Enum], content: Mapping[str, Any]) -> bool:
        validator = self._validators.get(_kind_name(kind))
        if validator is None:
            return False
        return bool(validator(content))

    def copy(self) -> "MessageKindRegistry":
        return MessageKindRegistry(self._validators)


class Envelope(BaseModel):
    """
    Standard envelope for inter-agent communication.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    # Message identification
    id: str = Field(..., description="Unique id derived from sender, timestamp and randomness")

    # Routing information
    sender: str = Field(..., description="Sending agent id")
    recipient: str = Field(..., description="Agent id, 'topic:<name>', 'team:<id>' or 'role:<id>'")

    # Message content
    kind: str = Field(..., description="Registered message kind")
    content: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific content")

    # Metadata
    timestamp: datetime.datetime = Field(..., description="Creation instant (UTC)")
    protocol_version: str = Field(..., alias="protocolVersion")
    protocol_format: str = Field("json", alias="protocolFormat")
    team_id: Optional[str] = Field(default=None, alias="teamId")
    role_id: Optional[str] = Field(default=None, alias="roleId")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_topic(self) -> bool:
        return self.recipient.startswith(TOPIC_PREFIX)

    @property
    def request_id(self) -> Optional[str]:
        """Id of the request this envelope answers, if it is a response or error."""
        if self.kind in (MessageKind.RESPONSE.value, MessageKind.ERROR.value):
            return self.content.get("requestId")
        return None


class MessageProtocol:
    """
    Builds, validates and (de)serializes envelopes.

    Args:
        settings: Protocol settings; ``get_settings()`` when omitted
        kinds: Kind registry; a fresh registry of the base kinds when omitted
    """

    def __init__(self, settings: Optional[Settings] = None, kinds: Optional[MessageKindRegistry] = None):
        self.settings = settings or get_settings()
        self.kinds = kinds or MessageKindRegistry.with_base_kinds()

    @property
    def version(self) -> str:
        return self.settings.protocol.version

    def create_message(
        self,
        sender: str,
        recipient: str,
        kind: Union[str, Enum],
        content: Optional[Mapping[str, Any]] = None,
        team_id: Optional[str] = None,
        role_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Envelope:
        """
        Create an envelope stamped with a fresh id, the current time and the
        configured protocol version and format.
        """
        timestamp = datetime.datetime.now(datetime.timezone.utc)
        return Envelope(
            id=self._generate_message_id(sender, timestamp),
            sender=sender,
            recipient=recipient,
            kind=_kind_name(kind),
            content=dict(content or {}),
            timestamp=timestamp,
            protocol_version=self.settings.protocol.version,
            protocol_format=self.settings.protocol.format,
            team_id=team_id,
            role_id=role_id,
            metadata=dict(metadata or {}),
        )

    def explain(self, message: Union[Envelope, Mapping[str, Any]]) -> Optional[str]:
        """
        Check a message against the protocol.

        Returns:
            None when the message is valid, otherwise the rejection reason
        """
        if not isinstance(message, Envelope):
            if not isinstance(message, Mapping):
                return f"Expected an envelope, got {type(message).__name__}"
            try:
                message = Envelope.model_validate(message)
            except PydanticValidationError as e:
                return f"Malformed envelope: {e.errors()[0]['loc']} {e.errors()[0]['msg']}"

        for field in ("id", "sender", "recipient", "kind"):
            if not getattr(message, field):
                return f"Missing required field '{field}'"

        if message.protocol_version != self.version:
            return (
                f"Protocol version mismatch: got '{message.protocol_version}', "
                f"expected '{self.version}'"
            )

        if not self.kinds.is_registered(message.kind):
            return f"Unknown message kind '{message.kind}'"

        try:
            if not self.kinds.validate(message.kind, message.content):
                return f"Content does not match kind '{message.kind}'"
        except Exception as e:
            logger.error("Content validator for '%s' failed: %s", message.kind, e)
            return f"Content validator for '{message.kind}' failed: {e}"

        return None

    def validate_message(self, message: Union[Envelope, Mapping[str, Any]]) -> bool:
        return self.explain(message) is None

    def serialize_message(self, message: Envelope) -> str:
        """Serialize an envelope to its JSON wire form."""
        return message.model_dump_json(by_alias=True)

    def deserialize_message(self, serialized: Union[str, bytes]) -> Envelope:
        """
        Rebuild an envelope from its JSON wire form.

        Raises:
            ValidationError: If the text is not a well-formed envelope
        """
        try:
            return Envelope.model_validate_json(serialized)
        except PydanticValidationError as e:
            raise ValidationError(f"Cannot deserialize message: {e}") from e

    # Convenience builders

    def create_request_message(self, sender: str, recipient: str, action: str,
                               params: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.REQUEST, {
            "action": action,
            "params": dict(params or {}),
        }, **options)

    def create_response_message(self, sender: str, recipient: str, request_id: str,
                                result: Any, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.RESPONSE, {
            "requestId": request_id,
            "result": result,
        }, **options)

    def create_error_message(self, sender: str, recipient: str, request_id: str, error: str,
                             details: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.ERROR, {
            "requestId": request_id,
            "error": error,
            "details": dict(details or {}),
        }, **options)

    def create_notification_message(self, sender: str, recipient: str, event: str,
                                    data: Any = None, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.NOTIFICATION, {
            "event": event,
            "data": data,
        }, **options)

    def create_data_message(self, sender: str, recipient: str, data_type: str,
                            payload: Any, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.DATA, {
            "dataType": data_type,
            "payload": payload,
        }, **options)

    def create_control_message(self, sender: str, recipient: str, command: str,
                               params: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.CONTROL, {
            "command": command,
            "params": dict(params or {}),
        }, **options)

    def _generate_message_id(self, sender: str, timestamp: datetime.datetime) -> str:
        millis = int(timestamp.timestamp() * 1000)
        return f"{sender}-{millis}-{random.randint(0, 999999):06d}"


def _kind_name(kind: Union[str, Enum]) -> str:
    return kind.value if isinstance(kind, Enum) else kind
