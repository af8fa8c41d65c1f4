# Test envelope creation, validation and the wire format
import json
import re
import datetime

import pydantic
import pytest

from colony.communication.protocol import (
    Envelope,
    MessageKind,
    MessageKindRegistry,
    MessageProtocol,
    requires,
)
from colony.config import Settings
from colony.errors import ValidationError


@pytest.fixture
def base_protocol(settings):
    return MessageProtocol(settings)


def test_created_messages_validate(base_protocol):
    """Every builder produces an envelope the protocol accepts"""
    messages = [
        base_protocol.create_request_message("alice", "bob", "plan", {"goal": "ship"}),
        base_protocol.create_response_message("bob", "alice", "req-1", {"ok": True}),
        base_protocol.create_response_message("bob", "alice", "req-1", None),
        base_protocol.create_error_message("bob", "alice", "req-1", "boom"),
        base_protocol.create_notification_message("alice", "topic:news", "started"),
        base_protocol.create_data_message("alice", "bob", "metrics", [1, 2, 3]),
        base_protocol.create_control_message("alice", "bob", "pause"),
    ]
    for message in messages:
        assert base_protocol.validate_message(message), base_protocol.explain(message)


def test_message_fields(base_protocol):
    message = base_protocol.create_message(
        "alice", "bob", MessageKind.REQUEST, {"action": "x", "params": {}},
        team_id="t1", role_id="lead", metadata={"trace": 1},
    )

    assert re.fullmatch(r"alice-\d+-\d{6}", message.id)
    assert message.kind == "request"
    assert message.protocol_version == "1.0"
    assert message.protocol_format == "json"
    assert message.team_id == "t1"
    assert message.role_id == "lead"
    assert message.metadata == {"trace": 1}
    assert message.timestamp.tzinfo is not None


def test_ids_are_unique(base_protocol):
    ids = {base_protocol.create_notification_message("a", "b", "e").id for _ in range(20)}
    assert len(ids) == 20


def test_envelope_is_immutable(base_protocol):
    message = base_protocol.create_notification_message("a", "b", "e")
    with pytest.raises(pydantic.ValidationError):
        message.sender = "mallory"


def test_serialize_round_trip(base_protocol):
    message = base_protocol.create_request_message(
        "alice", "bob", "analyze", {"files": ["a.py"], "depth": 2}, team_id="t1"
    )

    restored = base_protocol.deserialize_message(base_protocol.serialize_message(message))

    assert restored == message
    assert restored.timestamp == message.timestamp


def test_wire_names(base_protocol):
    message = base_protocol.create_notification_message("a", "b", "e", team_id="t1", role_id="r1")
    wire = json.loads(base_protocol.serialize_message(message))

    assert wire["protocolVersion"] == "1.0"
    assert wire["protocolFormat"] == "json"
    assert wire["teamId"] == "t1"
    assert wire["roleId"] == "r1"
    assert "protocol_version" not in wire


def test_deserialize_rejects_garbage(base_protocol):
    with pytest.raises(ValidationError):
        base_protocol.deserialize_message("{not json")
    with pytest.raises(ValidationError):
        base_protocol.deserialize_message(json.dumps({"id": "x"}))


def test_explain_reasons(base_protocol):
    valid = base_protocol.create_request_message("alice", "bob", "plan")
    assert base_protocol.explain(valid) is None

    assert "sender" in base_protocol.explain(valid.model_copy(update={"sender": ""}))
    assert "version" in base_protocol.explain(valid.model_copy(update={"protocol_version": "0.9"}))
    assert "Unknown message kind" in base_protocol.explain(valid.model_copy(update={"kind": "gossip"}))

    no_action = valid.model_copy(update={"content": {"params": {}}})
    assert "Content does not match" in base_protocol.explain(no_action)
    assert base_protocol.explain("not an envelope") is not None


def test_explain_accepts_wire_mapping(base_protocol):
    message = base_protocol.create_control_message("alice", "bob", "stop")
    wire = json.loads(base_protocol.serialize_message(message))

    assert base_protocol.validate_message(wire)
    assert not base_protocol.validate_message({"sender": "alice"})


def test_version_comes_from_settings():
    protocol = MessageProtocol(Settings(protocol={"version": "2.0"}))
    message = protocol.create_notification_message("a", "b", "e")

    assert message.protocol_version == "2.0"
    assert protocol.validate_message(message)
    assert not MessageProtocol(Settings()).validate_message(message)


def test_request_id_property(base_protocol):
    response = base_protocol.create_response_message("b", "a", "req-9", 1)
    request = base_protocol.create_request_message("a", "b", "x")

    assert response.request_id == "req-9"
    assert request.request_id is None


class TestKindRegistry:

    def test_register_custom_kind(self, base_protocol):
        base_protocol.kinds.register("heartbeat", requires("seq"))

        good = base_protocol.create_message("a", "b", "heartbeat", {"seq": 1})
        bad = base_protocol.create_message("a", "b", "heartbeat", {})
        assert base_protocol.validate_message(good)
        assert not base_protocol.validate_message(bad)

    def test_register_twice_needs_replace(self):
        kinds = MessageKindRegistry.with_base_kinds()
        with pytest.raises(ValueError):
            kinds.register(MessageKind.REQUEST, requires("action"))
        kinds.register(MessageKind.REQUEST, requires("action"), replace=True)
        assert kinds.validate("request", {"action": "x"})

    def test_extend_layers_rules(self):
        kinds = MessageKindRegistry.with_base_kinds()
        kinds.extend(MessageKind.REQUEST, lambda content: content["action"] != "forbidden")

        assert kinds.validate("request", {"action": "ok", "params": {}})
        assert not kinds.validate("request", {"action": "forbidden", "params": {}})
        assert not kinds.validate("request", {"params": {}})

    def test_unregister(self):
        kinds = MessageKindRegistry.with_base_kinds()
        assert kinds.unregister("control")
        assert not kinds.unregister("control")
        assert "control" not in kinds.kinds()

    def test_copy_is_independent(self):
        kinds = MessageKindRegistry.with_base_kinds()
        clone = kinds.copy()
        clone.register("extra", requires())

        assert clone.is_registered("extra")
        assert not kinds.is_registered("extra")

    def test_failing_validator_is_a_rejection(self, base_protocol):
        def explode(content):
            raise KeyError("missing")

        base_protocol.kinds.register("fragile", explode)
        message = base_protocol.create_message("a", "b", "fragile", {})

        assert "failed" in base_protocol.explain(message)


def test_envelope_accepts_field_names_and_aliases():
    now = datetime.datetime.now(datetime.timezone.utc)
    by_alias = Envelope.model_validate({
        "id": "x", "sender": "a", "recipient": "b", "kind": "data",
        "timestamp": now.isoformat(), "protocolVersion": "1.0", "teamId": "t",
    })
    by_name = Envelope(id="x", sender="a", recipient="b", kind="data",
                       timestamp=now, protocol_version="1.0", team_id="t")

    assert by_alias == by_name
