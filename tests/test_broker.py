# Test message routing, queueing and handler isolation in the broker
import json

import pytest

from colony.communication.broker import MessageBroker
from colony.communication.monitor import MessageStatus
from colony.config import Settings
from colony.errors import ValidationError


def collector(log, name):
    def _handler(message):
        log.append((name, message.id))
    return _handler


def note(protocol, sender, recipient, event="ping"):
    return protocol.create_notification_message(sender, recipient, event, {})


class TestTopics:

    def test_fan_out_in_subscription_order(self, broker, protocol):
        log = []
        for name in ("a", "b", "c"):
            broker.subscribe(name, "topic:news", collector(log, name))

        message = note(protocol, "x", "topic:news")
        assert broker.publish_message(message) == 3
        assert [name for name, _ in log] == ["a", "b", "c"]

    def test_unsubscribe_keeps_order_of_the_rest(self, broker, protocol):
        log = []
        for name in ("a", "b", "c", "d"):
            broker.subscribe(name, "topic:news", collector(log, name))

        assert broker.unsubscribe("b", "topic:news")
        broker.publish_message(note(protocol, "x", "topic:news"))

        assert [name for name, _ in log] == ["a", "c", "d"]
        assert broker.get_subscribers("topic:news") == ["a", "c", "d"]

    def test_unsubscribe_unknown(self, broker):
        assert broker.unsubscribe("ghost", "topic:news") is False

    def test_resubscribe_replaces_handler(self, broker, protocol):
        log = []
        broker.subscribe("a", "topic:news", collector(log, "old"))
        broker.subscribe("a", "topic:news", collector(log, "new"))

        assert broker.publish_message(note(protocol, "x", "topic:news")) == 1
        assert [name for name, _ in log] == ["new"]

    def test_topic_without_subscribers(self, broker, protocol, monitor):
        message = note(protocol, "x", "topic:empty")

        assert broker.publish_message(message) == 0
        assert monitor.get_trace(message.id).get_status() is MessageStatus.NO_SUBSCRIBERS
        assert broker.queued_messages("topic:empty") == []


class TestDirectDelivery:

    def test_queue_then_flush_in_order(self, broker, protocol):
        sent = [note(protocol, "x", "bob", f"e{i}") for i in range(3)]
        for message in sent:
            assert broker.publish_message(message) == 0

        assert broker.queued_messages("bob") == sent

        log = []
        assert broker.subscribe("bob", "bob", collector(log, "bob")) == 3
        assert [mid for _, mid in log] == [m.id for m in sent]
        assert broker.queued_messages("bob") == []

    def test_any_live_subscription_receives_direct_messages(self, broker, protocol):
        log = []
        broker.subscribe("bob", "topic:news", collector(log, "bob"))

        message = note(protocol, "x", "bob")
        assert broker.publish_message(message) == 1
        assert log == [("bob", message.id)]
        assert broker.queued_messages("bob") == []

    def test_shared_handler_runs_once_per_direct_message(self, broker, protocol):
        log = []
        handler = collector(log, "bob")
        broker.subscribe("bob", "bob", handler)
        broker.subscribe("bob", "topic:news", handler)
        broker.subscribe("bob", "topic:alerts", collector(log, "bob-alerts"))

        message = note(protocol, "x", "bob")
        assert broker.publish_message(message) == 2
        assert log == [("bob", message.id), ("bob-alerts", message.id)]

    def test_queues_again_after_last_unsubscribe(self, broker, protocol):
        broker.subscribe("bob", "topic:news", collector([], "bob"))
        broker.unsubscribe("bob", "topic:news")

        assert broker.publish_message(note(protocol, "x", "bob")) == 0
        assert len(broker.queued_messages("bob")) == 1

    def test_queue_is_bounded_oldest_evicted(self, protocol, monitor):
        broker = MessageBroker(protocol, Settings(broker={"max_queue_size": 3}), monitor)
        sent = [note(protocol, "x", "bob", f"e{i}") for i in range(5)]
        for message in sent:
            broker.publish_message(message)

        assert broker.queued_messages("bob") == sent[2:]
        assert broker.get_stats()["messages_evicted"] == 2
        assert MessageStatus.EVICTED in [e.status for e in monitor.get_trace(sent[0].id).events]

        log = []
        broker.subscribe("bob", "bob", collector(log, "bob"))
        assert [mid for _, mid in log] == [m.id for m in sent[2:]]


class TestResolvers:

    def test_resolver_expands_to_direct_recipients(self, broker, protocol):
        log = []
        broker.subscribe("a", "a", collector(log, "a"))
        broker.subscribe("b", "b", collector(log, "b"))
        broker.register_resolver("group:", lambda message: ["a", "b", "a", "c"])

        assert broker.publish_message(note(protocol, "x", "group:all")) == 2
        assert [name for name, _ in log] == ["a", "b"]
        # unreachable members get the envelope queued
        assert len(broker.queued_messages("c")) == 1

    def test_topic_prefix_is_reserved(self, broker):
        with pytest.raises(ValueError):
            broker.register_resolver("topic:", lambda message: [])

    def test_unregister_resolver(self, broker, protocol):
        broker.register_resolver("group:", lambda message: ["a"])
        assert broker.unregister_resolver("group:")
        assert not broker.unregister_resolver("group:")

        broker.publish_message(note(protocol, "x", "group:all"))
        assert len(broker.queued_messages("group:all")) == 1


def test_handler_mutations_do_not_leak(broker, protocol):
    seen = []

    def tamper(message):
        message.content["params"]["amount"] = 999
        message.metadata["tampered"] = True

    def audit(message):
        seen.append((message.content["params"]["amount"], dict(message.metadata)))

    broker.subscribe("a", "topic:payments", tamper)
    broker.subscribe("b", "topic:payments", audit)

    message = protocol.create_request_message("x", "topic:payments", "pay", {"amount": 1})
    broker.publish_message(message)

    assert seen == [(1, {})]
    assert message.content["params"]["amount"] == 1
    assert broker.get_history()[-1].content == {"action": "pay", "params": {"amount": 1}}


def test_redelivered_messages_keep_history_intact(broker, protocol):
    def tamper(message):
        message.content["params"]["amount"] = 999

    message = protocol.create_request_message("x", "bob", "pay", {"amount": 1})
    broker.publish_message(message)
    assert broker.subscribe("bob", "bob", tamper) == 1

    assert message.content["params"]["amount"] == 1
    assert broker.get_history()[-1].content["params"] == {"amount": 1}
    log = []

    def explode(message):
        raise RuntimeError("handler bug")

    broker.subscribe("a", "topic:news", explode)
    broker.subscribe("b", "topic:news", collector(log, "b"))

    message = note(protocol, "x", "topic:news")
    assert broker.publish_message(message) == 2
    assert log == [("b", message.id)]

    stats = broker.get_stats()
    assert stats["handler_errors"] == 1
    assert stats["messages_delivered"] == 1
    assert monitor.get_recent_failures()[0].message_id == message.id


def test_invalid_messages_are_rejected(broker, protocol):
    message = protocol.create_message("x", "bob", "request", {"params": {}})

    with pytest.raises(ValidationError):
        broker.publish_message(message)

    stats = broker.get_stats()
    assert stats["messages_rejected"] == 1
    assert stats["messages_published"] == 0
    assert broker.queued_messages("bob") == []


def test_publish_wire_mapping(broker, protocol):
    log = []
    broker.subscribe("bob", "bob", collector(log, "bob"))
    message = note(protocol, "x", "bob")

    assert broker.publish_message(json.loads(protocol.serialize_message(message))) == 1
    assert log == [("bob", message.id)]


def test_handlers_may_publish(broker, protocol):
    log = []

    def relay(message):
        broker.publish_message(note(protocol, "relay", "topic:out"))

    broker.subscribe("relay", "topic:in", relay)
    broker.subscribe("sink", "topic:out", collector(log, "sink"))

    broker.publish_message(note(protocol, "x", "topic:in"))
    assert len(log) == 1


def test_history_is_bounded(protocol, monitor):
    broker = MessageBroker(protocol, Settings(broker={"max_history_size": 2}), monitor)
    sent = [note(protocol, "x", "topic:news", f"e{i}") for i in range(3)]
    for message in sent:
        broker.publish_message(message)

    assert broker.get_history() == sent[1:]
    assert broker.get_history(limit=1) == sent[2:]


def test_subscriptions_and_stats(broker, protocol):
    broker.subscribe("a", "a", lambda m: None)
    broker.subscribe("a", "topic:news", lambda m: None)

    assert [s["topic"] for s in broker.get_subscriptions("a")] == ["a", "topic:news"]
    assert broker.get_stats()["topics"] == 2
    assert broker.get_stats()["subscribers"] == 1


def test_shutdown_clears_everything(broker, protocol):
    broker.subscribe("a", "topic:news", lambda m: None)
    broker.publish_message(note(protocol, "x", "bob"))

    broker.shutdown()

    assert broker.get_subscribers("topic:news") == []
    assert broker.queued_messages("bob") == []
    assert broker.get_history() == []
