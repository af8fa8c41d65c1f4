"""
Inter-agent communication for Colony.

Provides the message protocol, the broker that routes envelopes, and the
agent registry with request/response correlation.
"""

from .protocol import Envelope, MessageKind, MessageKindRegistry, MessageProtocol
from .collaboration import CollaborationKind, CollaborationProtocol
from .broker import MessageBroker
from .agents import AgentCommunication

__all__ = [
    "Envelope",
    "MessageKind",
    "MessageKindRegistry",
    "MessageProtocol",
    "CollaborationKind",
    "CollaborationProtocol",
    "MessageBroker",
    "AgentCommunication",
]
