"""
Message flow monitoring for debugging broker communication.
Tracks envelope lifecycle: created -> delivered / queued -> flushed / failed
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Any
from dataclasses import dataclass, field
from enum import Enum
import json
from pathlib import Path

logger = logging.getLogger(__name__)


class MessageStatus(Enum):
    """Status of an envelope in the broker."""
    CREATED = "created"
    DELIVERED = "delivered"
    QUEUED = "queued"
    FLUSHED = "flushed"
    EVICTED = "evicted"
    FAILED = "failed"
    REJECTED = "rejected"
    NO_SUBSCRIBERS = "no_subscribers"


FAILURE_STATUSES = (MessageStatus.FAILED, MessageStatus.REJECTED, MessageStatus.EVICTED)


@dataclass
class MessageEvent:
    """Event in an envelope's lifecycle."""
    timestamp: datetime
    status: MessageStatus
    details: str
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageTrace:
    """Complete trace of an envelope through the broker."""
    message_id: str
    sender: str
    recipient: str
    kind: str
    created_at: datetime
    events: List[MessageEvent] = field(default_factory=list)

    def add_event(self, status: MessageStatus, details: str, error: Optional[str] = None, **metadata):
        """Add an event to the message trace."""
        self.events.append(MessageEvent(
            timestamp=datetime.now(),
            status=status,
            details=details,
            error=error,
            metadata=metadata
        ))

    def get_duration(self) -> float:
        """Get total duration from creation to last event."""
        if not self.events:
            return 0.0
        return (self.events[-1].timestamp - self.created_at).total_seconds()

    def get_status(self) -> MessageStatus:
        """Get current status of the envelope."""
        if not self.events:
            return MessageStatus.CREATED
        return self.events[-1].status

    def has_failures(self) -> bool:
        return any(e.status in FAILURE_STATUSES for e in self.events)

    def to_dict(self) -> Dict[str, Any]:
        """Convert trace to dictionary for serialization."""
        return {
            "message_id": self.message_id,
            "sender": self.sender,
            "recipient": self.recipient,
            "kind": self.kind,
            "created_at": self.created_at.isoformat(),
            "duration": self.get_duration(),
            "status": self.get_status().value,
            "events": [
                {
                    "timestamp": e.timestamp.isoformat(),
                    "status": e.status.value,
                    "details": e.details,
                    "error": e.error,
                    "metadata": e.metadata
                }
                for e in self.events
            ]
        }


class MessageMonitor:
    """Monitor for tracking envelope flow through the broker."""

    def __init__(self, log_dir: Optional[Path] = None, max_traces: int = 5000):
        self.traces: Dict[str, MessageTrace] = {}
        self.log_dir = Path(log_dir) if log_dir else Path("broker_logs")
        self.max_traces = max_traces

    def start_trace(self, message_id: str, sender: str, recipient: str, kind: str) -> MessageTrace:
        """Start tracking a new envelope."""
        trace = MessageTrace(
            message_id=message_id,
            sender=sender,
            recipient=recipient,
            kind=kind,
            created_at=datetime.now()
        )
        self.traces[message_id] = trace
        if len(self.traces) > self.max_traces:
            # dicts keep insertion order, so the first key is the oldest trace
            self.traces.pop(next(iter(self.traces)))

        logger.debug("Message %s... created: %s -> %s", message_id[:16], sender, recipient)
        return trace

    def record_event(self, message_id: str, status: MessageStatus, details: str,
                     error: Optional[str] = None, **metadata):
        """Record an event for an envelope."""
        trace = self.traces.get(message_id)
        if trace is None:
            # Create a minimal trace if we don't have one
            trace = self.start_trace(message_id, "unknown", "unknown", "unknown")

        trace.add_event(status, details, error, **metadata)

        if error:
            logger.debug("Message %s... %s: %s (error: %s)", message_id[:16], status.value, details, error)
        else:
            logger.debug("Message %s... %s: %s", message_id[:16], status.value, details)

    def get_trace(self, message_id: str) -> Optional[MessageTrace]:
        """Get trace for a specific envelope; a unique id prefix also matches."""
        trace = self.traces.get(message_id)
        if trace is None:
            matches = [t for mid, t in self.traces.items() if mid.startswith(message_id)]
            if len(matches) == 1:
                trace = matches[0]
        return trace

    def status_counts(self) -> Dict[MessageStatus, int]:
        counts: Dict[MessageStatus, int] = {}
        for trace in self.traces.values():
            status = trace.get_status()
            counts[status] = counts.get(status, 0) + 1
        return counts

    def get_recent_failures(self, limit: int = 10) -> List[MessageTrace]:
        """Get recent traces that recorded a failure."""
        failed = [trace for trace in self.traces.values() if trace.has_failures()]
        # Sort by most recent first
        failed.sort(key=lambda t: t.created_at, reverse=True)
        return failed[:limit]

    def save_trace(self, message_id: str) -> Optional[Path]:
        """Save a trace to disk for later analysis."""
        trace = self.traces.get(message_id)
        if trace is None:
            return None

        self.log_dir.mkdir(parents=True, exist_ok=True)
        safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in message_id)
        filepath = self.log_dir / f"{trace.created_at.strftime('%Y%m%d_%H%M%S')}_{safe_id}.json"

        with open(filepath, 'w') as f:
            json.dump(trace.to_dict(), f, indent=2)
        return filepath

    def clear(self):
        """Clear all traces."""
        self.traces.clear()
