"""
Error taxonomy shared by every colony component.
"""

from typing import Any, Dict, Optional


class ColonyError(Exception):
    """Base exception for coordination errors."""
    pass


class ValidationError(ColonyError):
    """Raised when an envelope does not conform to the protocol."""
    pass


class NotFoundError(ColonyError):
    """Raised when an agent, team, role, vote or decision id is unknown."""
    pass


class StateError(ColonyError):
    """Raised when an operation is not allowed in the current state."""
    pass


class RequestTimeoutError(ColonyError, TimeoutError):
    """Raised when a request is not settled before its deadline."""

    def __init__(self, request_id: str, timeout_ms: int):
        super().__init__(f"Request {request_id} timed out after {timeout_ms}ms")
        self.request_id = request_id
        self.timeout_ms = timeout_ms


class RequestError(ColonyError):
    """Raised when a request is answered with an error envelope."""

    def __init__(self, request_id: str, error: Any, details: Optional[Dict[str, Any]] = None):
        super().__init__(str(error))
        self.request_id = request_id
        self.error = error
        self.details = details or {}


class AggregationError(ColonyError):
    """Raised when insights cannot be combined into a decision."""
    pass
