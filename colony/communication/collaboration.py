"""
Collaboration message kinds layered on top of the base protocol.

Adds the ``team``, ``negotiation`` and ``collective`` kinds, the action
specific rules that go with them, and builders for role and team addressed
envelopes (``role:<id>`` / ``team:<id>``).
"""

from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
import datetime

from colony.config import Settings
from .protocol import (
    ContentValidator,
    Envelope,
    MessageKind,
    MessageKindRegistry,
    MessageProtocol,
    any_of,
    requires,
)

TEAM_PREFIX = "team:"
ROLE_PREFIX = "role:"
ORCHESTRATOR_ID = "orchestrator"


class CollaborationKind(str, Enum):
    TEAM = "team"
    NEGOTIATION = "negotiation"
    COLLECTIVE = "collective"


def _params(key: str = "params") -> Any:
    def _get(content: Mapping[str, Any]) -> Mapping[str, Any]:
        value = content.get(key)
        return value if isinstance(value, Mapping) else {}
    return _get


def action_rules(rules: Dict[str, ContentValidator], section: str = "params") -> ContentValidator:
    """
    Validate ``content[section]`` with the rule registered for ``content['action']``.

    Actions without a rule are accepted.
    """
    get_section = _params(section)

    def _validator(content: Mapping[str, Any]) -> bool:
        rule = rules.get(content.get("action"))
        if rule is None:
            return True
        return rule(get_section(content))

    return _validator


def event_rules(rules: Dict[str, ContentValidator]) -> ContentValidator:
    """Like ``action_rules`` but keyed on ``content['event']`` over ``content['data']``."""
    get_data = _params("data")

    def _validator(content: Mapping[str, Any]) -> bool:
        rule = rules.get(content.get("event"))
        if rule is None:
            return True
        return rule(get_data(content))

    return _validator


TEAM_ACTIONS: Dict[str, ContentValidator] = {
    "team.create": requires("name"),
    "team.assignRole": requires("agentId", "roleId"),
    "team.broadcast": requires(present=("message",)),
}

NEGOTIATION_ACTIONS: Dict[str, ContentValidator] = {
    "negotiation.bid": requires("taskId", "roleId", "bid"),
    "negotiation.resolveConflict": requires("conflictId", "parties", "issue"),
}

COLLECTIVE_ACTIONS: Dict[str, ContentValidator] = {
    "collective.vote": requires("voteId", "topic", "options"),
}

COLLECTIVE_EVENTS: Dict[str, ContentValidator] = {
    "collective.insight": requires("taskId", present=("insight",)),
}

_action_shape = requires("action", present=("params",))
_event_shape = requires("event", present=("data",))


def install_collaboration_kinds(kinds: MessageKindRegistry) -> MessageKindRegistry:
    """Register the collaboration kinds on an existing registry."""
    kinds.register(CollaborationKind.TEAM, _action_shape)
    kinds.extend(CollaborationKind.TEAM, action_rules(TEAM_ACTIONS))
    kinds.register(CollaborationKind.NEGOTIATION, _action_shape)
    kinds.extend(CollaborationKind.NEGOTIATION, action_rules(NEGOTIATION_ACTIONS))
    kinds.register(CollaborationKind.COLLECTIVE, any_of(_action_shape, _event_shape))
    kinds.extend(CollaborationKind.COLLECTIVE, action_rules(COLLECTIVE_ACTIONS))
    kinds.extend(CollaborationKind.COLLECTIVE, event_rules(COLLECTIVE_EVENTS))
    return kinds


class CollaborationProtocol(MessageProtocol):
    """
    Message protocol with team, negotiation and collective kinds installed.
    """

    def __init__(self, settings: Optional[Settings] = None, kinds: Optional[MessageKindRegistry] = None):
        super().__init__(settings, kinds)
        if not self.kinds.is_registered(CollaborationKind.TEAM):
            install_collaboration_kinds(self.kinds)

    def create_team_message(self, sender: str, team_id: str, action: str,
                            params: Optional[Mapping[str, Any]] = None, **options) -> Envelope:
        """Address every member of a team."""
        return self.create_message(sender, f"{TEAM_PREFIX}{team_id}", CollaborationKind.TEAM, {
            "action": action,
            "params": dict(params or {}),
        }, team_id=team_id, **options)

    def create_role_message(self, sender: str, role_id: str, team_id: Optional[str],
                            kind: Any, content: Mapping[str, Any], **options) -> Envelope:
        """Address whoever holds a role; ``team_id`` narrows it to one team."""
        return self.create_message(sender, f"{ROLE_PREFIX}{role_id}", kind, content,
                                   team_id=team_id, role_id=role_id, **options)

    def create_team_formation_message(self, sender: str, team_data: Mapping[str, Any],
                                      recipient: str = ORCHESTRATOR_ID, **options) -> Envelope:
        return self.create_message(sender, recipient, CollaborationKind.TEAM, {
            "action": "team.create",
            "params": dict(team_data),
        }, **options)

    def create_role_assignment_message(self, sender: str, team_id: str, agent_id: str,
                                       role_id: str, **options) -> Envelope:
        return self.create_team_message(sender, team_id, "team.assignRole", {
            "agentId": agent_id,
            "roleId": role_id,
        }, **options)

    def create_team_broadcast_message(self, sender: str, team_id: str, message: Any,
                                      priority: int = 5, **options) -> Envelope:
        return self.create_team_message(sender, team_id, "team.broadcast", {
            "message": message,
            "priority": priority,
        }, **options)

    def create_task_bid_message(self, sender: str, task_id: str, role_id: str, bid: Any,
                                recipient: str = ORCHESTRATOR_ID, **options) -> Envelope:
        return self.create_message(sender, recipient, CollaborationKind.NEGOTIATION, {
            "action": "negotiation.bid",
            "params": {"taskId": task_id, "roleId": role_id, "bid": bid},
        }, **options)

    def create_conflict_resolution_message(self, sender: str, conflict_id: str, parties: List[str],
                                           issue: str, proposals: Optional[List[Any]] = None,
                                           recipient: str = ORCHESTRATOR_ID, **options) -> Envelope:
        return self.create_message(sender, recipient, CollaborationKind.NEGOTIATION, {
            "action": "negotiation.resolveConflict",
            "params": {
                "conflictId": conflict_id,
                "parties": list(parties),
                "issue": issue,
                "proposals": list(proposals or []),
            },
        }, **options)

    def create_vote_request_message(self, sender: str, vote_id: str, topic: str, options: List[Any],
                                    deadline: Optional[datetime.datetime] = None,
                                    recipient: str = ORCHESTRATOR_ID, **message_options) -> Envelope:
        return self.create_message(sender, recipient, CollaborationKind.COLLECTIVE, {
            "action": "collective.vote",
            "params": {
                "voteId": vote_id,
                "topic": topic,
                "options": list(options),
                "deadline": deadline.isoformat() if deadline else None,
            },
        }, **message_options)

    def create_insight_message(self, sender: str, task_id: str, insight: Any, confidence: float = 1.0,
                               evidence: Optional[Mapping[str, Any]] = None,
                               recipient: str = ORCHESTRATOR_ID, **options) -> Envelope:
        return self.create_message(sender, recipient, CollaborationKind.COLLECTIVE, {
            "event": "collective.insight",
            "data": {
                "taskId": task_id,
                "insight": insight,
                "confidence": confidence,
                "evidence": dict(evidence or {}),
            },
        }, **options)

    def create_step_completion_message(self, sender: str, task_id: str, step_id: str, result: Any,
                                       recipient: str = ORCHESTRATOR_ID, **options) -> Envelope:
        return self.create_message(sender, recipient, MessageKind.NOTIFICATION, {
            "event": "task.step.completed",
            "data": {"taskId": task_id, "stepId": step_id, "result": result},
        }, **options)
