"""
Orchestrator agent: serves team and collective requests arriving over the broker.

Requests (kind ``request``, ``team``, ``negotiation`` or ``collective`` with an
``action``) are answered with a ``response`` carrying the result, or an
``error`` envelope when the action is unknown or fails. ``collective.insight``
events are recorded without a reply.
"""

from typing import Any, Callable, Dict, Mapping
import logging

from colony.collective.intelligence import CollectiveIntelligence
from colony.communication.agents import AgentCommunication
from colony.communication.collaboration import ORCHESTRATOR_ID, TEAM_PREFIX, CollaborationKind
from colony.communication.protocol import Envelope, MessageKind
from colony.errors import ColonyError
from colony.teams.formation import TeamFormation

logger = logging.getLogger(__name__)

ActionHandler = Callable[[Envelope, Mapping[str, Any]], Any]

REQUEST_KINDS = (
    MessageKind.REQUEST.value,
    CollaborationKind.TEAM.value,
    CollaborationKind.NEGOTIATION.value,
    CollaborationKind.COLLECTIVE.value,
)


class Orchestrator:

    def __init__(self, communication: AgentCommunication, teams: TeamFormation,
                 collective: CollectiveIntelligence, agent_id: str = ORCHESTRATOR_ID):
        self.communication = communication
        self.teams = teams
        self.collective = collective
        self.agent_id = agent_id

        self.actions: Dict[str, ActionHandler] = {
            "team.create": self._create_team,
            "team.addRole": self._add_role,
            "team.join": self._join_team,
            "team.leave": self._leave_team,
            "team.assignRole": self._assign_role,
            "team.broadcast": self._broadcast_to_team,
            "team.form": self._form_team,
            "collective.vote": self._create_vote,
            "collective.castVote": self._cast_vote,
            "collective.closeVote": self._close_vote,
            "collective.aggregate": self._aggregate,
        }
        self.events: Dict[str, ActionHandler] = {
            "collective.insight": self._record_insight,
        }

    def start(self) -> None:
        self.communication.register_agent(
            self.agent_id, info={"type": "orchestrator"}, handler=self.handle_message
        )

    def stop(self) -> None:
        self.communication.unregister_agent(self.agent_id)

    def handle_message(self, message: Envelope) -> None:
        # Broadcast and team traffic is not addressed to us
        if message.recipient != self.agent_id or message.kind not in REQUEST_KINDS:
            return

        content = message.content
        if "event" in content:
            handler = self.events.get(content["event"])
            if handler is None:
                logger.debug("Ignoring event %s from %s", content["event"], message.sender)
                return
            try:
                handler(message, content.get("data") or {})
            except Exception:
                logger.exception("Failed to handle event %s from %s", content["event"], message.sender)
            return

        action = content.get("action")
        handler = self.actions.get(action)
        if handler is None:
            self.communication.send_error(self.agent_id, message, f"Unknown action: {action}",
                                          {"action": action})
            return

        try:
            result = handler(message, content.get("params") or {})
        except ColonyError as e:
            self.communication.send_error(self.agent_id, message, str(e),
                                          {"action": action, "type": type(e).__name__})
            return
        except Exception as e:
            logger.exception("Action %s from %s failed", action, message.sender)
            self.communication.send_error(self.agent_id, message, str(e),
                                          {"action": action, "type": type(e).__name__})
            return

        self.communication.send_response(self.agent_id, message, result)

    # Team actions

    def _team_id(self, message: Envelope, params: Mapping[str, Any]) -> str:
        team_id = params.get("teamId") or message.team_id
        if not team_id:
            raise ValueError("teamId is required")
        return team_id

    def _create_team(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        team = self.teams.create_team(
            team_id=params.get("teamId"),
            name=params.get("name"),
            formation=params.get("formation", "dynamic"),
            goal=params.get("goal", ""),
            roles=params.get("roles"),
        )
        return team.model_dump(mode="json")

    def _add_role(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        role = self.teams.add_role(
            self._team_id(message, params),
            params["roleId"],
            name=params.get("name"),
            description=params.get("description", ""),
            responsibilities=params.get("responsibilities"),
            required_capabilities=params.get("requiredCapabilities"),
        )
        return role.model_dump(mode="json")

    def _join_team(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        member = self.teams.add_agent_to_team(
            self._team_id(message, params),
            params.get("agentId") or message.sender,
            params.get("roleId"),
        )
        return member.model_dump(mode="json")

    def _leave_team(self, message: Envelope, params: Mapping[str, Any]) -> bool:
        return self.teams.remove_agent_from_team(
            self._team_id(message, params), params.get("agentId") or message.sender
        )

    def _assign_role(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        role = self.teams.assign_role(self._team_id(message, params), params["roleId"], params["agentId"])
        return role.model_dump(mode="json")

    def _broadcast_to_team(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        team_id = self._team_id(message, params)
        self.teams.get_team(team_id)
        forwarded = self.communication.send_message(
            self.agent_id,
            f"{TEAM_PREFIX}{team_id}",
            CollaborationKind.TEAM,
            {
                "action": "team.broadcast",
                "params": {
                    "message": params.get("message"),
                    "priority": params.get("priority", 5),
                    "from": message.sender,
                },
            },
            team_id=team_id,
        )
        return {"messageId": forwarded.id}

    def _form_team(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Plan a formation; with ``commit`` the team is created and populated.
        Capabilities default to the ones the agents registered with.
        """
        agent_ids = list(params["agentIds"])
        capabilities = params.get("capabilities") or [
            self.communication.get_agent_capabilities(agent_id) for agent_id in agent_ids
        ]
        requirements = params["requirements"]
        plan = self.teams.find_optimal_team_formation(agent_ids, capabilities, requirements)

        if params.get("commit"):
            role_requirements = requirements.get("roles", requirements)
            team = self.teams.create_team(
                team_id=params.get("teamId") or plan.team_id,
                name=params.get("name"),
                roles={
                    role_id: {"required_capabilities": reqs}
                    for role_id, reqs in role_requirements.items()
                },
            )
            for assignment in plan.members:
                self.teams.add_agent_to_team(team.id, assignment.agent_id, assignment.role_id)
            plan.team_id = team.id

        return plan.model_dump(mode="json")

    # Collective actions

    def _create_vote(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        vote = self.collective.create_vote(
            topic=params["topic"],
            options=params.get("options"),
            method=params.get("method"),
            participants=params.get("participants"),
            deadline=params.get("deadline"),
            vote_id=params.get("voteId"),
            description=params.get("description", ""),
        )
        return vote.model_dump(mode="json")

    def _cast_vote(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        vote = self.collective.cast_vote(
            params["voteId"],
            message.sender,
            params["choice"],
            params.get("confidence", 1.0),
        )
        return {"voteId": vote.id, "status": vote.status.value, "ballots": len(vote.ballots)}

    def _close_vote(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        return self.collective.close_vote(params["voteId"]).model_dump(mode="json")

    def _aggregate(self, message: Envelope, params: Mapping[str, Any]) -> Dict[str, Any]:
        decision = self.collective.aggregate_insights(params["taskId"], params.get("method"))
        return decision.model_dump(mode="json")

    def _record_insight(self, message: Envelope, data: Mapping[str, Any]) -> None:
        self.collective.add_insight(
            data["taskId"],
            message.sender,
            data.get("insight"),
            confidence=data.get("confidence"),
            evidence=data.get("evidence"),
        )
