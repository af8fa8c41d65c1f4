"""
Role and team addressing on top of the broker.

``team:<id>`` reaches every member of the team except the sender.
``role:<id>`` reaches the holder of the role in the envelope's team, or the
holders in every team when the envelope carries no team id.
"""

from typing import List
import logging

from colony.teams.formation import TeamFormation
from .broker import MessageBroker
from .collaboration import ROLE_PREFIX, TEAM_PREFIX
from .protocol import Envelope

logger = logging.getLogger(__name__)


class TeamAddressing:

    def __init__(self, teams: TeamFormation):
        self.teams = teams

    def attach(self, broker: MessageBroker) -> None:
        broker.register_resolver(TEAM_PREFIX, self.resolve_team)
        broker.register_resolver(ROLE_PREFIX, self.resolve_role)

    def detach(self, broker: MessageBroker) -> None:
        broker.unregister_resolver(TEAM_PREFIX)
        broker.unregister_resolver(ROLE_PREFIX)

    def resolve_team(self, message: Envelope) -> List[str]:
        team_id = message.recipient[len(TEAM_PREFIX):]
        team = self.teams.find_team(team_id)
        if team is None:
            logger.warning("Message %s addressed to unknown team %s", message.id, team_id)
            return []
        return [agent_id for agent_id in team.members if agent_id != message.sender]

    def resolve_role(self, message: Envelope) -> List[str]:
        role_id = message.recipient[len(ROLE_PREFIX):]
        if message.team_id:
            team = self.teams.find_team(message.team_id)
            teams = [team] if team is not None else []
        else:
            teams = self.teams.list_teams()

        holders = []
        for team in teams:
            role = team.roles.get(role_id)
            if role is not None and role.assigned_agent:
                holders.append(role.assigned_agent)
        return holders
