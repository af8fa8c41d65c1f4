"""
Team formation: teams, roles, membership and capability-based role assignment.
"""

from __future__ import annotations
from typing import Any, Dict, List, Mapping, Optional, Sequence, TYPE_CHECKING
from pydantic import BaseModel, Field, field_validator
import datetime
import logging

from colony.errors import NotFoundError, StateError
from colony.utils import generate_id, utcnow

if TYPE_CHECKING:
    from colony.communication.agents import AgentCommunication

logger = logging.getLogger(__name__)


class CapabilityRequirement(BaseModel):
    level: float = Field(1.0, gt=0, description="Level at which the capability fully counts")
    weight: float = Field(1.0, ge=0, description="Share of the role score this capability carries")


def _coerce_requirements(value: Any) -> Dict[str, Any]:
    """Accept ``{cap: {level, weight}}``, ``{cap: level}`` or ``[cap, ...]``."""
    if value is None:
        return {}
    if isinstance(value, (list, tuple, set)):
        return {name: {} for name in value}
    return {
        name: ({"level": req} if isinstance(req, (int, float)) else req or {})
        for name, req in value.items()
    }


class Performance(BaseModel):
    total_reward: float = 0.0
    success_rate: float = 0.0
    completed_tasks: int = 0
    failed_tasks: int = 0

    def record(self, reward: Optional[float] = None, success: Optional[bool] = None) -> None:
        """Accumulate a reward and/or a task outcome."""
        if reward:
            self.total_reward += reward
        if success is True:
            self.completed_tasks += 1
        elif success is False:
            self.failed_tasks += 1

        total = self.completed_tasks + self.failed_tasks
        if total > 0:
            self.success_rate = self.completed_tasks / total


class Member(BaseModel):
    id: str
    role: Optional[str] = None
    joined_at: datetime.datetime = Field(default_factory=utcnow)
    performance: Performance = Field(default_factory=Performance)


class Role(BaseModel):
    """A capability-requiring slot within a team, held by at most one member."""
    id: str
    name: str = ""
    description: str = ""
    responsibilities: List[str] = Field(default_factory=list)
    required_capabilities: Dict[str, CapabilityRequirement] = Field(default_factory=dict)
    assigned_agent: Optional[str] = None
    assigned_at: Optional[datetime.datetime] = None

    @field_validator("required_capabilities", mode="before")
    @classmethod
    def coerce_requirements(cls, v: Any) -> Dict[str, Any]:
        return _coerce_requirements(v)


class Team(BaseModel):
    id: str
    name: str
    goal: str = ""
    formation: str = "dynamic"
    members: Dict[str, Member] = Field(default_factory=dict)
    roles: Dict[str, Role] = Field(default_factory=dict)
    performance: Performance = Field(default_factory=Performance)
    created_at: datetime.datetime = Field(default_factory=utcnow)
    last_active: datetime.datetime = Field(default_factory=utcnow)

    def touch(self) -> None:
        self.last_active = utcnow()


class FormationAssignment(BaseModel):
    agent_id: str
    role_id: Optional[str] = None
    score: float = 0.0


class FormationPlan(BaseModel):
    """Outcome of ``find_optimal_team_formation``; nothing is committed to the registry."""
    team_id: str
    members: List[FormationAssignment] = Field(default_factory=list)
    roles: Dict[str, Optional[str]] = Field(default_factory=dict, description="role id -> agent id")

    def assignment_for(self, agent_id: str) -> Optional[FormationAssignment]:
        return next((m for m in self.members if m.agent_id == agent_id), None)


class TeamFormation:
    """
    Registry of teams and the single source of truth for agent membership.

    Invariants:
    - an agent belongs to at most one team (adding it elsewhere relocates it)
    - a role has at most one holder, and an agent holds at most one role per team

    Args:
        agents: When given, only agents registered there may join teams
    """

    def __init__(self, agents: Optional["AgentCommunication"] = None):
        self.agents = agents
        self.teams: Dict[str, Team] = {}
        self._agent_teams: Dict[str, str] = {}

    # Teams

    def create_team(self, team_id: Optional[str] = None, name: Optional[str] = None,
                    formation: str = "dynamic", goal: str = "",
                    roles: Optional[Mapping[str, Mapping[str, Any]]] = None) -> Team:
        """
        Create a team, optionally with roles.

        Args:
            team_id: Unique id; generated when omitted
            roles: role id -> role config (``name``, ``description``,
                ``responsibilities``, ``required_capabilities``)

        Raises:
            StateError: If the id is taken
        """
        team_id = team_id or generate_id("team")
        if team_id in self.teams:
            raise StateError(f"Team with ID {team_id} already exists")

        team = Team(id=team_id, name=name or team_id, formation=formation, goal=goal)
        self.teams[team_id] = team

        for role_id, role_config in (roles or {}).items():
            self.add_role(team_id, role_id, **dict(role_config))

        logger.info("Created team %s: %s", team_id, team.name)
        return team

    def get_team(self, team_id: str) -> Team:
        team = self.teams.get(team_id)
        if team is None:
            raise NotFoundError(f"Unknown team ID: {team_id}")
        return team

    def find_team(self, team_id: str) -> Optional[Team]:
        return self.teams.get(team_id)

    def list_teams(self) -> List[Team]:
        return list(self.teams.values())

    def dissolve_team(self, team_id: str) -> bool:
        team = self.get_team(team_id)
        for agent_id in team.members:
            if self._agent_teams.get(agent_id) == team_id:
                del self._agent_teams[agent_id]
        del self.teams[team_id]
        logger.info("Dissolved team %s", team_id)
        return True

    # Roles

    def add_role(self, team_id: str, role_id: str, name: Optional[str] = None, description: str = "",
                 responsibilities: Optional[Sequence[str]] = None,
                 required_capabilities: Any = None) -> Role:
        """
        Add a role to a team.

        Raises:
            StateError: If the team already has a role with this id
        """
        team = self.get_team(team_id)
        if role_id in team.roles:
            raise StateError(f"Role with ID {role_id} already exists in team {team_id}")

        role = Role(
            id=role_id,
            name=name or role_id,
            description=description,
            responsibilities=list(responsibilities or []),
            required_capabilities=required_capabilities,
        )
        team.roles[role_id] = role
        team.touch()
        return role

    def get_role(self, team_id: str, role_id: str) -> Role:
        role = self.get_team(team_id).roles.get(role_id)
        if role is None:
            raise NotFoundError(f"Unknown role ID: {role_id} in team {team_id}")
        return role

    def assign_role(self, team_id: str, role_id: str, agent_id: str) -> Role:
        """
        Give ``role_id`` to a member, demoting its previous holder and freeing
        the member's previous role.

        Raises:
            StateError: If the agent is not a member of the team
        """
        team = self.get_team(team_id)
        role = self.get_role(team_id, role_id)
        if agent_id not in team.members:
            raise StateError(f"Agent {agent_id} is not a member of team {team_id}")

        self._assign(team, role, agent_id)
        return role

    def _assign(self, team: Team, role: Role, agent_id: str) -> None:
        if role.assigned_agent and role.assigned_agent != agent_id:
            previous = team.members.get(role.assigned_agent)
            if previous is not None:
                previous.role = None

        member = team.members[agent_id]
        if member.role and member.role != role.id:
            held = team.roles.get(member.role)
            if held is not None and held.assigned_agent == agent_id:
                held.assigned_agent = None
                held.assigned_at = None

        role.assigned_agent = agent_id
        role.assigned_at = utcnow()
        member.role = role.id
        team.touch()

    # Membership

    def add_agent_to_team(self, team_id: str, agent_id: str, role_id: Optional[str] = None) -> Member:
        """
        Add an agent to a team, moving it out of its current team first.

        Raises:
            NotFoundError: If the team is unknown
            StateError: If an agent directory is attached and the agent is not registered
        """
        team = self.get_team(team_id)
        if self.agents is not None and not self.agents.is_registered(agent_id):
            raise StateError(f"Agent {agent_id} is not registered")

        current = self._agent_teams.get(agent_id)
        if current is not None and current != team_id:
            self.remove_agent_from_team(current, agent_id)

        member = team.members.get(agent_id)
        if member is None:
            member = Member(id=agent_id)
            team.members[agent_id] = member
        self._agent_teams[agent_id] = team_id

        if role_id is not None:
            role = team.roles.get(role_id)
            if role is None:
                logger.warning("Role %s does not exist in team %s; %s joins without it", role_id, team_id, agent_id)
            else:
                self._assign(team, role, agent_id)

        team.touch()
        logger.info("Added agent %s to team %s with role %s", agent_id, team_id, member.role)
        return member

    def remove_agent_from_team(self, team_id: str, agent_id: str) -> bool:
        team = self.get_team(team_id)
        member = team.members.get(agent_id)
        if member is None:
            return False

        if member.role:
            role = team.roles.get(member.role)
            if role is not None and role.assigned_agent == agent_id:
                role.assigned_agent = None
                role.assigned_at = None

        del team.members[agent_id]
        if self._agent_teams.get(agent_id) == team_id:
            del self._agent_teams[agent_id]

        team.touch()
        logger.info("Removed agent %s from team %s", agent_id, team_id)
        return True

    def get_agent_team(self, agent_id: str) -> Optional[Team]:
        team_id = self._agent_teams.get(agent_id)
        return self.teams.get(team_id) if team_id else None

    def get_agents_by_role(self, team_id: str, role_id: str) -> List[str]:
        team = self.get_team(team_id)
        return [agent_id for agent_id, member in team.members.items() if member.role == role_id]

    def has_role(self, team_id: str, agent_id: str, role_id: str) -> bool:
        member = self.get_team(team_id).members.get(agent_id)
        return member is not None and member.role == role_id

    # Performance

    def update_team_performance(self, team_id: str, reward: Optional[float] = None,
                                success: Optional[bool] = None) -> Performance:
        team = self.get_team(team_id)
        team.performance.record(reward, success)
        team.touch()
        return team.performance

    def update_agent_performance(self, team_id: str, agent_id: str, reward: Optional[float] = None,
                                 success: Optional[bool] = None) -> Performance:
        team = self.get_team(team_id)
        member = team.members.get(agent_id)
        if member is None:
            raise NotFoundError(f"Agent {agent_id} is not a member of team {team_id}")
        member.performance.record(reward, success)
        return member.performance

    def get_team_statistics(self, team_id: str) -> Dict[str, Any]:
        team = self.get_team(team_id)
        now = utcnow()
        return {
            "id": team.id,
            "name": team.name,
            "member_count": len(team.members),
            "role_count": len(team.roles),
            "filled_roles": sum(1 for r in team.roles.values() if r.assigned_agent),
            "performance": team.performance.model_dump(),
            "created_at": team.created_at,
            "last_active": team.last_active,
            "age_seconds": (now - team.created_at).total_seconds(),
        }

    # Formation

    def find_optimal_team_formation(self, agent_ids: Sequence[str],
                                    capabilities: Sequence[Mapping[str, float]],
                                    requirements: Mapping[str, Any]) -> FormationPlan:
        """
        Match agents to roles by capability.

        Every (agent, role) pair is scored with ``calculate_role_compatibility``;
        pairs are taken best-first, skipping any whose agent or role is already
        taken, until every role is filled or agents run out. Agents left over
        are returned with no role.

        This greedy pass approximates weighted bipartite matching; it is not
        guaranteed to maximise the total score.

        Args:
            agent_ids: Candidate agents
            capabilities: Capability levels, parallel to ``agent_ids``
            requirements: ``{"roles": {role_id: {capability: {level, weight}}}}``
                (a bare ``{role_id: ...}`` mapping is accepted as well)
        """
        if len(agent_ids) != len(capabilities):
            raise ValueError("agent_ids and capabilities must have the same length")

        role_requirements = requirements.get("roles", requirements)
        roles = {
            role_id: Role(id=role_id, required_capabilities=reqs).required_capabilities
            for role_id, reqs in role_requirements.items()
        }

        scores = [
            FormationAssignment(
                agent_id=agent_id,
                role_id=role_id,
                score=self.calculate_role_compatibility(agent_caps, reqs),
            )
            for agent_id, agent_caps in zip(agent_ids, capabilities)
            for role_id, reqs in roles.items()
        ]
        # Stable: equal scores keep agent-then-role order
        scores.sort(key=lambda s: s.score, reverse=True)

        plan = FormationPlan(team_id=generate_id("team"), roles={role_id: None for role_id in roles})
        taken_agents = set()

        for candidate in scores:
            if len(taken_agents) == len(agent_ids) or all(plan.roles.values()):
                break
            if candidate.agent_id in taken_agents or plan.roles[candidate.role_id] is not None:
                continue
            plan.roles[candidate.role_id] = candidate.agent_id
            taken_agents.add(candidate.agent_id)
            plan.members.append(candidate)

        for agent_id in agent_ids:
            if agent_id not in taken_agents:
                plan.members.append(FormationAssignment(agent_id=agent_id))
                taken_agents.add(agent_id)

        return plan

    @staticmethod
    def calculate_role_compatibility(capabilities: Mapping[str, float],
                                     requirements: Mapping[str, CapabilityRequirement]) -> float:
        """
        Weighted share of the requirements an agent meets, in [0, 1].

        Each capability contributes ``weight * min(level / required_level, 1)``;
        a missing capability contributes nothing.
        """
        score = 0.0
        total_weight = 0.0

        for capability, requirement in requirements.items():
            if not isinstance(requirement, CapabilityRequirement):
                requirement = CapabilityRequirement(**_coerce_requirements({capability: requirement})[capability])
            total_weight += requirement.weight

            level = capabilities.get(capability)
            if level:
                score += requirement.weight * min(level / requirement.level, 1.0)

        return score / total_weight if total_weight > 0 else 0.0
