# Test team registry, role assignment and capability matching
import pytest

from colony.errors import NotFoundError, StateError
from colony.teams.formation import CapabilityRequirement, TeamFormation


@pytest.fixture
def teams():
    return TeamFormation()


@pytest.fixture
def squad(teams):
    return teams.create_team("t1", name="Red", goal="ship", roles={
        "lead": {"required_capabilities": {"planning": 0.8}},
        "dev": {"required_capabilities": ["coding"]},
    })


class TestTeams:

    def test_create_with_roles(self, squad):
        assert squad.name == "Red"
        assert set(squad.roles) == {"lead", "dev"}
        assert squad.roles["lead"].required_capabilities["planning"] == CapabilityRequirement(level=0.8)
        assert squad.roles["dev"].required_capabilities["coding"] == CapabilityRequirement()

    def test_generated_id(self, teams):
        team = teams.create_team(name="Blue")
        assert team.id.startswith("team_")
        assert teams.get_team(team.id) is team

    def test_duplicate_and_unknown(self, teams, squad):
        with pytest.raises(StateError):
            teams.create_team("t1")
        with pytest.raises(NotFoundError):
            teams.get_team("nope")
        assert teams.find_team("nope") is None

    def test_duplicate_role(self, teams, squad):
        with pytest.raises(StateError):
            teams.add_role("t1", "lead")

    def test_dissolve(self, teams, squad):
        teams.add_agent_to_team("t1", "alice")
        assert teams.dissolve_team("t1")
        assert teams.get_agent_team("alice") is None
        assert teams.list_teams() == []


class TestMembership:

    def test_join_with_role(self, teams, squad):
        member = teams.add_agent_to_team("t1", "alice", "lead")

        assert member.role == "lead"
        assert squad.roles["lead"].assigned_agent == "alice"
        assert teams.has_role("t1", "alice", "lead")
        assert teams.get_agents_by_role("t1", "lead") == ["alice"]

    def test_join_with_unknown_role(self, teams, squad):
        member = teams.add_agent_to_team("t1", "alice", "bard")
        assert member.role is None
        assert "alice" in squad.members

    def test_agent_is_never_in_two_teams(self, teams, squad):
        other = teams.create_team("t2", roles={"dev": {}})
        teams.add_agent_to_team("t1", "alice", "lead")

        teams.add_agent_to_team("t2", "alice", "dev")

        assert "alice" not in squad.members
        assert squad.roles["lead"].assigned_agent is None
        assert "alice" in other.members
        assert teams.get_agent_team("alice") is other
        assert sum("alice" in t.members for t in teams.list_teams()) == 1

    def test_rejoining_keeps_member_record(self, teams, squad):
        first = teams.add_agent_to_team("t1", "alice")
        teams.update_agent_performance("t1", "alice", reward=2)

        again = teams.add_agent_to_team("t1", "alice", "dev")

        assert again is first
        assert again.performance.total_reward == 2
        assert again.role == "dev"

    def test_remove_frees_role(self, teams, squad):
        teams.add_agent_to_team("t1", "alice", "lead")

        assert teams.remove_agent_from_team("t1", "alice")
        assert not teams.remove_agent_from_team("t1", "alice")
        assert squad.roles["lead"].assigned_agent is None
        assert teams.get_agent_team("alice") is None

    def test_requires_registered_agents(self, comm):
        teams = TeamFormation(agents=comm)
        teams.create_team("t1")
        comm.register_agent("alice")

        teams.add_agent_to_team("t1", "alice")
        with pytest.raises(StateError):
            teams.add_agent_to_team("t1", "ghost")


class TestRoles:

    def test_reassignment_demotes_previous_holder(self, teams, squad):
        teams.add_agent_to_team("t1", "alice", "lead")
        teams.add_agent_to_team("t1", "bob")

        teams.assign_role("t1", "lead", "bob")

        assert squad.roles["lead"].assigned_agent == "bob"
        assert squad.members["alice"].role is None
        assert squad.members["bob"].role == "lead"

    def test_switching_roles_frees_the_old_one(self, teams, squad):
        teams.add_agent_to_team("t1", "alice", "lead")

        teams.assign_role("t1", "dev", "alice")

        assert squad.roles["lead"].assigned_agent is None
        assert squad.roles["dev"].assigned_agent == "alice"

    def test_assign_requires_membership(self, teams, squad):
        with pytest.raises(StateError):
            teams.assign_role("t1", "lead", "stranger")
        with pytest.raises(NotFoundError):
            teams.assign_role("t1", "bard", "stranger")


class TestPerformance:

    def test_team_performance(self, teams, squad):
        teams.update_team_performance("t1", reward=1.5, success=True)
        teams.update_team_performance("t1", success=False)
        performance = teams.update_team_performance("t1", reward=0.5, success=True)

        assert performance.total_reward == 2.0
        assert performance.completed_tasks == 2
        assert performance.failed_tasks == 1
        assert performance.success_rate == pytest.approx(2 / 3)

    def test_agent_performance_requires_membership(self, teams, squad):
        with pytest.raises(NotFoundError):
            teams.update_agent_performance("t1", "alice", reward=1)

    def test_statistics(self, teams, squad):
        teams.add_agent_to_team("t1", "alice", "lead")
        teams.add_agent_to_team("t1", "bob")

        stats = teams.get_team_statistics("t1")

        assert stats["member_count"] == 2
        assert stats["role_count"] == 2
        assert stats["filled_roles"] == 1
        assert stats["age_seconds"] >= 0


class TestFormation:

    def test_compatibility(self):
        requirements = {
            "coding": CapabilityRequirement(level=0.8, weight=3),
            "review": CapabilityRequirement(level=0.5, weight=1),
        }
        score = TeamFormation.calculate_role_compatibility({"coding": 0.4, "review": 0.9}, requirements)
        # coding meets half its level, review is capped at 1
        assert score == pytest.approx((3 * 0.5 + 1 * 1.0) / 4)
        assert TeamFormation.calculate_role_compatibility({}, requirements) == 0.0
        assert TeamFormation.calculate_role_compatibility({"x": 1}, {}) == 0.0

    def test_best_agents_get_roles(self, teams):
        plan = teams.find_optimal_team_formation(
            ["alice", "bob", "carol"],
            [{"coding": 0.9}, {"review": 0.9, "coding": 0.3}, {"planning": 1.0}],
            {"roles": {
                "dev": {"coding": 0.9},
                "reviewer": {"review": 0.9},
                "lead": {"planning": 1.0},
            }},
        )

        assert plan.roles == {"dev": "alice", "reviewer": "bob", "lead": "carol"}
        assert plan.assignment_for("alice").score == pytest.approx(1.0)

    def test_no_agent_or_role_used_twice(self, teams):
        agent_ids = [f"a{i}" for i in range(6)]
        capabilities = [{"coding": 0.1 * (i + 1), "review": 0.1 * (6 - i)} for i in range(6)]
        plan = teams.find_optimal_team_formation(agent_ids, capabilities, {
            "dev": {"coding": 1.0},
            "reviewer": {"review": 1.0},
            "tester": ["coding", "review"],
        })

        assigned = [m for m in plan.members if m.role_id is not None]
        assert len({m.agent_id for m in assigned}) == len(assigned) == 3
        assert len({m.role_id for m in assigned}) == 3
        assert sorted(m.agent_id for m in plan.members) == sorted(agent_ids)

    def test_more_roles_than_agents(self, teams):
        plan = teams.find_optimal_team_formation(["alice"], [{"coding": 1}], {
            "dev": ["coding"],
            "reviewer": ["review"],
        })

        assert plan.roles == {"dev": "alice", "reviewer": None}

    def test_plan_is_not_committed(self, teams):
        teams.find_optimal_team_formation(["alice"], [{"coding": 1}], {"dev": ["coding"]})
        assert teams.list_teams() == []

    def test_length_mismatch(self, teams):
        with pytest.raises(ValueError):
            teams.find_optimal_team_formation(["alice", "bob"], [{}], {"dev": []})
