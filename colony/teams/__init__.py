from .formation import Role, Team, TeamFormation

__all__ = ["Role", "Team", "TeamFormation"]
