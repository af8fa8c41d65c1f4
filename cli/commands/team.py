"""Plan teams from capability files"""
from pathlib import Path
import typer
from rich.console import Console
from rich.table import Table

from colony.teams.formation import TeamFormation
from cli.commands import load_document

app = typer.Typer()
console = Console()

@app.command()
def form(
    team_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file with agents and roles"),
):
    """Match agents to roles by capability

    The file looks like:

        agents:
          alice: {coding: 0.9, review: 0.4}
          bob: {review: 0.8}
        roles:
          developer: {coding: {level: 0.8, weight: 2}}
          reviewer: [review]
    """
    data = load_document(team_file)
    agents = data.get("agents") or {}
    roles = data.get("roles") or {}

    if not agents or not roles:
        console.print("[red]Both 'agents' and 'roles' are required[/red]")
        raise typer.Exit(code=1)

    plan = TeamFormation().find_optimal_team_formation(
        [str(agent_id) for agent_id in agents],
        [caps or {} for caps in agents.values()],
        {"roles": roles},
    )

    table = Table(title=f"Formation {plan.team_id}", show_header=True)
    table.add_column("Agent", style="cyan")
    table.add_column("Role", style="white")
    table.add_column("Compatibility", style="green", justify="right")
    for assignment in plan.members:
        if assignment.role_id is None:
            table.add_row(assignment.agent_id, "[dim]unassigned[/dim]", "-")
        else:
            table.add_row(assignment.agent_id, assignment.role_id, f"{assignment.score:.2f}")
    console.print(table)

    vacant = [role_id for role_id, agent_id in plan.roles.items() if agent_id is None]
    if vacant:
        console.print(f"[yellow]Vacant roles: {', '.join(vacant)}[/yellow]")
