"""Run votes from ballot files"""
from pathlib import Path
from typing import Optional
import typer
from rich.console import Console
from rich.table import Table

from colony.collective.intelligence import BallotRejectedError, CollectiveIntelligence
from colony.errors import StateError
from cli.commands import load_document

app = typer.Typer()
console = Console()

@app.command()
def tally(
    ctx: typer.Context,
    ballots_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file with topic, options and ballots"),
    method: Optional[str] = typer.Option(None, "--method", "-m", help="majority, weighted or ranked"),
):
    """Close a vote built from a ballot file and show the tally

    The file looks like:

        topic: Which plan?
        options: [a, b]
        ballots:
          agent-1: a
          agent-2: {choice: b, confidence: 0.4}
    """
    data = load_document(ballots_file)
    collective = CollectiveIntelligence(ctx.obj)

    try:
        vote = collective.create_vote(
            topic=data.get("topic", ballots_file.stem),
            options=data.get("options"),
            method=method or data.get("method"),
            participants=data.get("participants"),
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    for agent_id, ballot in (data.get("ballots") or {}).items():
        if isinstance(ballot, dict):
            choice, confidence = ballot.get("choice"), ballot.get("confidence", 1.0)
        else:
            choice, confidence = ballot, 1.0
        try:
            collective.cast_vote(vote.id, str(agent_id), choice, confidence)
        except BallotRejectedError as e:
            console.print(f"[yellow]Skipped ballot from {agent_id}: {e} ({e.reason.value})[/yellow]")

    try:
        result = collective.close_vote(vote.id)
    except StateError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    table = Table(title=f"{vote.topic} ({result.method})", show_header=True)
    table.add_column("Choice", style="cyan")
    table.add_column("Score", style="white", justify="right")
    for choice, score in sorted(result.details.tally.items(), key=lambda kv: kv[1], reverse=True):
        table.add_row(str(choice), f"{score:g}")
    console.print(table)

    if result.details.rounds:
        console.print(f"Rounds: {result.details.rounds}")
    if result.details.eliminated:
        console.print(f"Eliminated: {', '.join(str(o) for o in result.details.eliminated)}")
    console.print(f"Ballots: {result.participant_count}")

    if result.winner is None:
        console.print("[yellow]No winner[/yellow]")
    else:
        console.print(f"[bold green]Winner: {result.winner}[/bold green]")
