"""Aggregate insights into decisions"""
from pathlib import Path
from typing import Optional
import json
import typer
from rich.console import Console
from rich.panel import Panel

from colony.collective.intelligence import CollectiveIntelligence
from colony.errors import AggregationError
from cli.commands import load_document

app = typer.Typer()
console = Console()

@app.command()
def aggregate(
    ctx: typer.Context,
    insights_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file with a task and its insights"),
    method: Optional[str] = typer.Option(None, "--method", "-m", help="weighted, consensus, majority or average"),
):
    """Combine a task's insights into a decision

    The file looks like:

        task: estimate
        insights:
          - {agent: alice, content: 3, confidence: 0.9}
          - {agent: bob, content: 5, confidence: 0.3}
    """
    data = load_document(insights_file)
    task_id = str(data.get("task", insights_file.stem))
    collective = CollectiveIntelligence(ctx.obj)

    for item in data.get("insights") or []:
        collective.add_insight(
            task_id,
            str(item.get("agent", "anonymous")),
            item.get("content"),
            confidence=item.get("confidence"),
            evidence=item.get("evidence"),
        )

    try:
        decision = collective.aggregate_insights(task_id, method)
    except (AggregationError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)

    details = {k: v for k, v in decision.result.items() if k != "result"}
    panel = Panel(
        f"Task: {decision.task_id}\n"
        f"Method: {decision.method}\n"
        f"Insights: {len(decision.insight_ids)}\n"
        f"Result: [bold]{decision.result.get('result')}[/bold]\n"
        f"Details: {json.dumps(details, default=str)}",
        title=f"Decision {decision.id}",
        border_style="cyan"
    )
    console.print(panel)
