"""Replay scripted traffic through a broker"""
from pathlib import Path
from typing import Any, Dict, List
import typer
from rich.console import Console
from rich.table import Table
from rich.markup import escape
from rich.text import Text

from colony.communication.broker import MessageBroker
from colony.communication.collaboration import CollaborationProtocol
from colony.communication.monitor import FAILURE_STATUSES, MessageMonitor, MessageStatus
from colony.communication.protocol import Envelope
from colony.errors import ValidationError
from cli.commands import load_document

app = typer.Typer()
console = Console()

STATUS_STYLES = {
    MessageStatus.DELIVERED: "green",
    MessageStatus.FLUSHED: "green",
    MessageStatus.QUEUED: "yellow",
    MessageStatus.NO_SUBSCRIBERS: "yellow",
    MessageStatus.EVICTED: "red",
    MessageStatus.FAILED: "red",
    MessageStatus.REJECTED: "red",
}


def _make_handler(subscriber_id: str, fail: bool, deliveries: Dict[str, List[str]]):
    def _handler(message: Envelope) -> None:
        if fail:
            raise RuntimeError(f"{subscriber_id} refused {message.id}")
        deliveries.setdefault(subscriber_id, []).append(message.id)
    return _handler


def _subscribe(broker: MessageBroker, entry: Dict[str, Any], deliveries: Dict[str, List[str]]) -> None:
    subscriber_id = str(entry["id"])
    handler = _make_handler(subscriber_id, bool(entry.get("fail")), deliveries)
    for topic in entry.get("topics") or [subscriber_id]:
        flushed = broker.subscribe(subscriber_id, topic, handler)
        if flushed:
            console.print(f"[green]{subscriber_id} picked up {flushed} queued message(s)[/green]")


@app.command()
def replay(
    ctx: typer.Context,
    script: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML file of subscribers and steps"),
    save_failures: bool = typer.Option(False, "--save-failures", help="Write failed message traces to the log dir"),
):
    """Publish a scripted message list through a fresh broker

    The file looks like:

        subscribers:
          - {id: alice, topics: [alice, "topic:news"]}
          - {id: bob, fail: true}
        steps:
          - {sender: alice, recipient: bob, kind: notification, content: {event: hi, data: {}}}
          - subscribe: {id: carol}
    """
    data = load_document(script)
    settings = ctx.obj

    protocol = CollaborationProtocol(settings)
    monitor = MessageMonitor(log_dir=settings.log_dir if settings else None)
    broker = MessageBroker(protocol, settings, monitor)
    deliveries: Dict[str, List[str]] = {}

    for entry in data.get("subscribers") or []:
        _subscribe(broker, entry, deliveries)

    for step in data.get("steps") or []:
        if "subscribe" in step:
            _subscribe(broker, step["subscribe"], deliveries)
            continue

        message = protocol.create_message(
            str(step.get("sender", "")),
            str(step.get("recipient", "")),
            step.get("kind", ""),
            step.get("content") or {},
            team_id=step.get("teamId"),
            role_id=step.get("roleId"),
        )
        try:
            invoked = broker.publish_message(message)
        except ValidationError as e:
            console.print(f"[red]Rejected {message.sender} → {message.recipient}: {escape(str(e))}[/red]")
            continue
        console.print(f"{message.sender} → {message.recipient} ({message.kind}): {invoked} handler(s)")

    # Summary table
    table = Table(title="Broker Message Summary", show_header=True)
    table.add_column("Status", style="cyan")
    table.add_column("Count", style="white")
    counts = monitor.status_counts()
    for status in MessageStatus:
        count = counts.get(status, 0)
        if count > 0:
            table.add_row(Text(status.value, style=STATUS_STYLES.get(status, "white")), str(count))
    console.print(table)

    stats = broker.get_stats()
    console.print(
        f"Published: {stats['messages_published']}  Delivered: {stats['messages_delivered']}  "
        f"Queued: {stats['queued_messages']}  Evicted: {stats['messages_evicted']}  "
        f"Handler errors: {stats['handler_errors']}"
    )
    for subscriber_id, received in deliveries.items():
        console.print(f"  {subscriber_id}: received {len(received)}")

    # Show recent failures
    failures = monitor.get_recent_failures(5)
    if failures:
        console.print("\n[bold red]Recent Failures:[/bold red]")
        for trace in failures:
            last_event = next(e for e in reversed(trace.events) if e.status in FAILURE_STATUSES)
            console.print(f"\n• Message: {trace.message_id}")
            console.print(f"  From: {trace.sender} → {trace.recipient}")
            console.print(f"  Status: [red]{last_event.status.value}[/red]  {last_event.details}")
            if last_event.error:
                console.print(f"  Error: [red]{escape(last_event.error)}[/red]")
            if save_failures:
                path = monitor.save_trace(trace.message_id)
                console.print(f"  Saved: {path}")
