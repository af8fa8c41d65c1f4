from pathlib import Path
import logging
import typer
from rich.console import Console
from rich.logging import RichHandler
from colony.config import get_settings

app = typer.Typer(add_completion=False, rich_markup_mode="rich")
console = Console(highlight=False)

@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output"),
    config: Path = typer.Option(
        None, "--config", "-c", exists=True, file_okay=True, dir_okay=False,
        help="Path to .colony.yml (overrides env)"
    ),
):
    """
    :ant: [bold cyan]Colony CLI[/bold cyan]
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    ctx.obj = get_settings(config_path=config)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())

# Sub-commands imported lazily to cut startup time
from importlib import import_module

for _cmd in ("vote", "team", "broker", "insights"):
    mod = import_module(f"cli.commands.{_cmd}")
    app.add_typer(mod.app, name=_cmd, help=mod.__doc__)
