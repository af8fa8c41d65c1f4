from pathlib import Path
from typing import Any, Dict
import typer
import yaml


def load_document(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping, exiting with an error for anything else."""
    with open(path, "r") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        typer.secho(f"{path} must contain a YAML mapping", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)
    return data
