"""Shared helpers for CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from retour.config import RetourSettings
from retour.core.orchestrator import Orchestrator

console = Console()


def database_option() -> Path | None:
    return typer.Option(
        None,
        "--db",
        "-d",
        help="Path to the SQLite database (defaults to RETOUR_DATABASE_PATH).",
    )


def open_orchestrator(db: Path | None) -> Orchestrator:
    """Build an orchestrator over ``db``, or over the configured database."""
    config = RetourSettings()
    if db is not None:
        config = config.model_copy(update={"database_path": db})
    return Orchestrator(config=config)


def fail(message: str, hint: str | None = None) -> None:
    """Print an error and exit with status 1."""
    console.print(f"[bold red]{message}[/bold red]")
    if hint:
        console.print(f"[dim]{hint}[/dim]")
    raise typer.Exit(code=1)
