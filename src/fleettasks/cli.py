from __future__ import annotations

import json
from typing import Optional

import typer
import uvicorn
from dotenv import load_dotenv

from fleettasks.core.config import Settings

app = typer.Typer(add_completion=False)

def _load_env() -> Settings:
    load_dotenv()
    return Settings.from_env()

def _setup_logging(settings: Settings) -> None:
    """Configure centralized logging to both stdout and log files."""
    from fleettasks.core.logging_config import setup_logging

    setup_logging(log_dir=settings.log_dir, log_level=settings.log_level, clear_on_launch=settings.clear_logs_on_launch)

@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind host (defaults to FLEETTASKS_HOST)"),
    port: Optional[int] = typer.Option(None, help="Bind port (defaults to FLEETTASKS_PORT)"),
) -> None:
    settings = _load_env()
    _setup_logging(settings)

    from fleettasks.core.gateway import create_app

    uvicorn.run(create_app(settings=settings), host=host or settings.host, port=port or settings.port)

@app.command()
def version() -> None:
    from fleettasks import __version__

    typer.echo(__version__)

@app.command()
def tasks(
    kind: str = typer.Option("", help="Only show tasks of this kind"),
    as_json: bool = typer.Option(False, "--json", help="Print the stored history as JSON"),
) -> None:
    """Show the persisted task history."""
    settings = _load_env()

    from fleettasks.core.persistence import dump_stored, read_stored_file

    stored = read_stored_file(settings.state_path, settings.persist_max_chars)
    if stored is None:
        typer.echo("(no task history)")
        raise typer.Exit()
    if kind:
        stored = stored.model_copy(update={"items": [item for item in stored.items if item.kind == kind]})
    if as_json:
        typer.echo(dump_stored(stored))
        raise typer.Exit()
    for item in stored.items:
        statuses = ", ".join(f"{serial}={d.status}" for serial, d in item.devices.items())
        typer.echo(f"{item.id}  {item.status:<9}  {item.kind:<20}  {item.title}  [{statuses}]")

@app.command("clear-completed")
def clear_completed_cmd() -> None:
    """Drop finished tasks from the persisted history."""
    settings = _load_env()

    from fleettasks.core.engine import TaskEngine

    engine = TaskEngine.from_settings(settings)
    engine.load()
    removed = engine.clear_completed()
    engine.close()
    typer.echo(json.dumps({"cleared": removed}))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
