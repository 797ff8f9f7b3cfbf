from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import typer
from rich import print

from . import __version__
from .capture import resolve_project
from .config import SessionMemConfig, load_config
from .errors import StorageError
from .hooks import HOOK_EVENTS, HOOKS, hook_response, run_hook
from .log import configure_logging
from .service import MemoryService
from .store import SessionStore

app = typer.Typer(help="sessionmem: session memory store and context digest")


def _config(db_path: str | None = None) -> SessionMemConfig:
    config = load_config()
    if db_path:
        config.db_path = db_path
    return config


def _service(config: SessionMemConfig) -> MemoryService:
    try:
        return MemoryService.from_config(config)
    except StorageError as exc:
        print(f"[red]Cannot open database: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _project(project: str | None) -> str:
    return resolve_project(None, project, os.getcwd())


@app.command()
def version() -> None:
    """Print the installed version."""
    typer.echo(__version__)


@app.command("init-db")
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    config = _config(db_path)
    store = SessionStore(config.db_path)
    store.close()
    print(f"Initialized database at {store.db_path}")


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind (defaults to settings)"),
    port: int = typer.Option(None, help="Port to bind (defaults to settings)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Run the loopback worker HTTP API."""
    from .worker import start_worker

    config = _config(db_path)
    configure_logging(config.log_level, config.log_dir, console=True)
    service = _service(config)
    try:
        server = start_worker(service, host or config.worker_host, port or config.worker_port)
    except KeyboardInterrupt:
        return
    finally:
        service.close()
    if server is None:
        print(f"[yellow]Port {port or config.worker_port} already in use[/yellow]")


@app.command()
def context(
    project: str = typer.Option(None, help="Project name (defaults to current directory name)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print the context digest for a project."""
    service = _service(_config(db_path))
    try:
        typer.echo(service.get_context(_project(project), cwd=os.getcwd()))
    finally:
        service.close()


@app.command()
def search(
    query: str,
    limit: int = typer.Option(20, help="Max results"),
    project: str = typer.Option(None, help="Project name (defaults to current directory name)"),
    all_projects: bool = typer.Option(False, help="Search across all projects"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Search observations by keyword, most recent first."""
    service = _service(_config(db_path))
    try:
        scope = None if all_projects else _project(project)
        results = service.search(query, project=scope, limit=limit)
        if not results:
            print("[dim]No matches[/dim]")
            return
        for item in results:
            subtitle = f" - {item['subtitle']}" if item.get("subtitle") else ""
            typer.echo(
                f"#{item['id']} ({item['type']}) {item['title'] or 'Untitled'}{subtitle}"
                f"  [{item['project']} {item['created_at']}]"
            )
    finally:
        service.close()


@app.command()
def show(
    observation_id: int, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Print an observation as JSON."""
    service = _service(_config(db_path))
    try:
        observation = service.get_observation(observation_id)
        if observation is None:
            print(f"[red]Observation {observation_id} not found[/red]")
            raise typer.Exit(code=1)
        typer.echo(json.dumps(observation.to_dict(), indent=2, ensure_ascii=False))
    finally:
        service.close()


@app.command()
def projects(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """List projects that have sessions."""
    service = _service(_config(db_path))
    try:
        for name in service.list_projects():
            typer.echo(name)
    finally:
        service.close()


@app.command()
def forget(
    observation_id: int, db_path: str = typer.Option(None, help="Path to SQLite database")
) -> None:
    """Delete an observation by id and drop it from the search index."""
    service = _service(_config(db_path))
    try:
        removed = service.forget_observation(observation_id)
    finally:
        service.close()
    if not removed:
        print(f"[red]Observation {observation_id} not found[/red]")
        raise typer.Exit(code=1)
    print(f"Forgot observation {observation_id}")


@app.command()
def ingest(
    session_id: str,
    file: Path = typer.Option(None, help="File with <observation>/<summary> XML (default stdin)"),
    project: str = typer.Option(None, help="Project name (defaults to current directory name)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Store observations and a summary already distilled into XML blocks."""
    text = file.read_text(encoding="utf-8") if file else sys.stdin.read()
    service = _service(_config(db_path))
    try:
        result = service.ingest_distilled(session_id, _project(project), text)
    finally:
        service.close()
    print(
        f"Stored {len(result.observation_ids)} observations"
        + (f" and summary #{result.summary_id}" if result.summary_id else "")
    )


@app.command()
def mcp() -> None:
    """Run the MCP server over stdio."""
    from .mcp_server import run

    run()


@app.command()
def hook(
    event: str = typer.Argument(..., help="start | prompt | tool | stop"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Handle a host hook: JSON payload on stdin, hook response on stdout."""
    if event not in HOOKS:
        print(f"[red]Unknown hook: {event}[/red]")
        raise typer.Exit(code=2)
    config = _config(db_path)
    configure_logging(config.log_level, config.log_dir)
    raw = sys.stdin.read()
    try:
        payload = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        typer.echo(json.dumps(hook_response(HOOK_EVENTS[event])))
        return
    service = _service(config)
    try:
        response = run_hook(event, service, payload)
    finally:
        service.close()
    typer.echo(json.dumps(response, ensure_ascii=False))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
