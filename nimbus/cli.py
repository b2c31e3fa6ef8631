"""Command-line entry point for Nimbus."""

import asyncio
import importlib
import os
from datetime import datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from nimbus import __version__
from nimbus.chat_session import ChatSession
from nimbus.config import Config, get_config, set_config
from nimbus.engine import AgentEngine
from nimbus.exceptions import ConfigurationError, SessionNotFoundError
from nimbus.logging import configure_logging, get_logger
from nimbus.models import TimelineEvent
from nimbus.session import SessionStore

log = get_logger(__name__)

app = typer.Typer(help="Nimbus - terminal AI coding assistant", no_args_is_help=True)
sessions_app = typer.Typer(help="Inspect stored sessions")
app.add_typer(sessions_app, name="sessions")

console = Console()

_KIND_STYLES = {
    "user": "bold cyan",
    "assistant": "white",
    "reasoning": "dim italic",
    "tool_call": "yellow",
    "tool_result": "green",
    "status": "bold red",
}


@app.callback()
def main(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Load configuration and set up logging for every command."""
    if verbose:
        os.environ["NIMBUS_LOGGING__LEVEL"] = "DEBUG"

    try:
        cfg = Config.load(Path(config) if config else None)
    except Exception as e:
        console.print(f"[red]Failed to load config {config}: {e}[/red]")
        raise typer.Exit(code=1)

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)


def load_engine(import_path: str) -> AgentEngine:
    """Import an engine from ``module:attribute``.

    The attribute may be an engine instance or a zero-argument factory.

    Raises:
        ConfigurationError: if the path is malformed or does not yield an engine
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Engine must be given as module:attribute, got '{import_path}'")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load engine '{import_path}': {e}") from e

    engine = target
    if not isinstance(engine, AgentEngine) and callable(engine):
        engine = engine()
    if not isinstance(engine, AgentEngine):
        raise ConfigurationError(f"'{import_path}' did not produce an AgentEngine")
    return engine


def _format_time(ms: int | None) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _print_event(event: TimelineEvent) -> None:
    style = _KIND_STYLES.get(event.kind, "white")
    label = event.kind if not event.tool_name else f"{event.kind} {event.tool_name}"
    if event.status:
        label = f"{label} [{event.status}]"
    console.print(f"[{style}]{escape(label)}:[/{style}] {escape(event.content)}", highlight=False)


def _open_store() -> SessionStore:
    return SessionStore(get_config().session.path)


@sessions_app.command("list")
def list_sessions(
    project_dir: str = typer.Option("", "--project-dir", help="Only sessions of this directory"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum rows"),
) -> None:
    """List recent sessions."""

    async def _run() -> None:
        store = _open_store()
        try:
            rows = await store.list_sessions(project_dir or None, limit=limit)
        finally:
            await store.close()

        if not rows:
            console.print("[yellow]No sessions found.[/yellow]")
            return

        table = Table(title="Sessions", show_header=True, header_style="bold cyan")
        table.add_column("ID")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Updated")
        for session in rows:
            table.add_row(session.id, session.title, session.status, _format_time(session.updated_at))
        console.print(table)

    asyncio.run(_run())


@sessions_app.command("show")
def show_session(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Print the timeline and token totals of a session."""

    async def _run() -> bool:
        store = _open_store()
        try:
            try:
                session = await store.require_session(session_id)
            except SessionNotFoundError:
                return False
            events = await store.list_timeline_events(session_id)
            totals = await store.get_session_token_totals(session_id)
        finally:
            await store.close()

        console.print(f"[bold]{session.title}[/bold] ({session.status})")
        if session.error:
            console.print(f"[red]{session.error}[/red]")
        for event in events:
            _print_event(event)
        console.print(f"[dim]tokens: {totals.input} in / {totals.output} out[/dim]")
        return True

    if not asyncio.run(_run()):
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(code=1)


@sessions_app.command("delete")
def delete_session(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Delete a session and everything recorded for it."""

    async def _run() -> bool:
        store = _open_store()
        try:
            return await store.delete_session(session_id)
        finally:
            await store.close()

    if not asyncio.run(_run()):
        console.print(f"[red]Session not found: {session_id}[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]Deleted {session_id}[/green]")


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Message to send"),
    engine: str = typer.Option(..., "--engine", "-e", help="Engine as module:attribute"),
    mode: str = typer.Option("", "--mode", help="plan or build"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    project_dir: str = typer.Option("", "--project-dir", help="Project directory (default: cwd)"),
) -> None:
    """Run a single turn and print its timeline."""
    try:
        agent_engine = load_engine(engine)
    except ConfigurationError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=2)

    async def _run() -> str | None:
        store = _open_store()
        chat = ChatSession(
            Path(project_dir) if project_dir else Path.cwd(),
            agent_engine,
            store=store,
            mode=mode or None,
            model_override=model or None,
            provider_override=provider or None,
        )
        try:
            await chat.submit_turn(prompt)
            state = chat.get_state()
            for event in state.timeline_events:
                _print_event(event)
            console.print(
                f"[dim]session {state.session_id} | tokens: {state.tokens.input} in / "
                f"{state.tokens.output} out | context {state.context_usage.percent}%[/dim]"
            )
            return state.error
        finally:
            await chat.close()
            await store.close()

    error = asyncio.run(_run())
    if error:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Nimbus v{__version__}")


if __name__ == "__main__":
    app()
