"""Main entry point for Burrow."""

import asyncio
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from burrow.agent import Agent, TurnResult
from burrow.config import Config, set_config
from burrow.exceptions import BurrowError, ConfigurationError
from burrow.logging import configure_logging, log
from burrow.session import Message, Session, SessionManager
from burrow.store import SandboxStore

app = typer.Typer(help="Burrow - a local agentic assistant over your notes")
console = Console()

EXIT_COMMANDS = {"/exit", "/quit"}


def _load_config(config: str = "", model: str = "", verbose: bool = False) -> Config:
    if verbose:
        os.environ["BURROW_LOGGING__LEVEL"] = "DEBUG"

    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except ConfigurationError as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model

    set_config(cfg)
    configure_logging(cfg)
    return cfg


def _open_store(cfg: Config) -> SandboxStore:
    return SandboxStore(
        cfg.resolved_sandbox_path(),
        search_max_results=cfg.sandbox.search_max_results,
        search_line_chars=cfg.sandbox.search_line_chars,
    )


def _sessions_table(sessions: list[Session]) -> Table:
    table = Table(title="Sessions")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    table.add_column("Preview", overflow="fold")
    for session in sessions:
        name = f"* {session.name}" if session.pinned else session.name
        table.add_row(session.id, name, str(session.message_count), session.updated_at, session.preview)
    return table


class _StreamPrinter:
    """Prints only the newly displayable suffix of each streaming message."""

    def __init__(self) -> None:
        self._shown: dict[str, int] = {}

    def __call__(self, message: Message, display: str) -> None:
        offset = self._shown.get(message.id, 0)
        if len(display) > offset:
            console.print(display[offset:], end="", markup=False, highlight=False)
            self._shown[message.id] = len(display)


async def _run_cancellable(agent: Agent, text: str) -> tuple[TurnResult | None, bool]:
    """Run a turn; Ctrl-C stops the turn instead of the REPL."""
    work_task = asyncio.create_task(agent.submit(text))
    try:
        return await asyncio.shield(work_task), False
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\n[yellow]Cancelling current turn[/yellow]")
        current = asyncio.current_task()
        if current is not None:
            current.uncancel()
        await agent.stop()
        try:
            return await work_task, True
        except asyncio.CancelledError:
            return None, True


async def run_interactive(cfg: Config) -> None:
    agent = Agent.from_config(
        cfg,
        on_fragment=_StreamPrinter(),
        on_tool_result=lambda call: console.print(
            f"\n[dim]{call.name} -> {call.status.value}[/dim]"
        ),
    )
    await agent.initialize()
    if agent.session is not None:
        console.print(f"[dim]Resumed session {agent.session.name} ({agent.session.id})[/dim]")
    console.print("[bold]Burrow[/bold] - type /exit to quit, /new for a new chat")

    try:
        while True:
            try:
                text = (await asyncio.to_thread(console.input, "[bold green]> [/bold green]")).strip()
            except EOFError:
                break
            if not text:
                continue
            if text in EXIT_COMMANDS:
                break
            if text == "/new":
                session = await agent.new_session()
                console.print(f"[dim]Started session {session.id}[/dim]")
                continue
            if text == "/sessions":
                console.print(_sessions_table(await agent.session_manager.list_sessions()))
                continue
            if text.startswith("/switch"):
                _, _, session_id = text.partition(" ")
                try:
                    session = await agent.switch_session(session_id.strip())
                except BurrowError as e:
                    console.print(f"[red]{e}[/red]")
                    continue
                console.print(f"[dim]Switched to {session.name}[/dim]")
                continue

            result, cancelled = await _run_cancellable(agent, text)
            console.print()
            if cancelled:
                console.print("[yellow]Turn cancelled[/yellow]")
            elif result is not None and result.reason.value != "no_more_tool_calls":
                console.print(f"[yellow]Turn ended: {result.reason.value}[/yellow]")
    finally:
        await agent.stop()
        await agent.port.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat session."""
    cfg = _load_config(config, model, verbose)
    try:
        asyncio.run(run_interactive(cfg))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


@app.command()
def sessions(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List saved chat sessions, most recent first."""
    cfg = _load_config(config)
    manager = SessionManager(_open_store(cfg), default_name=cfg.session.default_name)
    items = asyncio.run(manager.list_sessions())
    if not items:
        console.print("No sessions yet.")
        return
    console.print(_sessions_table(items))


@app.command()
def files(
    directory: str = typer.Argument(".", help="Directory relative to the sandbox root"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List files in the sandbox."""
    cfg = _load_config(config)
    store = _open_store(cfg)
    try:
        console.print(store.format_listing(directory), markup=False, highlight=False)
    except BurrowError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from burrow import __version__
    console.print(f"Burrow v{__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
