"""Main CLI entry point for colloquy."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.table import Table

from colloquy import __version__
from colloquy.chat import Chat
from colloquy.config.loader import find_config_file, load_config
from colloquy.config.models import ChatConfig, Provider
from colloquy.context.message import Role
from colloquy.context.parts import TextPart
from colloquy.context.session import SessionManager
from colloquy.context.store import ContextStore
from colloquy.llm.client import LLMClient
from colloquy.tools.builtin import register_builtin_tools
from colloquy.tools.prompter import ApprovalPreferences, AutoApprovePrompter, ConsolePrompter
from colloquy.tools.registry import ToolRegistry

app = typer.Typer(
    name="colloquy",
    help="Conversational model client with a self-managing context",
    add_completion=False,
)

console = Console(stderr=True)
out = Console()

logger = logging.getLogger("colloquy")


def setup_logging(verbose: bool = False, log_file: Optional[Path] = None) -> None:
    handlers: list[logging.Handler] = [RichHandler(console=console, show_path=False)]
    if log_file is not None:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


def version_callback(value: bool):
    if value:
        console.print(f"colloquy v{__version__}")
        raise typer.Exit()


def _load(config_file: Optional[Path], overrides: dict) -> ChatConfig:
    path = config_file or find_config_file()
    try:
        return load_config(path, overrides)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """colloquy - chat with a model that manages its own context."""
    pass


def _print_status(chat: Chat) -> None:
    snap = chat.status_snapshot()
    table = Table(show_header=False)
    table.add_row("Phase", snap.current_phase.value)
    table.add_row("Token usage", snap.token_usage_display)
    table.add_row("Executing tool", snap.executing_tool_name or "-")
    table.add_row("Last error", snap.last_error_summary or "-")
    console.print(table)


def _reply_start(chat: Chat) -> int:
    """Sequence id above every message already in the context."""
    return max((m.sequence_id for m in chat.store.snapshot()), default=0) + 1


def _print_reply(chat: Chat, since: int) -> None:
    for message in chat.store.snapshot():
        if message.sequence_id < since or message.role != Role.MODEL:
            continue
        for part in message.parts:
            if isinstance(part, TextPart) and not part.thought and part.text.strip():
                out.print(Markdown(part.text))


def _handle_command(chat: Chat, line: str) -> bool:
    """Run a slash command. Returns False when the user wants to quit."""
    command, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if command in ("quit", "exit"):
        return False
    if command == "status":
        _print_status(chat)
    elif command == "summary":
        out.print(chat.sessions.summary_table())
    elif command == "save":
        path = chat.save_session(arg or chat.config.session_id)
        console.print(f"Saved to [cyan]{path}[/cyan]")
    elif command == "load":
        if not arg:
            console.print("[red]Usage: /load <name>[/red]")
        else:
            try:
                loaded = chat.load_session(arg)
                console.print(f"Loaded {len(loaded.messages)} messages")
            except (OSError, ValueError) as e:
                console.print(f"[red]{e}[/red]")
    elif command == "clear":
        chat.clear()
        console.print("Context cleared")
    elif command == "resume":
        chat.resume()
    else:
        console.print(f"[red]Unknown command: /{command}[/red]")
    return True


@app.command("chat")
def chat_command(
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    provider: Optional[Provider] = typer.Option(None, "--provider", "-p", help="LLM provider"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    session: Optional[str] = typer.Option(None, "--load", help="Saved session to start from"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve every tool call"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write logs here"),
):
    """Start an interactive chat."""
    setup_logging(verbose, log_file)

    overrides = {}
    if model:
        overrides["model"] = model
    if provider:
        overrides["provider"] = provider
    if workdir:
        overrides["paths.cwd"] = str(workdir)
    config = _load(config_file, overrides)

    try:
        client = LLMClient.from_config(config)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    registry = register_builtin_tools(ToolRegistry())
    prefs_file = config.tools.preferences_file
    preferences = ApprovalPreferences(Path(prefs_file).expanduser() if prefs_file else None)
    prompter = AutoApprovePrompter() if yes else ConsolePrompter(console, preferences)
    chat = Chat(config, client, registry, prompter, preferences=preferences)

    if session:
        try:
            chat.load_session(session)
        except (OSError, ValueError) as e:
            console.print(f"[red]Could not load session {session}: {e}[/red]")
            raise typer.Exit(1)

    console.print(f"[bold blue]colloquy v{__version__}[/bold blue]")
    console.print(f"Model: [cyan]{config.model}[/cyan] ({config.provider.value})")
    console.print(f"Working directory: [cyan]{config.working_directory}[/cyan]")
    console.print("Commands: /status /summary /save [name] /load <name> /clear /resume /quit")

    try:
        while True:
            try:
                line = console.input("[bold green]> [/bold green]").strip()
            except EOFError:
                break
            if not line:
                continue
            if line.startswith("/"):
                if not _handle_command(chat, line):
                    break
                continue
            since = _reply_start(chat)
            try:
                ok = chat.send_text(line)
            except KeyboardInterrupt:
                chat.kill()
                console.print("[yellow]Interrupted[/yellow]")
                continue
            _print_reply(chat, since)
            if not ok:
                _print_status(chat)
    except KeyboardInterrupt:
        pass
    finally:
        chat.shutdown()


@app.command("sessions")
def list_sessions(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List saved sessions."""
    config = _load(config_file, {})
    manager = SessionManager(ContextStore(), config.session_directory, config.session_id)
    sessions = manager.list_sessions()
    if not sessions:
        console.print(f"No sessions in {config.session_directory}")
        return
    table = Table("name", "modified", "bytes")
    for saved in sessions:
        table.add_row(saved.name, saved.modified.strftime("%Y-%m-%d %H:%M"), str(saved.size_bytes))
    out.print(table)


@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show current configuration."""
    path = config_file or find_config_file()
    if path:
        console.print(f"Loading config from: {path}")
    else:
        console.print("No config file found, using defaults")
    config = _load(path, {})
    out.print(config.model_dump_json(indent=2))


if __name__ == "__main__":
    app()
