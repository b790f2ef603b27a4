"""
REWIND CLI: The Interface

  rewind chat --repo <path>     (interactive agent session, every step undoable)
  rewind status [--repo <path>] (check config + API keys)

Inside chat:
  /history          list messages with their ids and checkpoints
  /rollback <id>    restore the environment and trim the conversation
  /exit             leave
  Ctrl-C            cancel the running query
"""

from __future__ import annotations

import asyncio
import shutil
import signal
import uuid
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from rewind import __codename__, __tagline__, __version__
from rewind.audit_logger import AuditLogger
from rewind.checkpoints import CheckpointError, CheckpointStore
from rewind.checkpoints.environment import CheckpointingEnvironment
from rewind.config_loader import RewindConfig, load_config, validate_api_keys
from rewind.environment.local import LocalEnvironment
from rewind.event_bus import EventBus, EventType, RewindEvent
from rewind.permissions import PermissionGate
from rewind.rollback import RollbackCoordinator
from rewind.router import Router
from rewind.runner import AgentRunner
from rewind.state import SessionState
from rewind.tools import build_default_registry
from rewind.transcript import Transcript

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".rewind" / ".env")

app = typer.Typer(
    name="rewind",
    help=f"{__codename__}: {__tagline__}\nA coding agent with checkpointed, undoable steps.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def chat(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the working repository"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="LiteLLM model string"),
    danger: bool = typer.Option(False, "--danger", help="Grant every tool call without asking"),
    fast_edit: bool = typer.Option(False, "--fast-edit", help="Auto-approve file edits"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Start an interactive agent session."""
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.is_dir():
        console.print(f"[red]Repository not found: {repo}[/]")
        raise typer.Exit(1)

    config = load_config(repo)
    if model:
        config.model.name = model
    if danger:
        config.permissions.danger_mode = True
    if fast_edit:
        config.permissions.fast_edit_mode = True

    console.print(f"[bold bright_green]{__codename__}[/] [dim]v{__version__}: {__tagline__}[/]")
    console.print(f"[dim]repo: {repo}   model: {config.model.name}[/]")
    if config.permissions.danger_mode:
        console.print("[bold red]Danger mode: every tool call is auto-approved.[/]")
    console.print("[dim]/history, /rollback <id>, /exit. Ctrl-C cancels a running query.[/]\n")

    asyncio.run(_chat_loop(repo, config))


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check REWIND configuration and readiness."""
    keys = validate_api_keys()
    key_table = Table(title="API Keys", border_style="cyan")
    key_table.add_column("Key")
    key_table.add_column("Status")

    for key, available in keys.items():
        status_str = "[green]✓ Available[/]" if available else "[red]✗ Missing[/]"
        key_table.add_row(key, status_str)

    console.print(key_table)

    config = load_config(repo.resolve() if repo else None)
    console.print(f"\n[bold]Model:[/]")
    console.print(f"  Name:         {config.model.name}")
    console.print(f"  Max attempts: {config.model.max_attempts}")

    console.print(f"\n[bold]Permissions:[/]")
    console.print(f"  Danger mode:  {config.permissions.danger_mode}")
    console.print(f"  Fast edit:    {config.permissions.fast_edit_mode} ({config.permissions.fast_mode_category})")
    if config.permissions.always_ask:
        console.print(f"  Always ask:   {', '.join(config.permissions.always_ask)}")

    console.print(f"\n[bold]Checkpoints:[/]")
    console.print(f"  Enabled:      {config.checkpoints.enabled}")
    console.print(f"  Shadow dir:   {config.checkpoints.shadow_dir}")
    console.print(f"  Validation:   {'on' if config.transcript_validation else 'off'} ({config.runtime_env})")

    found = shutil.which("git")
    console.print(f"\n[bold]git:[/] " + (f"[green]✓ {found}[/]" if found else "[red]✗ Not found (checkpoints need git)[/]"))


# ---------------------------------------------------------------------------
# Chat session
# ---------------------------------------------------------------------------

async def _chat_loop(repo: Path, config: RewindConfig) -> None:
    bus = EventBus()
    audit = AuditLogger(str(repo / config.events.audit_log), bus)
    renderer = asyncio.create_task(_render_events(bus.channel(config.events.channel_size)))

    session_id = uuid.uuid4().hex[:12]
    local = LocalEnvironment(
        repo,
        command_timeout=config.environment.command_timeout,
        max_read_size=config.environment.max_read_size,
    )
    if config.checkpoints.enabled:
        store = CheckpointStore(config.checkpoints.shadow_dir, config.checkpoints.exclude)
        environment = CheckpointingEnvironment(local, store, session_id, bus)
    else:
        environment = local

    session = SessionState(
        session_id=session_id,
        environment=environment,
        transcript=Transcript(validate=config.transcript_validation),
    )
    registry = build_default_registry(bus)
    gate = PermissionGate(
        registry,
        config.permissions,
        prompt=_ask_permission,
        bus=bus,
        session_id=session_id,
    )
    runner = AgentRunner(Router(config.model), registry, gate, bus)
    coordinator = RollbackCoordinator(bus)
    loop = asyncio.get_running_loop()

    try:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold cyan]you>[/] ")
            except (EOFError, KeyboardInterrupt):
                break

            line = line.strip()
            if not line:
                continue
            if line in ("/exit", "/quit"):
                break
            if line == "/history":
                _print_history(session)
                continue
            if line.startswith("/rollback"):
                await _rollback(coordinator, session, line[len("/rollback"):].strip())
                continue

            loop.add_signal_handler(signal.SIGINT, session.cancel)
            try:
                result = await runner.process_query(line, session)
            finally:
                loop.remove_signal_handler(signal.SIGINT)

            if result.error:
                console.print(f"[red]Error: {result.error}[/]")
            elif result.response:
                style = "yellow" if result.aborted else "green"
                console.print(f"[{style}]{result.response}[/]\n")
    finally:
        renderer.cancel()
        audit.close()


async def _ask_permission(tool_id: str, args: dict) -> bool:
    console.print(f"[bold yellow]{tool_id}[/] wants to run with:")
    for key, value in args.items():
        shown = str(value)
        if len(shown) > 200:
            shown = shown[:200] + "…"
        console.print(f"  [dim]{key}:[/] {shown}")
    return await asyncio.to_thread(Confirm.ask, "Allow?", default=False)


async def _rollback(coordinator: RollbackCoordinator, session: SessionState, prefix: str) -> None:
    if not prefix:
        console.print("[red]Usage: /rollback <message id>[/]")
        return

    matches = [m for m in session.transcript if m.id.startswith(prefix)]
    if len(matches) != 1:
        console.print(f"[red]{'No' if not matches else 'Ambiguous'} message id: {prefix}[/]")
        return

    try:
        commit_id = await coordinator.rollback(session, matches[0].id)
    except CheckpointError as e:
        console.print(f"[red]Rollback failed: {e}[/]")
        return

    where = commit_id[:10] if commit_id else "unchanged"
    console.print(f"[magenta]Rolled back. Environment: {where}. {len(session.transcript)} messages remain.[/]")


def _print_history(session: SessionState) -> None:
    table = Table(title=f"Session {session.session_id}", border_style="cyan")
    table.add_column("ID")
    table.add_column("Role")
    table.add_column("Content")
    table.add_column("Checkpoint")

    for message in session.transcript:
        if message.tool_use is not None:
            summary = f"→ {message.tool_use.name}"
        elif message.tool_result is not None:
            summary = f"← {message.tool_result.content[:60]}"
        else:
            summary = message.text[:60]
        table.add_row(
            message.id[:8],
            message.role,
            summary,
            (message.checkpoint_id or "")[:10],
        )
    console.print(table)


async def _render_events(queue: "asyncio.Queue[RewindEvent]") -> None:
    while True:
        event = await queue.get()
        if event.event_type is EventType.TOOL_STARTED:
            console.print(f"[dim]→ {event.payload['tool_id']}[/]")
        elif event.event_type is EventType.TOOL_ERROR:
            console.print(f"[red]✗ {event.payload['tool_id']}: {event.payload['error']}[/]")
        elif event.event_type is EventType.CHECKPOINT_READY:
            console.print(f"[dim]  checkpoint {event.payload['checkpoint_id'][:10]}[/]")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{msg}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
