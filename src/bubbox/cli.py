"""Command line entry for bubbox."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from bubbox.config import Settings, load_settings
from bubbox.errors import BubboxError
from bubbox.logging_utils import configure_logging
from bubbox.orchestrator import Conversation, Orchestrator, Reply
from bubbox.sandbox import ContainerRuntime, Mount
from bubbox.sessions import SessionRegistry
from bubbox.supervisor import cleanup_orphans

app = typer.Typer(
    name="bubbox",
    help="Run a conversational agent in disposable sandboxed workers.",
    add_completion=False,
    rich_markup_mode="rich",
)
console = Console()


def _settings(**overrides: object) -> Settings:
    try:
        settings = load_settings(**{key: value for key, value in overrides.items() if value is not None})
    except BubboxError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(2) from exc
    configure_logging(profile="host", level=settings.log_level)
    return settings


def _parse_secrets(values: list[str]) -> dict[str, str]:
    """``NAME=VALUE`` pairs; a bare ``NAME`` is read from the environment."""

    secrets: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep:
            env_value = os.getenv(name)
            if env_value is None:
                raise typer.BadParameter(f"secret {name} is not set in the environment", param_hint="--secret")
            value = env_value
        secrets[name] = value
    return secrets


def _parse_mount(value: str) -> Mount:
    """``HOST:SANDBOX[:ro]``."""

    parts = value.split(":")
    if len(parts) not in (2, 3) or (len(parts) == 3 and parts[2] != "ro"):
        raise typer.BadParameter(f"expected HOST:SANDBOX[:ro], got {value}", param_hint="--mount")
    return Mount(Path(parts[0]).expanduser().resolve(), parts[1], readonly=len(parts) == 3)


def render_reply(reply: Reply) -> None:
    if reply.status == "success":
        console.print(f"[bold yellow]Agent:[/bold yellow] {reply.text}")
    elif reply.status == "timeout":
        console.print(f"[bold red]Timeout:[/bold red] {reply.error}")
    else:
        console.print(f"[bold red]Error:[/bold red] {reply.error}")


async def run_turn(settings: Settings, conversation: Conversation, prompt: str, *, scheduled: bool = False) -> bool:
    """Send one prompt, wait for its reply or the worker's exit, then close."""

    replies: list[Reply] = []
    replied = asyncio.Event()

    async def on_reply(reply: Reply) -> None:
        render_reply(reply)
        replies.append(reply)
        replied.set()

    async with Orchestrator(settings, on_reply=on_reply) as orchestrator:
        await orchestrator.send(conversation, prompt, scheduled=scheduled)
        waiters = {
            asyncio.create_task(replied.wait()),
            asyncio.create_task(orchestrator.wait(conversation.id)),
        }
        _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await orchestrator.close(conversation.id)
    return bool(replies) and all(reply.ok for reply in replies)


@app.command()
def run(
    prompt: Annotated[str, typer.Argument(help="Prompt for this turn")],
    conversation: Annotated[str, typer.Option("--conversation", "-c", help="Conversation id")] = "cli",
    runtime: Annotated[str | None, typer.Option(help="Agent runtime for new conversations: opencode or republic")] = None,
    model: Annotated[str | None, typer.Option(help="Model id for new conversations")] = None,
    timeout: Annotated[float | None, typer.Option(help="Worker lifetime budget in seconds")] = None,
    secret: Annotated[list[str] | None, typer.Option("--secret", help="NAME=VALUE, or NAME read from env")] = None,
    mount: Annotated[list[str] | None, typer.Option("--mount", help="HOST:SANDBOX[:ro]")] = None,
    scheduled: Annotated[bool, typer.Option(help="Mark the prompt as sent automatically")] = False,
    main: Annotated[bool, typer.Option("--main", help="Run with main-conversation privileges")] = False,
) -> None:
    """Run one turn of a conversation in a fresh or resumed worker."""

    settings = _settings(runtime=runtime, model=model)
    chat = Conversation(
        id=conversation,
        is_main=main,
        mounts=tuple(_parse_mount(item) for item in mount or []),
        secrets=_parse_secrets(secret or []),
        timeout_seconds=timeout,
    )
    try:
        ok = asyncio.run(run_turn(settings, chat, prompt, scheduled=scheduled))
    except BubboxError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1) from exc
    if not ok:
        raise typer.Exit(1)


@app.command()
def cleanup() -> None:
    """Stop worker instances left behind by a previous host process."""

    settings = _settings()
    runtime = ContainerRuntime(settings.container_runtime)
    stopped = asyncio.run(
        cleanup_orphans(runtime, f"{settings.instance_prefix}-", grace_seconds=settings.kill_grace_seconds)
    )
    if not stopped:
        console.print("[dim]No orphaned workers.[/dim]")
        return
    for name in stopped:
        console.print(f"Stopped [cyan]{name}[/cyan]")


@app.command()
def sessions() -> None:
    """List stored conversation sessions."""

    settings = _settings()
    records = SessionRegistry(settings.sessions_file).all()
    if not records:
        console.print("[dim]No sessions recorded.[/dim]")
        return
    table = Table(title="Sessions")
    table.add_column("Conversation", style="cyan")
    table.add_column("Session")
    table.add_column("Runtime", style="magenta")
    table.add_column("Updated", style="dim")
    for record in records:
        table.add_row(record.conversation_id, record.session_id or "-", record.runtime or "-", record.updated_at)
    console.print(table)


@app.command()
def forget(conversation: Annotated[str, typer.Argument(help="Conversation id")]) -> None:
    """Drop a conversation's session so its next turn starts fresh."""

    settings = _settings()
    if not SessionRegistry(settings.sessions_file).forget(conversation):
        console.print(f"[dim]No session for {conversation}.[/dim]")
        raise typer.Exit(1)
    console.print(f"Forgot [cyan]{conversation}[/cyan]")
