"""Permission CLI commands."""

import asyncio
from typing import List

import typer
from rich.console import Console
from rich.table import Table

from golem_memory.api.cli.runtime import global_options, open_service
from golem_memory.core.domain.errors import MemoryLayerError, describe_failure

app = typer.Typer(help="Agent permissions")
console = Console()


def _fail(exc: MemoryLayerError) -> None:
    console.print(f"[red]{describe_failure(exc)}[/red]")
    raise typer.Exit(code=1)


@app.command("grant")
def grant(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
    agent_id: str = typer.Argument(..., help="Agent to grant access to"),
    actions: List[str] = typer.Option(
        ["read"], "--action", "-a", help="read, write or delete (repeatable)"
    ),
) -> None:
    """Grant an agent actions on a memory."""
    options = global_options(ctx)

    async def _grant() -> bool:
        async with open_service(options, needs_password=False) as service:
            return await service.grant_permission(memory_id, agent_id, actions)

    try:
        granted = asyncio.run(_grant())
    except MemoryLayerError as exc:
        _fail(exc)
        return
    if not granted:
        console.print(f"[yellow]Memory not found:[/yellow] {memory_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Granted[/green] {', '.join(actions)} to {agent_id}")


@app.command("revoke")
def revoke(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
    agent_id: str = typer.Argument(..., help="Agent to revoke"),
) -> None:
    """Remove an agent's permission on a memory."""
    options = global_options(ctx)

    async def _revoke() -> bool:
        async with open_service(options, needs_password=False) as service:
            return await service.revoke_permission(memory_id, agent_id)

    try:
        revoked = asyncio.run(_revoke())
    except MemoryLayerError as exc:
        _fail(exc)
        return
    if not revoked:
        console.print(f"[yellow]No permission for {agent_id} on {memory_id}[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]Revoked[/green] {agent_id}")


@app.command("list")
def list_permissions(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
) -> None:
    """List agent permissions on a memory."""
    options = global_options(ctx)

    async def _list():
        async with open_service(options, needs_password=False) as service:
            return await service.get_memory_permissions(memory_id)

    try:
        entries = asyncio.run(_list())
    except MemoryLayerError as exc:
        _fail(exc)
        return
    if not entries:
        console.print("[dim]No agent permissions.[/dim]")
        return
    table = Table(title=f"Permissions on {memory_id}")
    table.add_column("Agent", style="cyan")
    table.add_column("Actions", style="green")
    for entry in entries:
        table.add_row(entry.agent_id, ", ".join(action.value for action in entry.actions))
    console.print(table)
