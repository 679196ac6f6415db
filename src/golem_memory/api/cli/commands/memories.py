"""Memory CLI commands.

Create, read, update, delete and search memories, plus integrity and
storage statistics.
"""

import asyncio
from datetime import datetime, timezone
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from golem_memory.api.cli.runtime import global_options, open_service
from golem_memory.core.domain.errors import MemoryLayerError, describe_failure

app = typer.Typer(help="Memory management")
console = Console()


def _fail(exc: MemoryLayerError) -> None:
    console.print(f"[red]{describe_failure(exc)}[/red]")
    if exc.details:
        console.print(f"[dim]{exc.code}: {exc.details}[/dim]")
    raise typer.Exit(code=1)


def _parse_date(value: Optional[str], end_of_day: bool = False) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if end_of_day and len(value) == 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return parsed


def _preview(text: str, width: int = 60) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


@app.command("create")
def create(
    ctx: typer.Context,
    content: str = typer.Argument(..., help="Memory content"),
    memory_type: str = typer.Option("learned_fact", "--type", "-t", help="Memory type"),
    category: str = typer.Option("general", "--category", "-c", help="Category"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Tag (repeatable)"),
    plain: bool = typer.Option(False, "--plain", help="Store without encryption"),
    parent: Optional[str] = typer.Option(None, "--parent", help="Id of the parent memory"),
) -> None:
    """Store a new memory."""
    options = global_options(ctx)

    async def _create() -> None:
        async with open_service(options, needs_password=not plain) as service:
            record = await service.create_memory(
                content,
                memory_type,
                category,
                tags or [],
                encrypted=not plain,
                parent_id=parent,
            )
        console.print(f"[green]Created memory[/green] {record.id}")
        console.print(f"  handle: {record.storage_handle}")
        if record.transaction_hash:
            console.print(f"  tx: {record.transaction_hash}")
        else:
            console.print("  [yellow]transaction hash not captured[/yellow]")
        if record.metadata.truncated:
            console.print("  [yellow]content was truncated to fit the ledger[/yellow]")

    try:
        asyncio.run(_create())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("get")
def get(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
    actor: Optional[str] = typer.Option(None, "--as", help="Read on behalf of an agent"),
) -> None:
    """Show a memory, decrypted when a key is available."""
    options = global_options(ctx)

    async def _get() -> None:
        async with open_service(options) as service:
            record = await service.get_memory(memory_id, actor=actor)
            explorer = (
                service.storage.entity_url(record.storage_handle)
                if record is not None and record.storage_handle
                else None
            )
        if record is None:
            console.print(f"[yellow]Memory not found:[/yellow] {memory_id}")
            raise typer.Exit(code=1)
        table = Table(title=f"Memory {record.id}")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Type", record.type.value)
        table.add_row("Category", record.category)
        table.add_row("Tags", ", ".join(record.tags) or "-")
        table.add_row("Version", str(record.metadata.version))
        table.add_row("Encrypted", "yes" if record.encrypted else "no")
        table.add_row("Updated", record.updated_at.isoformat())
        table.add_row("Handle", record.storage_handle or "-")
        if record.metadata.parent_id:
            table.add_row("Parent", record.metadata.parent_id)
        if explorer:
            table.add_row("Explorer", explorer)
        table.add_row("Content", record.content)
        console.print(table)

    try:
        asyncio.run(_get())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("search")
def search(
    ctx: typer.Context,
    text: str = typer.Argument("", help="Substring to match in content or tags"),
    memory_type: Optional[str] = typer.Option(None, "--type", "-t", help="Filter by type"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Match any of these tags"),
    since: Optional[str] = typer.Option(None, "--since", help="Created on or after (ISO date)"),
    until: Optional[str] = typer.Option(None, "--until", help="Created on or before (ISO date)"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum results"),
    offset: int = typer.Option(0, "--offset", help="Results to skip"),
) -> None:
    """Search memories with filters and facet counts."""
    from golem_memory.core.domain.memory import DateRange, MemorySearchQuery, MemoryType

    options = global_options(ctx)
    date_range = None
    if since or until:
        date_range = DateRange(
            start=_parse_date(since) or datetime.min.replace(tzinfo=timezone.utc),
            end=_parse_date(until, end_of_day=True) or datetime.max.replace(tzinfo=timezone.utc),
        )
    try:
        parsed_type = MemoryType(memory_type) if memory_type else None
    except ValueError:
        console.print(f"[red]Unknown memory type:[/red] {memory_type}")
        raise typer.Exit(code=1)
    query = MemorySearchQuery(
        text=text,
        type=parsed_type,
        category=category,
        tags=tags or None,
        date_range=date_range,
        limit=limit,
        offset=offset,
    )

    async def _search() -> None:
        async with open_service(options, needs_password=False) as service:
            result = await service.search_memories(query)
        if not result.records:
            console.print("[dim]No memories found.[/dim]")
            return
        table = Table(title=f"Memories ({result.total_count} total)")
        table.add_column("ID", style="cyan", max_width=12)
        table.add_column("Type", style="magenta")
        table.add_column("Category", style="green")
        table.add_column("Tags", style="dim")
        table.add_column("Ver", justify="right")
        table.add_column("Content")
        for record in result.records:
            content = "<encrypted>" if record.encrypted else _preview(record.content)
            table.add_row(
                record.id[:12],
                record.type.value,
                record.category,
                ", ".join(record.tags),
                str(record.metadata.version),
                content,
            )
        console.print(table)
        active_types = {k: v for k, v in result.facets.types.items() if v}
        console.print(f"[dim]types: {active_types}  categories: {result.facets.categories}[/dim]")

    try:
        asyncio.run(_search())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("update")
def update(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
    content: Optional[str] = typer.Option(None, "--content", help="New content"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="New category"),
    tags: Optional[List[str]] = typer.Option(None, "--tag", help="Replace tags (repeatable)"),
) -> None:
    """Write a new version of a memory."""
    options = global_options(ctx)
    updates: dict = {}
    if content is not None:
        updates["content"] = content
    if category is not None:
        updates["category"] = category
    if tags:
        updates["tags"] = tags
    if not updates:
        console.print("[yellow]Nothing to update.[/yellow]")
        raise typer.Exit(code=1)

    async def _update() -> None:
        async with open_service(options, needs_password="content" in updates) as service:
            record = await service.update_memory(memory_id, updates)
        if record is None:
            console.print(f"[yellow]Memory not found:[/yellow] {memory_id}")
            raise typer.Exit(code=1)
        console.print(
            f"[green]Updated memory[/green] {record.id} to version {record.metadata.version}"
        )

    try:
        asyncio.run(_update())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("delete")
def delete(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete every stored version of a memory."""
    options = global_options(ctx)
    if not yes:
        typer.confirm(f"Delete memory {memory_id}?", abort=True)

    async def _delete() -> None:
        async with open_service(options, needs_password=False) as service:
            deleted = await service.delete_memory(memory_id)
        if deleted:
            console.print(f"[green]Deleted memory[/green] {memory_id}")
        else:
            console.print(f"[yellow]Memory not found or not deleted:[/yellow] {memory_id}")
            raise typer.Exit(code=1)

    try:
        asyncio.run(_delete())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("verify")
def verify(
    ctx: typer.Context,
    memory_id: str = typer.Argument(..., help="Memory id"),
) -> None:
    """Recompute a memory's checksums and compare them with its metadata."""
    options = global_options(ctx)

    async def _verify() -> None:
        async with open_service(options, needs_password=False) as service:
            report = await service.verify_memory_integrity(memory_id)
        if report.error:
            console.print(f"[red]{report.error}[/red]")
            raise typer.Exit(code=1)
        status = "[green]valid[/green]" if report.is_valid else "[red]MISMATCH[/red]"
        console.print(f"Integrity of {memory_id}: {status}")
        console.print(f"  checksum: {report.stored_checksum} / {report.computed_checksum}")
        if report.stored_content_hash:
            console.print(f"  sha256:   {report.stored_content_hash}")
        if not report.is_valid:
            raise typer.Exit(code=1)

    try:
        asyncio.run(_verify())
    except MemoryLayerError as exc:
        _fail(exc)


@app.command("stats")
def stats(ctx: typer.Context) -> None:
    """Show approximate storage statistics."""
    options = global_options(ctx)

    async def _stats() -> None:
        async with open_service(options, needs_password=False) as service:
            result = await service.get_storage_stats()
        table = Table(title="Storage Statistics (approximate)")
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white", justify="right")
        table.add_row("Memories", str(result.total_memories))
        table.add_row("Total size (bytes)", str(result.total_size))
        table.add_row("Pinned", str(result.pinned_memories))
        table.add_row("Sampled entities", str(result.sampled))
        table.add_row("Chain id", str(result.chain_id or "-"))
        console.print(table)

    try:
        asyncio.run(_stats())
    except MemoryLayerError as exc:
        _fail(exc)
