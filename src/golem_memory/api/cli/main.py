"""golem-memory CLI entry point."""

from typing import Optional

import typer
from rich.console import Console

from golem_memory.api.cli.commands import memories, permissions

app = typer.Typer(
    name="golem-memory",
    help="Encrypted memory storage on the Golem Base ledger",
    add_completion=True,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()

app.add_typer(memories.app, name="memories", help="Create, read and search memories")
app.add_typer(permissions.app, name="permissions", help="Agent permissions")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Settings YAML file"),
    password: Optional[str] = typer.Option(
        None,
        "--password",
        envvar="GOLEM_MEMORY_PASSWORD",
        help="Master password for encrypted memories",
    ),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """golem-memory CLI."""
    ctx.obj = {"config": config, "password": password, "debug": debug}


@app.command()
def version():
    """Show golem-memory version."""
    from golem_memory import __version__

    console.print(f"[bold blue]Version:[/bold blue] [cyan]{__version__}[/cyan]")


if __name__ == "__main__":
    app()
