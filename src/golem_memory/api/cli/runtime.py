"""Shared setup for CLI commands."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import typer


def global_options(ctx: typer.Context) -> dict[str, Any]:
    """Walk up to the root context, where the callback stored its options."""
    root = ctx.find_root()
    return root.obj or {}


def resolve_password(options: dict[str, Any], required: bool) -> str | None:
    password = options.get("password")
    if password or not required:
        return password
    return typer.prompt("Master password", hide_input=True)


@asynccontextmanager
async def open_service(
    options: dict[str, Any], *, needs_password: bool = True
) -> AsyncIterator[Any]:
    """Build, unlock and initialize a MemoryService for one command."""
    from golem_memory.application.factory import build_memory_service
    from golem_memory.application.logging_setup import configure_logging
    from golem_memory.core.domain.config import load_settings

    settings = load_settings(options.get("config"))
    configure_logging("DEBUG" if options.get("debug") else settings.logging.level)
    service = build_memory_service(settings)
    password = resolve_password(options, needs_password)
    if password:
        service.key_management.initialize_with_password(password)
    try:
        await service.initialize()
        yield service
    finally:
        await service.close()
