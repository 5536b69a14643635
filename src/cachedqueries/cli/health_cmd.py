"""CLI command for checking cache connectivity.

Usage:
    cachedqueries health
    cachedqueries health --redis-url redis://cache:6379/0
"""

from __future__ import annotations

import asyncio

import typer

from cachedqueries.cli import common

app = typer.Typer(help="Check that the configured cache store is reachable")


@app.callback(invoke_without_command=True)
def health(
    redis_url: str | None = typer.Option(
        None,
        "--redis-url",
        "-u",
        help="Redis URL (defaults to REDIS_URL)",
    ),
) -> None:
    """Ping the cache store. Exits with code 1 when it is unreachable."""
    from rich.console import Console

    console = Console()
    common.setup_logging(False)

    healthy = asyncio.run(_health(redis_url))
    if healthy:
        console.print("[green]Cache store is reachable[/green]")
    else:
        console.print("[red]Cache store is unreachable[/red]")
        raise typer.Exit(code=1)


async def _health(redis_url: str | None) -> bool:
    async with common.open_manager(redis_url) as manager:
        return await manager.health_check()
