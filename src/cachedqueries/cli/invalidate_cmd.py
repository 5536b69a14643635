"""CLI command for invalidating cached entries by tag.

Usage:
    cachedqueries invalidate app.models.Order
    cachedqueries invalidate --redis-url redis://cache:6379/0 app.models.Order app.models.OrderLine
"""

from __future__ import annotations

import asyncio

import typer

from cachedqueries.cli import common

app = typer.Typer(help="Invalidate cached entries by tag")


@app.callback(invoke_without_command=True)
def invalidate(
    tags: list[str] = typer.Argument(
        ...,
        help="Tags to invalidate",
    ),
    redis_url: str | None = typer.Option(
        None,
        "--redis-url",
        "-u",
        help="Redis URL (defaults to REDIS_URL)",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="List every deleted key",
    ),
) -> None:
    """Delete every cached entry filed under the given tags."""
    from rich.console import Console

    console = Console()
    common.setup_logging(verbose)

    deleted = asyncio.run(_invalidate(tags, redis_url))

    if not deleted:
        console.print(f"[yellow]No cached entries for[/yellow] {', '.join(tags)}")
        return

    console.print(f"[green]Deleted {len(deleted)} key(s)[/green]")
    if verbose:
        for key in deleted:
            console.print(f"  {key}")


async def _invalidate(tags: list[str], redis_url: str | None) -> list[str]:
    async with common.open_manager(redis_url) as manager:
        return await manager.invalidate(tags)
