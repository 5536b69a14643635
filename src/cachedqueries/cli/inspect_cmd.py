"""CLI command for inspecting the tag index.

Usage:
    cachedqueries inspect app.models.Order
    cachedqueries inspect --format json app.models.Order
"""

from __future__ import annotations

import asyncio
import json

import typer

from cachedqueries.cli import common

app = typer.Typer(help="Show the cache keys filed under a tag")


@app.callback(invoke_without_command=True)
def inspect(
    tag: str = typer.Argument(
        ...,
        help="Tag to inspect",
    ),
    redis_url: str | None = typer.Option(
        None,
        "--redis-url",
        "-u",
        help="Redis URL (defaults to REDIS_URL)",
    ),
    output_format: str = typer.Option(
        "text",
        "--format",
        "-f",
        help="Output format: text, json",
    ),
) -> None:
    """List the cache keys linked to a tag and whether each is still cached."""
    from rich.console import Console
    from rich.table import Table

    console = Console()
    common.setup_logging(False)

    entries = asyncio.run(_inspect(tag, redis_url))

    if output_format == "json":
        typer.echo(json.dumps({"tag": tag, "keys": entries}, indent=2))
        return

    if not entries:
        console.print(f"[yellow]No keys filed under[/yellow] {tag}")
        return

    table = Table(title=f"Keys for {tag}")
    table.add_column("Key", style="cyan")
    table.add_column("Cached", justify="center")
    for entry in entries:
        table.add_row(entry["key"], "[green]yes[/green]" if entry["cached"] else "[red]no[/red]")
    console.print(table)


async def _inspect(tag: str, redis_url: str | None) -> list[dict[str, object]]:
    async with common.open_manager(redis_url) as manager:
        keys = await manager.invalidator.get_tag_keys(tag)
        results = await asyncio.gather(*(manager.store.get(key) for key in keys))
        return [{"key": key, "cached": result.hit} for key, result in zip(keys, results)]
