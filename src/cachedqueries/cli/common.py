"""Shared helpers for CLI commands."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import typer

from cachedqueries.config import settings
from cachedqueries.manager import CacheManager
from cachedqueries.observability.logging import configure_logging
from cachedqueries.stores.redis import close_redis


def setup_logging(verbose: bool) -> None:
    configure_logging(
        json_format=settings.log_json,
        level="DEBUG" if verbose else settings.log_level,
    )


@asynccontextmanager
async def open_manager(redis_url: str | None = None) -> AsyncIterator[CacheManager]:
    """Build a cache manager from settings and close it afterwards.

    Only a Redis store is shared with the application; an in-process store
    would be a fresh, empty one, so the command exits with an error instead.
    """
    config = settings.model_copy(update={"redis_url": redis_url}) if redis_url else settings
    if config.store_backend != "redis":
        typer.echo(
            f"Error: store backend is '{config.store_backend}'; the CLI needs a shared "
            "Redis store (set CACHEDQUERIES_STORE_BACKEND=redis)",
            err=True,
        )
        raise typer.Exit(code=1)

    manager = await CacheManager.from_settings(config)
    try:
        yield manager
    finally:
        await manager.close()
        await close_redis()
