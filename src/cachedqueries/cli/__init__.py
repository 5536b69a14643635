"""CLI commands for cached-queries.

Provides command-line interface using Typer:
- cachedqueries invalidate: Invalidate cached entries by tag
- cachedqueries inspect: Show the keys filed under a tag
- cachedqueries health: Check cache store connectivity

Usage:
    cachedqueries --help
    cachedqueries invalidate app.models.Order
    cachedqueries inspect --format json app.models.Order
"""

import typer

from cachedqueries.cli.health_cmd import app as health_app
from cachedqueries.cli.inspect_cmd import app as inspect_app
from cachedqueries.cli.invalidate_cmd import app as invalidate_app

# Main CLI application
app = typer.Typer(
    name="cachedqueries",
    help="cached-queries: tag-indexed query cache administration",
    no_args_is_help=True,
)

# Add subcommands
app.add_typer(invalidate_app, name="invalidate")
app.add_typer(inspect_app, name="inspect")
app.add_typer(health_app, name="health")


@app.callback()
def callback() -> None:
    """cached-queries: tag-indexed query cache administration."""
    pass


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
