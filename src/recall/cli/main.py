"""recall CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from recall.cli.ingest import ingest_cmd
from recall.cli.purge import purge_cmd
from recall.cli.search import context_cmd, search_cmd
from recall.cli.status import status_cmd
from recall.logging import configure_logging


def _installed_version() -> str:
    try:
        return importlib.metadata.version("recall-engine")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"recall {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="recall",
    help=(
        "recall: hybrid retrieval and token-budgeted context assembly.\n\n"
        "  recall ingest    Chunk, embed and store files.\n"
        "  recall context   Assemble the prompt context for a query."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug events to stderr."),
    ] = False,
) -> None:
    """recall: hybrid retrieval and token-budgeted context assembly."""
    configure_logging(level="DEBUG" if verbose else "WARNING")


app.command("ingest")(ingest_cmd)
app.command("search")(search_cmd)
app.command("context")(context_cmd)
app.command("status")(status_cmd)
app.command("purge")(purge_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed recall version."""
    typer.echo(f"recall {_installed_version()}")


if __name__ == "__main__":
    app()
