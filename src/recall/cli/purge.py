"""recall purge: delete stored data.

Usage:
  recall purge --session abc123
  recall purge --source docs/guide.md
  recall purge --older-than 30
  recall purge --all --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from recall.cli.common import idle_provider, load_cli_config, open_engine
from recall.cli.errors import err_nothing_to_purge

console = Console()


def purge_cmd(
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Directory holding the recall stores."),
    ] = None,
    session: Annotated[
        str | None,
        typer.Option("--session", help="Delete every message of this session."),
    ] = None,
    source: Annotated[
        str | None,
        typer.Option("--source", help="Delete every chunk of this source id."),
    ] = None,
    older_than: Annotated[
        float | None,
        typer.Option("--older-than", help="Delete messages older than this many days."),
    ] = None,
    purge_all: Annotated[
        bool,
        typer.Option("--all", help="Delete all messages and chunks."),
    ] = False,
    vacuum: Annotated[
        bool,
        typer.Option("--vacuum", help="Reclaim disk space afterwards."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Delete messages and/or chunks from the recall stores."""
    if not (session or source or older_than is not None or purge_all):
        console.print(err_nothing_to_purge())
        raise typer.Exit(1)

    if purge_all and not yes:
        if not typer.confirm("Delete ALL messages and chunks?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

    cfg = load_cli_config(data_dir)
    with open_engine(cfg, idle_provider(cfg)) as engine:
        if purge_all:
            engine.messages.clear()
            engine.chunks.clear()
            console.print("[green]✓[/] All messages and chunks deleted")
        if session:
            n = engine.messages.delete_session(session)
            console.print(f"[green]✓[/] {n} message(s) deleted from session '{session}'")
        if source:
            n = engine.chunks.delete_source(source)
            if n == 0:
                console.print(f"[yellow]Source not found:[/] '{source}' has no chunks.")
            else:
                console.print(f"[green]✓[/] {n} chunk(s) deleted from source '{source}'")
        if older_than is not None:
            n = engine.messages.delete_old_messages(older_than)
            console.print(f"[green]✓[/] {n} message(s) older than {older_than:g} days deleted")
        if vacuum:
            engine.messages.vacuum()
            engine.chunks.vacuum()
            console.print("[dim]Vacuumed.[/]")
