"""recall status: message and chunk store statistics plus the embedding model."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from recall.cli.common import idle_provider, load_cli_config, open_engine
from recall.cli.errors import err_no_data
from recall.engine import CHUNKS_DB, MESSAGES_DB, MemoryStats

console = Console()


def status_cmd(
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Directory holding the recall stores."),
    ] = None,
) -> None:
    """Show message and chunk store statistics."""
    cfg = load_cli_config(data_dir)
    data_path = cfg.data_path

    if not (data_path / MESSAGES_DB).exists() and not (data_path / CHUNKS_DB).exists():
        console.print(err_no_data(str(data_path)))
        raise typer.Exit(1)

    with open_engine(cfg, idle_provider(cfg)) as engine:
        stats = engine.stats()
        fts = engine.messages.fts_enabled and engine.chunks.fts_enabled

    _show_storage_panel(data_path, cfg.embedding.model, fts)
    _show_stats_panel(stats)


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_storage_panel(data_path: Path, model: str, fts: bool) -> None:
    lines = [f"Data dir:  {data_path}"]
    for name in (MESSAGES_DB, CHUNKS_DB):
        db = data_path / name
        if db.exists():
            size_mb = db.stat().st_size / (1024 * 1024)
            lines.append(f"{name:<11}{size_mb:.1f} MB")
    lines.append(f"Embedding: {model}")
    lines.append(f"Full-text: {'[green]FTS5[/]' if fts else '[yellow]LIKE fallback[/]'}")
    console.print(Panel("\n".join(lines), title="[bold]Storage[/]", expand=False))


def _show_stats_panel(stats: MemoryStats) -> None:
    m = stats.messages
    c = stats.chunks
    oldest = m.oldest_message.strftime("%Y-%m-%d") if m.oldest_message else "—"
    newest = m.newest_message.strftime("%Y-%m-%d") if m.newest_message else "—"
    lines = [
        f"Messages: [bold]{m.total_messages:,}[/]  |  Sessions: [bold]{m.sessions_count:,}[/]",
        f"Range:    {oldest} → {newest}",
        f"Chunks:   [bold]{c.total_chunks:,}[/]  |  Sources: [bold]{c.total_sources:,}[/]",
        f"Cache:    {c.cache_size:,} chunks",
        f"Vectors:  {c.dimension or '—'} dims  |  ~{c.estimated_storage_bytes / 1024:.0f} KB",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Memory[/]", expand=False))
