"""recall search / recall context: query the stores from the terminal.

search:  hybrid retrieval over chunks (or keyword-only with --keyword-only)
context: full token-budgeted context assembly, printed as the prompt text
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from recall.cli.common import build_provider, idle_provider, load_cli_config, open_engine
from recall.db.models import RetrievalFilters
from recall.rag.assembler import ContextAssemblyOptions, budget_summary, format_as_prompt
from recall.rag.retriever import RetrievalQuery

console = Console()

_PREVIEW_CHARS = 80


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search query.")],
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Directory holding the recall stores."),
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results.")] = 10,
    source_type: Annotated[
        list[str] | None,
        typer.Option("--type", help="Restrict to source type (repeatable)."),
    ] = None,
    sector: Annotated[
        str | None,
        typer.Option("--sector", help="Restrict to one sector id."),
    ] = None,
    keyword_only: Annotated[
        bool,
        typer.Option("--keyword-only", help="Skip the embedding model; BM25 only."),
    ] = False,
) -> None:
    """Hybrid search over ingested chunks."""
    cfg = load_cli_config(data_dir)
    provider = idle_provider(cfg) if keyword_only else build_provider(cfg, required=False)
    filters = RetrievalFilters(
        source_types=source_type or None,
        sector_ids=[sector] if sector else None,
    )

    with open_engine(cfg, provider) as engine:
        results = engine.retriever.search(
            RetrievalQuery(text=query, limit=limit, filters=filters)
        )

    if not results:
        console.print("[yellow]No results.[/]")
        return

    table = Table(title=f"Results for '{query}'", show_lines=False)
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Via")
    table.add_column("Source")
    table.add_column("Preview")
    for i, r in enumerate(results, start=1):
        preview = " ".join(r.chunk.content.split())[:_PREVIEW_CHARS]
        table.add_row(
            str(i),
            f"{r.score:.4f}",
            r.source,
            f"{r.chunk.source_id}#{r.chunk.chunk_index}",
            preview,
        )
    console.print(table)


def context_cmd(
    query: Annotated[str, typer.Argument(help="Query to assemble context for.")],
    session: Annotated[
        str,
        typer.Option("--session", "-s", help="Session id whose recent turns are included."),
    ] = "default",
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Directory holding the recall stores."),
    ] = None,
    workspace: Annotated[
        str | None,
        typer.Option("--workspace", help="Also include recent turns of this workspace."),
    ] = None,
    sector: Annotated[
        str | None,
        typer.Option("--sector", help="Active sector id (filters and boosts)."),
    ] = None,
    system_prompt: Annotated[
        Path | None,
        typer.Option("--system-prompt", help="File with the system prompt."),
    ] = None,
    specialist: Annotated[
        Path | None,
        typer.Option("--specialist", help="File with specialist knowledge text."),
    ] = None,
    max_tokens: Annotated[
        int | None,
        typer.Option("--max-tokens", help="Override budget.max_total_tokens."),
    ] = None,
    summary: Annotated[
        bool,
        typer.Option("--summary", help="Print the token budget summary after the prompt."),
    ] = False,
) -> None:
    """Assemble token-budgeted context for QUERY and print it."""
    cfg = load_cli_config(data_dir)
    if max_tokens is not None:
        cfg.budget.max_total_tokens = max_tokens
    provider = build_provider(cfg, required=False)
    options = ContextAssemblyOptions(
        query=query,
        session_id=session,
        workspace_path=workspace,
        sector_id=sector,
        system_prompt=_read_optional(system_prompt),
        specialist_context=_read_optional(specialist),
    )

    with open_engine(cfg, provider) as engine:
        context = engine.assembler.assemble_context(options)
        budget = engine.assembler.config

    typer.echo(format_as_prompt(context))
    if summary:
        console.print()
        console.print(budget_summary(context, budget), markup=False)


def _read_optional(path: Path | None) -> str | None:
    if path is None:
        return None
    return path.read_text(encoding="utf-8")
