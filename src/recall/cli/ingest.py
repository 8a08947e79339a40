"""recall ingest: chunk, embed and store text files.

Each file becomes one source whose id is its path. Re-ingesting a file
replaces its chunks. Source type by extension:
  code extensions (.py .ts .js ...)  → code
  everything else that is text       → document
Directories are expanded to their supported files (--recursive for subdirs).
"""

from __future__ import annotations

import fnmatch
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from recall.cli.common import build_provider, load_cli_config, open_engine
from recall.cli.errors import err_path_not_found
from recall.db.models import ChunkMetadata, ChunkSourceType
from recall.engine import MemoryEngine

console = Console()

_CODE_EXTS = {
    ".py", ".ts", ".tsx", ".js", ".jsx", ".java", ".cs", ".go", ".rs", ".rb",
    ".c", ".h", ".cpp", ".hpp", ".kt", ".swift", ".php", ".sh", ".sql",
}
_DOC_EXTS = {".md", ".markdown", ".txt", ".rst", ".text", ".csv", ".log", ".json", ".yaml", ".yml"}
_ALL_EXTS = _CODE_EXTS | _DOC_EXTS

_LANGUAGES = {
    ".py": "python", ".ts": "typescript", ".tsx": "typescript", ".js": "javascript",
    ".jsx": "javascript", ".java": "java", ".cs": "csharp", ".go": "go", ".rs": "rust",
    ".rb": "ruby", ".c": "c", ".h": "c", ".cpp": "cpp", ".hpp": "cpp", ".kt": "kotlin",
    ".swift": "swift", ".php": "php", ".sh": "shell", ".sql": "sql",
}


def ingest_cmd(
    paths: Annotated[list[Path], typer.Argument(help="Files or directories to ingest.")],
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Directory holding the recall stores."),
    ] = None,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", "-r", help="Recurse into subdirectories (max 10 levels)."),
    ] = False,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
    sector: Annotated[
        str | None,
        typer.Option("--sector", help="Sector id stored in chunk metadata."),
    ] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", help="Domain tag stored in chunk metadata (repeatable)."),
    ] = None,
) -> None:
    """Ingest files into the recall chunk store."""
    files: list[Path] = []
    for path in paths:
        if not path.exists():
            console.print(err_path_not_found(str(path)))
            raise typer.Exit(1)
        if path.is_dir():
            found = _scan_dir(path, recursive=recursive, exclude=exclude or [], depth=0)
            if not found:
                console.print(f"[yellow]No supported files found in directory:[/] {path}")
            files.extend(found)
        else:
            files.append(path)

    if not files:
        console.print("[yellow]No files to ingest.[/]")
        raise typer.Exit(0)

    cfg = load_cli_config(data_dir)
    provider = build_provider(cfg, required=True)
    total = 0
    with open_engine(cfg, provider) as engine:
        for file in files:
            total += _ingest_file(engine, file, sector=sector, tags=tag)

    console.print(f"\n[green]✓[/] {len(files)} file(s), {total} chunks stored in {cfg.data_path}")


def _ingest_file(
    engine: MemoryEngine, path: Path, sector: str | None, tags: list[str] | None
) -> int:
    console.print(f"\n[bold]→ {path}[/]")
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        console.print(f"  [red]✗ Cannot read:[/] {exc}")
        return 0
    if not text.strip():
        console.print("  [yellow]✗ Empty file — skipping[/]")
        return 0

    source_type = _detect_type(path)
    metadata = ChunkMetadata(
        title=path.name,
        file_path=str(path),
        language=_LANGUAGES.get(path.suffix.lower()),
        sector_id=sector,
        domain_tags=tags or None,
    )

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task("Embedding…", total=None)

        def _on_chunk(current: int, total: int) -> None:
            prog.update(task, completed=current, total=total)

        stored = engine.ingest_text(
            text, str(path), source_type, metadata, on_progress=_on_chunk
        )

    if stored:
        console.print(f"  [green]✓[/] {stored} chunks ({source_type})")
    else:
        console.print("  [yellow]✗ No chunks embedded[/]")
    return stored


def _detect_type(path: Path) -> ChunkSourceType:
    return "code" if path.suffix.lower() in _CODE_EXTS else "document"


def _scan_dir(
    directory: Path,
    recursive: bool,
    exclude: list[str],
    depth: int,
    max_depth: int = 10,
) -> list[Path]:
    """Return supported files in *directory* (optionally recursive)."""
    if depth > max_depth:
        return []
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        return []
    for entry in entries:
        if any(fnmatch.fnmatch(entry.name, pat) for pat in exclude):
            continue
        if entry.is_file() and entry.suffix.lower() in _ALL_EXTS:
            files.append(entry)
        elif entry.is_dir() and recursive and depth < max_depth:
            files.extend(
                _scan_dir(entry, recursive=recursive, exclude=exclude, depth=depth + 1)
            )
    return files
