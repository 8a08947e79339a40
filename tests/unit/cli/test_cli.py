"""Tests for the recall CLI commands."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from conftest import FakeProvider
from recall.cli.main import app

runner = CliRunner()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("RECALL_EMBEDDING_MODEL", "RECALL_DATA_DIR", "RECALL_MAX_TOTAL_TOKENS"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def fake_provider(monkeypatch):
    """Replace LiteLLM loading with the in-process provider."""

    def _build(cfg, *, required):
        return FakeProvider()

    monkeypatch.setattr("recall.cli.ingest.build_provider", _build)
    monkeypatch.setattr("recall.cli.search.build_provider", _build)


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def ingested(tmp_path: Path, data_dir: Path, fake_provider) -> Path:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "deploy.md").write_text(
        "# Deploys\n\nThe deploy pipeline retries failed jobs three times before paging.\n",
        encoding="utf-8",
    )
    (docs / "cache.md").write_text("The cache layer evicts the oldest entries first.\n", encoding="utf-8")
    result = runner.invoke(app, ["ingest", str(docs), "--data-dir", str(data_dir), "--sector", "ops"])
    assert result.exit_code == 0, result.output
    return docs


# ---------------------------------------------------------------------------
# recall --version / version
# ---------------------------------------------------------------------------


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "recall" in result.output


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.startswith("recall ")


# ---------------------------------------------------------------------------
# recall ingest
# ---------------------------------------------------------------------------


def test_ingest_missing_path(data_dir: Path, fake_provider) -> None:
    result = runner.invoke(app, ["ingest", "nope.md", "--data-dir", str(data_dir)])
    assert result.exit_code == 1
    assert "Path not found" in result.output


def test_ingest_directory(ingested: Path, data_dir: Path) -> None:
    assert (data_dir / "chunks.db").exists()


def test_ingest_reports_chunk_count(tmp_path: Path, data_dir: Path, fake_provider) -> None:
    doc = tmp_path / "note.txt"
    doc.write_text("A short note about retries.", encoding="utf-8")
    result = runner.invoke(app, ["ingest", str(doc), "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "1 file(s), 1 chunks stored" in result.output


def test_ingest_empty_file_skipped(tmp_path: Path, data_dir: Path, fake_provider) -> None:
    doc = tmp_path / "empty.md"
    doc.write_text("   \n", encoding="utf-8")
    result = runner.invoke(app, ["ingest", str(doc), "--data-dir", str(data_dir)])
    assert result.exit_code == 0
    assert "Empty file" in result.output


def test_ingest_exclude_and_recursive(tmp_path: Path, data_dir: Path, fake_provider) -> None:
    root = tmp_path / "tree"
    (root / "sub").mkdir(parents=True)
    (root / "keep.md").write_text("keep me", encoding="utf-8")
    (root / "skip.md").write_text("skip me", encoding="utf-8")
    (root / "sub" / "deep.py").write_text("def deep():\n    return 1\n", encoding="utf-8")
    (root / "image.png").write_bytes(b"\x89PNG")

    result = runner.invoke(
        app, ["ingest", str(root), "-r", "--exclude", "skip.*", "--data-dir", str(data_dir)]
    )
    assert result.exit_code == 0, result.output
    assert "2 file(s)" in result.output
    assert "skip.md" not in result.output
    assert "(code)" in result.output


def test_ingest_without_api_key_fails(tmp_path: Path, data_dir: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    doc = tmp_path / "note.md"
    doc.write_text("text", encoding="utf-8")
    result = runner.invoke(app, ["ingest", str(doc), "--data-dir", str(data_dir)])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


# ---------------------------------------------------------------------------
# recall search
# ---------------------------------------------------------------------------


def test_search_finds_ingested(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(app, ["search", "deploy pipeline", "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "Results for 'deploy pipeline'" in result.output


def test_search_keyword_only_needs_no_key(ingested: Path, data_dir: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    result = runner.invoke(
        app, ["search", "evicts", "--keyword-only", "--data-dir", str(data_dir)]
    )
    assert result.exit_code == 0, result.output
    assert "keyword" in result.output


def test_search_no_results(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(
        app, ["search", "zebra", "--keyword-only", "--data-dir", str(data_dir)]
    )
    assert result.exit_code == 0
    assert "No results." in result.output


# ---------------------------------------------------------------------------
# recall context
# ---------------------------------------------------------------------------


def test_context_prints_prompt(ingested: Path, data_dir: Path, tmp_path: Path) -> None:
    system = tmp_path / "system.txt"
    system.write_text("You are an ops assistant.", encoding="utf-8")
    result = runner.invoke(
        app,
        [
            "context",
            "deploy pipeline retries",
            "--data-dir",
            str(data_dir),
            "--system-prompt",
            str(system),
        ],
    )
    assert result.exit_code == 0, result.output
    assert result.output.startswith("You are an ops assistant.")
    assert "## Relevant Context" in result.output
    assert "deploy.md" in result.output


def test_context_summary_uses_max_tokens(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(
        app,
        ["context", "deploy", "--data-dir", str(data_dir), "--max-tokens", "500", "--summary"],
    )
    assert result.exit_code == 0, result.output
    assert "Token Budget Summary:" in result.output
    assert "Max Budget: 500" in result.output


# ---------------------------------------------------------------------------
# recall status
# ---------------------------------------------------------------------------


def test_status_no_data(data_dir: Path) -> None:
    result = runner.invoke(app, ["status", "--data-dir", str(data_dir)])
    assert result.exit_code == 1
    assert "No recall data" in result.output


def test_status_shows_counts(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(app, ["status", "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "Chunks:" in result.output
    assert "Sources: 2" in result.output
    assert "FTS5" in result.output


# ---------------------------------------------------------------------------
# recall purge
# ---------------------------------------------------------------------------


def test_purge_requires_selection(data_dir: Path) -> None:
    result = runner.invoke(app, ["purge", "--data-dir", str(data_dir)])
    assert result.exit_code == 1
    assert "Nothing selected" in result.output


def test_purge_source(ingested: Path, data_dir: Path) -> None:
    source = str(ingested / "cache.md")
    result = runner.invoke(app, ["purge", "--source", source, "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "1 chunk(s) deleted" in result.output

    status = runner.invoke(app, ["status", "--data-dir", str(data_dir)])
    assert "Sources: 1" in status.output


def test_purge_unknown_source(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(app, ["purge", "--source", "missing", "--data-dir", str(data_dir)])
    assert result.exit_code == 0
    assert "Source not found" in result.output


def test_purge_all_cancelled(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(app, ["purge", "--all", "--data-dir", str(data_dir)], input="n\n")
    assert result.exit_code == 0
    assert "Cancelled" in result.output


def test_purge_all_confirmed(ingested: Path, data_dir: Path) -> None:
    result = runner.invoke(app, ["purge", "--all", "--yes", "--vacuum", "--data-dir", str(data_dir)])
    assert result.exit_code == 0, result.output
    assert "All messages and chunks deleted" in result.output

    status = runner.invoke(app, ["status", "--data-dir", str(data_dir)])
    assert "Sources: 0" in status.output
