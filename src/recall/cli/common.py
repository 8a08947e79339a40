"""Shared CLI plumbing: config loading, provider construction, engine lifetime."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console

from recall.cli.errors import (
    err_config,
    err_embedding_unavailable,
    err_no_api_key,
    err_storage,
    warn_keyword_only,
)
from recall.config import ConfigError, RecallConfig, load_config
from recall.db.errors import StorageError
from recall.engine import MemoryEngine
from recall.rag.embeddings import EmbeddingProvider, LiteLLMEmbeddingProvider

console = Console()


def load_cli_config(data_dir: Path | None) -> RecallConfig:
    """Load config from CWD; ``--data-dir`` overrides every other layer."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    if data_dir is not None:
        cfg.storage.data_dir = str(data_dir)
    return cfg


def build_provider(cfg: RecallConfig, *, required: bool) -> EmbeddingProvider:
    """Create and synchronously load the configured embedding provider.

    With ``required=False`` a load failure is reported as a warning and the
    not-ready provider is returned, so retrieval runs keyword-only.
    """
    provider = idle_provider(cfg)
    try:
        provider.load()
    except EnvironmentError as exc:
        if required:
            model = cfg.embedding.model
            provider_name = model.split("/")[0] if "/" in model else "openai"
            console.print(err_no_api_key(provider_name))
            raise typer.Exit(1) from exc
        console.print(warn_keyword_only(cfg.embedding.model))
    except Exception as exc:
        if required:
            console.print(err_embedding_unavailable(cfg.embedding.model, str(exc)))
            raise typer.Exit(1) from exc
        console.print(warn_keyword_only(cfg.embedding.model))
    return provider


def idle_provider(cfg: RecallConfig) -> LiteLLMEmbeddingProvider:
    """Provider that is never loaded; for commands that do not embed."""
    return LiteLLMEmbeddingProvider(
        cfg.embedding.model,
        dimensions=cfg.embedding.dimensions,
        num_retries=cfg.embedding.num_retries,
    )


@contextmanager
def open_engine(cfg: RecallConfig, provider: EmbeddingProvider) -> Iterator[MemoryEngine]:
    """Open the engine, turning storage failures into a clean exit."""
    try:
        engine = MemoryEngine.open(cfg, provider)
    except StorageError as exc:
        console.print(err_storage(str(exc)))
        raise typer.Exit(1) from exc
    try:
        yield engine
    except StorageError as exc:
        console.print(err_storage(str(exc)))
        raise typer.Exit(1) from exc
    finally:
        engine.close()
