"""recall configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (RECALL_EMBEDDING_MODEL, RECALL_DATA_DIR,
                             RECALL_MAX_TOTAL_TOKENS)
  3. Per-project recall.yaml
  4. Global ~/.recall/config.yaml  (no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from recall.ingest.base import ChunkingConfig
from recall.rag.assembler import ContextBudgetConfig
from recall.rag.retriever import RRFConfig

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".recall"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "recall.yaml"
_DEFAULT_DATA_DIR: str = ".recall"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens, overlap_tokens, rrf_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

# Known top-level sections; unknown keys produce a warning
_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["storage", "embedding", "chunking", "retrieval", "budget"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class StorageCfg:
    """Where and how the two stores live (recall.yaml: storage:).

    Attributes:
        data_dir: Directory holding messages.db and chunks.db. Relative paths
            resolve against the project directory.
        enable_fts: Set False to force the LIKE fallback.
        cache_limit: Hot cache capacity (chunks).
        candidate_limit: Row ceiling for filtered vector scans.
    """

    data_dir: str = _DEFAULT_DATA_DIR
    enable_fts: bool = True
    cache_limit: int = 10_000
    candidate_limit: int = 5_000


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (recall.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int | None = None
    num_retries: int = 3


@dataclass
class ChunkingCfg:
    max_tokens: int = 500
    overlap_tokens: int = 50
    respect_boundaries: bool = True

    def to_chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            max_tokens=self.max_tokens,
            overlap_tokens=self.overlap_tokens,
            respect_boundaries=self.respect_boundaries,
        )


@dataclass
class RetrievalCfg:
    """Fusion and boost parameters (recall.yaml: retrieval:)."""

    rrf_k: int = 60
    vector_weight: float = 0.6
    keyword_weight: float = 0.4
    sector_boost: float = 1.2
    code_boost: float = 1.5
    recency_decay_days: float = 30.0

    def to_rrf_config(self) -> RRFConfig:
        return RRFConfig(
            k=self.rrf_k, vector_weight=self.vector_weight, keyword_weight=self.keyword_weight
        )


@dataclass
class BudgetCfg:
    max_total_tokens: int = 8_000
    recent_messages_ratio: float = 0.30
    retrieved_chunks_ratio: float = 0.50
    specialist_kb_ratio: float = 0.15
    system_prompt_ratio: float = 0.05
    min_chunk_relevance_score: float = 0.7
    max_chunks_per_source: int = 3
    deduplication_threshold: float = 0.9
    apply_recency_boost: bool = False
    apply_code_boost: bool = False

    def to_budget_config(self) -> ContextBudgetConfig:
        return ContextBudgetConfig(**vars(self))


@dataclass
class RecallConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    storage: StorageCfg = field(default_factory=StorageCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    budget: BudgetCfg = field(default_factory=BudgetCfg)
    project_dir: Path = field(default_factory=Path.cwd)

    @property
    def data_path(self) -> Path:
        """Absolute data directory (relative ``storage.data_dir`` joins project_dir)."""
        path = Path(self.storage.data_dir).expanduser()
        return path if path.is_absolute() else self.project_dir / path


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config '{path}' must be a mapping at the top level.")
    return data


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping.")
    return raw


def _cfg_from_dict(data: dict[str, Any]) -> RecallConfig:
    """Build a *RecallConfig* from a merged raw YAML dict."""
    cfg = RecallConfig()

    s = _section(data, "storage")
    cfg.storage = StorageCfg(
        data_dir=str(s.get("data_dir", cfg.storage.data_dir)),
        enable_fts=_as_bool(s.get("enable_fts", cfg.storage.enable_fts)),
        cache_limit=int(s.get("cache_limit", cfg.storage.cache_limit)),
        candidate_limit=int(s.get("candidate_limit", cfg.storage.candidate_limit)),
    )

    e = _section(data, "embedding")
    dims = e.get("dimensions", cfg.embedding.dimensions)
    cfg.embedding = EmbeddingCfg(
        model=str(e.get("model", cfg.embedding.model)),
        dimensions=int(dims) if dims is not None else None,
        num_retries=int(e.get("num_retries", cfg.embedding.num_retries)),
    )

    c = _section(data, "chunking")
    cfg.chunking = ChunkingCfg(
        max_tokens=int(c.get("max_tokens", cfg.chunking.max_tokens)),
        overlap_tokens=int(c.get("overlap_tokens", cfg.chunking.overlap_tokens)),
        respect_boundaries=_as_bool(
            c.get("respect_boundaries", cfg.chunking.respect_boundaries)
        ),
    )

    r = _section(data, "retrieval")
    cfg.retrieval = RetrievalCfg(
        rrf_k=int(r.get("rrf_k", cfg.retrieval.rrf_k)),
        vector_weight=float(r.get("vector_weight", cfg.retrieval.vector_weight)),
        keyword_weight=float(r.get("keyword_weight", cfg.retrieval.keyword_weight)),
        sector_boost=float(r.get("sector_boost", cfg.retrieval.sector_boost)),
        code_boost=float(r.get("code_boost", cfg.retrieval.code_boost)),
        recency_decay_days=float(
            r.get("recency_decay_days", cfg.retrieval.recency_decay_days)
        ),
    )

    b = _section(data, "budget")
    d = cfg.budget
    cfg.budget = BudgetCfg(
        max_total_tokens=int(b.get("max_total_tokens", d.max_total_tokens)),
        recent_messages_ratio=float(b.get("recent_messages_ratio", d.recent_messages_ratio)),
        retrieved_chunks_ratio=float(b.get("retrieved_chunks_ratio", d.retrieved_chunks_ratio)),
        specialist_kb_ratio=float(b.get("specialist_kb_ratio", d.specialist_kb_ratio)),
        system_prompt_ratio=float(b.get("system_prompt_ratio", d.system_prompt_ratio)),
        min_chunk_relevance_score=float(
            b.get("min_chunk_relevance_score", d.min_chunk_relevance_score)
        ),
        max_chunks_per_source=int(b.get("max_chunks_per_source", d.max_chunks_per_source)),
        deduplication_threshold=float(
            b.get("deduplication_threshold", d.deduplication_threshold)
        ),
        apply_recency_boost=_as_bool(b.get("apply_recency_boost", d.apply_recency_boost)),
        apply_code_boost=_as_bool(b.get("apply_code_boost", d.apply_code_boost)),
    )

    # Validates max_tokens / overlap_tokens.
    cfg.chunking.to_chunking_config()
    return cfg


def _apply_env_overrides(cfg: RecallConfig) -> RecallConfig:
    """Apply RECALL_* environment variable overrides (layer 2)."""
    if model := os.environ.get("RECALL_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if data_dir := os.environ.get("RECALL_DATA_DIR"):
        cfg.storage.data_dir = data_dir
    if max_tokens := os.environ.get("RECALL_MAX_TOTAL_TOKENS"):
        try:
            cfg.budget.max_total_tokens = int(max_tokens)
        except ValueError as exc:
            raise ConfigError(
                f"RECALL_MAX_TOTAL_TOKENS must be an integer, got '{max_tokens}'."
            ) from exc
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> RecallConfig:
    """Load and return a merged *RecallConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *recall.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, a file
            cannot be parsed, or a value has the wrong type.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except (TypeError, ValueError) as exc:
        if isinstance(exc, ConfigError):
            raise
        raise ConfigError(f"Invalid config value: {exc}") from exc

    cfg.project_dir = search_dir

    # Layer 3: env var overrides
    return _apply_env_overrides(cfg)
