"""Tests for the recall config loader."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest
import yaml

from recall.config import ConfigError, RecallConfig, load_config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_yaml(path: Path, data: dict) -> None:
    path.write_text(yaml.dump(data), encoding="utf-8")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("RECALL_EMBEDDING_MODEL", "RECALL_DATA_DIR", "RECALL_MAX_TOTAL_TOKENS"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def no_global(tmp_path: Path) -> Path:
    return tmp_path / "nonexistent" / "config.yaml"


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


def test_load_config_defaults_no_files(tmp_path: Path, no_global: Path) -> None:
    """No config files → all hardcoded defaults."""
    cfg = load_config(project_dir=tmp_path, global_config_path=no_global)

    assert cfg.embedding.model == "openai/text-embedding-3-small"
    assert cfg.embedding.dimensions is None
    assert cfg.storage.data_dir == ".recall"
    assert cfg.storage.enable_fts is True
    assert cfg.chunking.max_tokens == 500
    assert cfg.retrieval.rrf_k == 60
    assert cfg.budget.max_total_tokens == 8_000
    assert cfg.budget.min_chunk_relevance_score == 0.7
    assert cfg.project_dir == tmp_path


def test_data_path_relative_to_project(tmp_path: Path, no_global: Path) -> None:
    cfg = load_config(project_dir=tmp_path, global_config_path=no_global)
    assert cfg.data_path == tmp_path / ".recall"


def test_data_path_absolute(tmp_path: Path) -> None:
    cfg = RecallConfig(project_dir=tmp_path)
    cfg.storage.data_dir = str(tmp_path / "elsewhere")
    assert cfg.data_path == tmp_path / "elsewhere"


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def test_global_overrides_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"model": "cohere/embed-english-v3.0"}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.embedding.model == "cohere/embed-english-v3.0"
    assert cfg.budget.max_total_tokens == 8_000


def test_project_overrides_global(tmp_path: Path) -> None:
    global_cfg = tmp_path / "global.yaml"
    _write_yaml(global_cfg, {"budget": {"max_total_tokens": 4000, "max_chunks_per_source": 2}})
    _write_yaml(tmp_path / "recall.yaml", {"budget": {"max_total_tokens": 16000}})

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.budget.max_total_tokens == 16000
    assert cfg.budget.max_chunks_per_source == 2


def test_empty_files_use_defaults(tmp_path: Path) -> None:
    global_cfg = tmp_path / "global.yaml"
    global_cfg.write_text("", encoding="utf-8")
    (tmp_path / "recall.yaml").write_text("", encoding="utf-8")

    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.chunking.overlap_tokens == 50


def test_env_overrides_files(tmp_path: Path, no_global: Path, monkeypatch) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"embedding": {"model": "openai/text-embedding-3-large"}})
    monkeypatch.setenv("RECALL_EMBEDDING_MODEL", "ollama/nomic-embed-text")
    monkeypatch.setenv("RECALL_DATA_DIR", "/var/lib/recall")
    monkeypatch.setenv("RECALL_MAX_TOTAL_TOKENS", "2048")

    cfg = load_config(project_dir=tmp_path, global_config_path=no_global)
    assert cfg.embedding.model == "ollama/nomic-embed-text"
    assert cfg.storage.data_dir == "/var/lib/recall"
    assert cfg.budget.max_total_tokens == 2048


def test_env_max_tokens_must_be_int(tmp_path: Path, no_global: Path, monkeypatch) -> None:
    monkeypatch.setenv("RECALL_MAX_TOTAL_TOKENS", "lots")
    with pytest.raises(ConfigError, match="RECALL_MAX_TOTAL_TOKENS"):
        load_config(project_dir=tmp_path, global_config_path=no_global)


# ---------------------------------------------------------------------------
# Section parsing
# ---------------------------------------------------------------------------


def test_all_sections_parsed(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(
        tmp_path / "recall.yaml",
        {
            "storage": {"data_dir": "mem", "enable_fts": "no", "cache_limit": 10, "candidate_limit": 20},
            "embedding": {"dimensions": 256, "num_retries": 1},
            "chunking": {"max_tokens": 200, "overlap_tokens": 20, "respect_boundaries": False},
            "retrieval": {"rrf_k": 30, "vector_weight": 0.5, "keyword_weight": 0.5, "code_boost": 2},
            "budget": {"apply_code_boost": "yes", "recent_messages_ratio": 0.2},
        },
    )
    cfg = load_config(project_dir=tmp_path, global_config_path=no_global)
    assert cfg.storage.enable_fts is False
    assert (cfg.storage.cache_limit, cfg.storage.candidate_limit) == (10, 20)
    assert cfg.embedding.dimensions == 256
    assert cfg.chunking.respect_boundaries is False
    assert cfg.retrieval.code_boost == 2.0
    assert cfg.budget.apply_code_boost is True
    assert cfg.budget.recent_messages_ratio == 0.2


def test_converters(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"retrieval": {"rrf_k": 10}, "budget": {"max_total_tokens": 999}})
    cfg = load_config(project_dir=tmp_path, global_config_path=no_global)
    assert cfg.retrieval.to_rrf_config().k == 10
    assert cfg.budget.to_budget_config().max_total_tokens == 999
    assert cfg.chunking.to_chunking_config().max_tokens == 500


# ---------------------------------------------------------------------------
# Errors and warnings
# ---------------------------------------------------------------------------


def test_global_api_key_forbidden(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"embedding": {"api_key": "sk-secret"}})
    with pytest.raises(ConfigError, match="forbidden key 'embedding.api_key'"):
        load_config(project_dir=tmp_path, global_config_path=global_cfg)


def test_token_budget_keys_not_mistaken_for_secrets(tmp_path: Path) -> None:
    global_cfg = tmp_path / "config.yaml"
    _write_yaml(global_cfg, {"budget": {"max_total_tokens": 100}, "chunking": {"overlap_tokens": 5, "max_tokens": 50}})
    cfg = load_config(project_dir=tmp_path, global_config_path=global_cfg)
    assert cfg.budget.max_total_tokens == 100


def test_unknown_section_warns(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"generation": {"model": "x"}})
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(project_dir=tmp_path, global_config_path=no_global)
    assert any("generation" in str(w.message) for w in caught)


def test_invalid_yaml_raises(tmp_path: Path, no_global: Path) -> None:
    (tmp_path / "recall.yaml").write_text("budget: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="Cannot parse"):
        load_config(project_dir=tmp_path, global_config_path=no_global)


def test_non_mapping_yaml_raises(tmp_path: Path, no_global: Path) -> None:
    (tmp_path / "recall.yaml").write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(project_dir=tmp_path, global_config_path=no_global)


def test_bad_value_type_raises(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"budget": {"max_total_tokens": "plenty"}})
    with pytest.raises(ConfigError, match="Invalid config value"):
        load_config(project_dir=tmp_path, global_config_path=no_global)


def test_section_must_be_mapping(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"retrieval": 5})
    with pytest.raises(ConfigError, match="retrieval"):
        load_config(project_dir=tmp_path, global_config_path=no_global)


def test_invalid_chunking_raises(tmp_path: Path, no_global: Path) -> None:
    _write_yaml(tmp_path / "recall.yaml", {"chunking": {"max_tokens": 10, "overlap_tokens": 10}})
    with pytest.raises(ConfigError, match="overlap_tokens"):
        load_config(project_dir=tmp_path, global_config_path=no_global)
