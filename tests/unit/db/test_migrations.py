"""Tests for the forward-only migration runner."""

from __future__ import annotations

import sqlite3

import pytest

from recall.db.connection import Database
from recall.db.migrations import CHUNK_MIGRATIONS, MESSAGE_MIGRATIONS, current_version, run_migrations


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    db = Database(tmp_path / "test.db")
    return db.connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


def _index_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name=?", (name,)
    ).fetchone() is not None


# --- Bootstrap ---

def test_fresh_database_is_version_zero(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, [])
    assert current_version(conn) == 0
    conn.close()


def test_run_message_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, MESSAGE_MIGRATIONS)
    assert current_version(conn) == MESSAGE_MIGRATIONS[-1][0]
    conn.close()


# --- Idempotency ---

def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, CHUNK_MIGRATIONS)
    run_migrations(conn, CHUNK_MIGRATIONS)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(CHUNK_MIGRATIONS)
    conn.close()


# --- Tables created ---

def test_message_migrations_create_table_and_indexes(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, MESSAGE_MIGRATIONS)
    assert _table_exists(conn, "messages")
    assert _index_exists(conn, "idx_messages_session")
    assert _index_exists(conn, "idx_messages_workspace")
    conn.close()


def test_chunk_migrations_create_tables_and_indexes(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, CHUNK_MIGRATIONS)
    assert _table_exists(conn, "chunks")
    assert _table_exists(conn, "store_meta")
    for index in ("idx_chunks_source", "idx_chunks_source_type", "idx_chunks_created"):
        assert _index_exists(conn, index)
    conn.close()


def test_messages_role_check_constraint(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn, MESSAGE_MIGRATIONS)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute(
            "INSERT INTO messages (session_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
            ("s", "robot", "hi", "2024-01-01T00:00:00+00:00"),
        )
    conn.close()
