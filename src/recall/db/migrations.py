"""Forward-only migration runner for the message and chunk stores.

FTS5 shadow tables are NOT migration-managed: full-text search is an optional
capability probed at store initialisation (see recall.db.schema.probe_fts).
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_MESSAGES_V1_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id      TEXT NOT NULL,
    workspace_path  TEXT,
    role            TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
    content         TEXT NOT NULL,
    timestamp       TEXT NOT NULL,
    tags            TEXT,
    metadata        TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_session
    ON messages(session_id, timestamp DESC);

CREATE INDEX IF NOT EXISTS idx_messages_workspace
    ON messages(workspace_path, timestamp DESC);
"""

_CHUNKS_V1_SQL = """
CREATE TABLE IF NOT EXISTS chunks (
    id              TEXT PRIMARY KEY,
    source_id       TEXT NOT NULL,
    source_type     TEXT NOT NULL,
    content         TEXT NOT NULL,
    content_type    TEXT NOT NULL,
    embedding       BLOB NOT NULL,
    keywords        TEXT NOT NULL DEFAULT '[]',
    chunk_index     INTEGER NOT NULL,
    token_count     INTEGER NOT NULL,
    metadata        TEXT,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_source ON chunks(source_id);
CREATE INDEX IF NOT EXISTS idx_chunks_source_type ON chunks(source_type);
CREATE INDEX IF NOT EXISTS idx_chunks_created ON chunks(created_at DESC);

CREATE TABLE IF NOT EXISTS store_meta (
    key             TEXT PRIMARY KEY,
    value           TEXT NOT NULL
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MESSAGE_MIGRATIONS: list[tuple[int, str]] = [
    (1, _MESSAGES_V1_SQL),
]

CHUNK_MIGRATIONS: list[tuple[int, str]] = [
    (1, _CHUNKS_V1_SQL),
]


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection, migrations: list[tuple[int, str]]) -> None:
    """Apply all pending *migrations* in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    current = current_version(conn)

    for version, sql in sorted(migrations):
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
