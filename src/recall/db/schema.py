"""Schema initialisation and full-text capability probing."""

from __future__ import annotations

import sqlite3

import structlog

from recall.db.migrations import CHUNK_MIGRATIONS, MESSAGE_MIGRATIONS, run_migrations

logger = structlog.get_logger()

# External-content FTS5 index over messages.content, kept in sync by triggers.
MESSAGES_FTS_DDL = """
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content,
    content='messages',
    content_rowid='id',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS messages_ai AFTER INSERT ON messages BEGIN
    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
END;

CREATE TRIGGER IF NOT EXISTS messages_ad AFTER DELETE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content)
    VALUES ('delete', old.id, old.content);
END;

CREATE TRIGGER IF NOT EXISTS messages_au AFTER UPDATE ON messages BEGIN
    INSERT INTO messages_fts(messages_fts, rowid, content)
    VALUES ('delete', old.id, old.content);
    INSERT INTO messages_fts(rowid, content) VALUES (new.id, new.content);
END;
"""

# Chunk upserts use ON CONFLICT DO UPDATE so the update trigger fires;
# INSERT OR REPLACE would bypass the delete trigger.
CHUNKS_FTS_DDL = """
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    content,
    keywords,
    content='chunks',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS chunks_ai AFTER INSERT ON chunks BEGIN
    INSERT INTO chunks_fts(rowid, content, keywords)
    VALUES (new.rowid, new.content, new.keywords);
END;

CREATE TRIGGER IF NOT EXISTS chunks_ad AFTER DELETE ON chunks BEGIN
    INSERT INTO chunks_fts(chunks_fts, rowid, content, keywords)
    VALUES ('delete', old.rowid, old.content, old.keywords);
END;

CREATE TRIGGER IF NOT EXISTS chunks_au AFTER UPDATE ON chunks BEGIN
    INSERT INTO chunks_fts(chunks_fts, rowid, content, keywords)
    VALUES ('delete', old.rowid, old.content, old.keywords);
    INSERT INTO chunks_fts(rowid, content, keywords)
    VALUES (new.rowid, new.content, new.keywords);
END;
"""


def initialize_messages(conn: sqlite3.Connection) -> None:
    """Initialise the message store schema (idempotent)."""
    run_migrations(conn, MESSAGE_MIGRATIONS)


def initialize_chunks(conn: sqlite3.Connection) -> None:
    """Initialise the chunk store schema (idempotent)."""
    run_migrations(conn, CHUNK_MIGRATIONS)


def probe_fts(conn: sqlite3.Connection, ddl: str, table: str, store: str) -> bool:
    """Create the FTS5 index and sync triggers described by *ddl*.

    Returns True when the runtime SQLite supports FTS5. When it does not, the
    failure is logged once and False is returned so the caller can pin its
    substring fallback. A freshly created index is rebuilt from its content
    table, covering rows written while full-text search was off.
    """
    existed = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone() is not None
    try:
        conn.executescript(ddl)
        if not existed:
            conn.execute(f"INSERT INTO {table}({table}) VALUES ('rebuild')")
        conn.commit()
    except sqlite3.OperationalError as exc:
        conn.rollback()
        if not is_fts_error(exc):
            raise
        logger.warning("fts.unavailable", store=store, error=str(exc))
        return False
    return True


# Substrings of OperationalError messages that come from the FTS5 layer
# (missing module, rejected MATCH expression, missing index table).
_FTS_ERROR_MARKERS = ("fts5", "no such module", "match", "_fts")


def is_fts_error(exc: sqlite3.OperationalError) -> bool:
    """True when *exc* means full-text search is unusable, not that storage failed."""
    message = str(exc).lower()
    return any(marker in message for marker in _FTS_ERROR_MARKERS)


def build_match_query(text: str) -> str | None:
    """Turn free text into an FTS5 query of OR'd quoted terms.

    Quoting neutralises FTS5 operators and punctuation; any single term match
    contributes and ranking is left to bm25(). Returns None for blank input.
    """
    terms = [t.replace('"', '""') for t in text.split()]
    if not terms:
        return None
    return " OR ".join(f'"{t}"' for t in terms)


def build_like_pattern(text: str) -> str:
    """Return a ``LIKE ... ESCAPE '\\'`` pattern matching *text* as a literal substring."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
