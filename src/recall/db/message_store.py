"""Append-only chat log with session, workspace and full-text read paths.

Writes commit before returning, so a message is searchable as soon as
add_message() returns. FTS5 is probed once at open; without it (or when a
MATCH query fails) search falls back to a LIKE substring scan scored 1.0.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

import structlog

from recall.db.connection import Database, translate_errors
from recall.db.models import (
    MESSAGE_ROLES,
    MessageInput,
    MessageMetadata,
    MessageSearchResult,
    StoredMessage,
    from_iso,
    to_iso,
    utc_now,
)
from recall.db.schema import (
    MESSAGES_FTS_DDL,
    build_like_pattern,
    build_match_query,
    initialize_messages,
    is_fts_error,
    probe_fts,
)

logger = structlog.get_logger()

_COLUMNS = "id, session_id, workspace_path, role, content, timestamp, tags, metadata"
_JOINED_COLUMNS = ", ".join(f"m.{c}" for c in _COLUMNS.split(", "))


@dataclass
class MessageStoreStats:
    total_messages: int
    sessions_count: int
    oldest_message: datetime | None
    newest_message: datetime | None


class MessageStore:
    """SQLite-backed message log.

    Owns its connection; all access is serialised with an internal lock so a
    single instance can be shared by worker threads.
    """

    def __init__(self, db_path: Path | str, *, enable_fts: bool = True) -> None:
        """Open (or create) the message database.

        Args:
            db_path: Database file path, or ``":memory:"``.
            enable_fts: Set False to pin the LIKE fallback without probing.

        Raises:
            StorageError: If the database cannot be opened or migrated.
        """
        self._db = Database(db_path)
        self._conn: sqlite3.Connection | None = self._db.connect()
        self._lock = threading.RLock()
        self._fallback_logged = False
        with translate_errors("initialise message store"):
            initialize_messages(self._conn)
            self.fts_enabled = enable_fts and probe_fts(
                self._conn, MESSAGES_FTS_DDL, "messages_fts", store="messages"
            )

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("MessageStore is closed")
        return self._conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add_message(self, message: MessageInput) -> StoredMessage:
        """Persist *message* and return the stored row.

        Raises:
            ValueError: If the role is not user, assistant or system.
            StorageError: On storage failure.
        """
        if message.role not in MESSAGE_ROLES:
            raise ValueError(f"Unknown message role '{message.role}'")

        timestamp = to_iso(message.timestamp or utc_now())
        tags = json.dumps(message.tags) if message.tags is not None else None
        metadata = message.metadata.to_json() if message.metadata is not None else None

        with self._lock, translate_errors("add message"):
            cur = self.conn.execute(
                """
                INSERT INTO messages (session_id, workspace_path, role, content, timestamp, tags, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.session_id,
                    message.workspace_path,
                    message.role,
                    message.content,
                    timestamp,
                    tags,
                    metadata,
                ),
            )
            self.conn.commit()
            row = self.conn.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        return _row_to_message(row)

    def delete_message(self, message_id: int) -> bool:
        """Delete one message. Returns True if a row was removed."""
        with self._lock, translate_errors("delete message"):
            cur = self.conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            self.conn.commit()
        return cur.rowcount > 0

    def delete_session(self, session_id: str) -> int:
        """Delete every message of *session_id*. Returns the number removed."""
        with self._lock, translate_errors("delete session"):
            cur = self.conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,))
            self.conn.commit()
        return cur.rowcount

    def delete_old_messages(self, older_than_days: float) -> int:
        """Purge messages older than *older_than_days*. Returns the number removed."""
        cutoff = to_iso(utc_now() - timedelta(days=older_than_days))
        with self._lock, translate_errors("purge messages"):
            cur = self.conn.execute("DELETE FROM messages WHERE timestamp < ?", (cutoff,))
            self.conn.commit()
        return cur.rowcount

    def clear(self) -> None:
        with self._lock, translate_errors("clear messages"):
            self.conn.execute("DELETE FROM messages")
            self.conn.commit()

    def vacuum(self) -> None:
        with self._lock, translate_errors("vacuum messages"):
            self.conn.execute("VACUUM")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_message(self, message_id: int) -> StoredMessage | None:
        with self._lock, translate_errors("get message"):
            row = self.conn.execute(
                f"SELECT {_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return _row_to_message(row) if row else None

    def get_session_messages(self, session_id: str, limit: int = 100) -> list[StoredMessage]:
        """Return the newest *limit* messages of a session, oldest first."""
        with self._lock, translate_errors("get session messages"):
            rows = self.conn.execute(
                f"""
                SELECT {_COLUMNS} FROM messages
                WHERE session_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
                """,
                (session_id, limit),
            ).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def get_recent_messages(
        self, limit: int = 50, workspace_path: str | None = None
    ) -> list[StoredMessage]:
        """Return the newest *limit* messages across sessions, oldest first.

        Args:
            limit: Maximum number of messages.
            workspace_path: Restrict to one workspace when given.
        """
        sql = f"SELECT {_COLUMNS} FROM messages"
        params: list[object] = []
        if workspace_path:
            sql += " WHERE workspace_path = ?"
            params.append(workspace_path)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock, translate_errors("get recent messages"):
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_message(r) for r in reversed(rows)]

    def search_messages(
        self, query: str, limit: int = 20, workspace_path: str | None = None
    ) -> list[MessageSearchResult]:
        """Full-text search ranked by BM25, best first.

        bm25() returns negative values (lower = better); the absolute value is
        reported as the score. LIKE fallback results all score 1.0.
        """
        if not query.strip():
            return []
        if not self.fts_enabled:
            self._log_fallback_once("fts disabled")
            return self._like_search(query, limit, workspace_path)

        sql = f"""
            SELECT {_JOINED_COLUMNS},
                   bm25(messages_fts) AS score
            FROM messages_fts
            JOIN messages m ON messages_fts.rowid = m.id
            WHERE messages_fts MATCH ?
        """
        params: list[object] = [build_match_query(query)]
        if workspace_path:
            sql += " AND m.workspace_path = ?"
            params.append(workspace_path)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

        with self._lock, translate_errors("search messages"):
            try:
                rows = self.conn.execute(sql, params).fetchall()
            except sqlite3.OperationalError as exc:
                if not is_fts_error(exc):
                    raise
                self._log_fallback_once(str(exc))
                return self._like_search(query, limit, workspace_path)
        return [
            MessageSearchResult(message=_row_to_message(r), score=abs(r["score"]))
            for r in rows
        ]

    def _like_search(
        self, query: str, limit: int, workspace_path: str | None
    ) -> list[MessageSearchResult]:
        sql = f"SELECT {_COLUMNS} FROM messages WHERE content LIKE ? ESCAPE '\\'"
        params: list[object] = [build_like_pattern(query)]
        if workspace_path:
            sql += " AND workspace_path = ?"
            params.append(workspace_path)
        sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock, translate_errors("search messages"):
            rows = self.conn.execute(sql, params).fetchall()
        return [MessageSearchResult(message=_row_to_message(r), score=1.0) for r in rows]

    def _log_fallback_once(self, reason: str) -> None:
        if not self._fallback_logged:
            self._fallback_logged = True
            logger.warning("fts.fallback", store="messages", reason=reason)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self) -> MessageStoreStats:
        with self._lock, translate_errors("message stats"):
            row = self.conn.execute(
                """
                SELECT COUNT(*) AS total, COUNT(DISTINCT session_id) AS sessions,
                       MIN(timestamp) AS oldest, MAX(timestamp) AS newest
                FROM messages
                """
            ).fetchone()
        return MessageStoreStats(
            total_messages=row["total"],
            sessions_count=row["sessions"],
            oldest_message=from_iso(row["oldest"]) if row["oldest"] else None,
            newest_message=from_iso(row["newest"]) if row["newest"] else None,
        )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _load_tags(raw: str | None) -> list[str] | None:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return None
    return [str(t) for t in data] if isinstance(data, list) else None


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        session_id=row["session_id"],
        workspace_path=row["workspace_path"],
        role=row["role"],
        content=row["content"],
        timestamp=from_iso(row["timestamp"]),
        tags=_load_tags(row["tags"]),
        metadata=MessageMetadata.from_json(row["metadata"]),
    )
