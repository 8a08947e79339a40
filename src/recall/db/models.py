"""Domain models for the message and chunk stores."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

MessageRole = Literal["user", "assistant", "system"]
ChunkSourceType = Literal["message", "document", "code", "kb_entry"]
ChunkContentType = Literal["prose", "code", "table", "list", "mixed"]

MESSAGE_ROLES: frozenset[str] = frozenset(["user", "assistant", "system"])
SOURCE_TYPES: frozenset[str] = frozenset(["message", "document", "code", "kb_entry"])


# ------------------------------------------------------------------
# Timestamps
# ------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Normalise *value* to a sortable UTC ISO-8601 string (naive = UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(text: str) -> datetime:
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ------------------------------------------------------------------
# Metadata
# ------------------------------------------------------------------


def _load_json_object(raw: str | None) -> dict[str, Any] | None:
    """Parse *raw* as a JSON object; anything else is treated as absent."""
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (ValueError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def _str_list(value: Any) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [str(v) for v in value]


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _opt_int(value: Any) -> int | None:
    try:
        return None if value is None else int(value)
    except (TypeError, ValueError):
        return None


def _dump(obj: Any) -> str:
    """JSON-encode a metadata dataclass, omitting unset fields."""
    return json.dumps({k: v for k, v in asdict(obj).items() if v is not None})


@dataclass
class CodeBlockInfo:
    language: str
    content: str
    start_line: int | None = None
    file_path: str | None = None


@dataclass
class MessageMetadata:
    """Optional structured data attached to a chat turn."""

    files_mentioned: list[str] | None = None
    code_blocks: list[CodeBlockInfo] | None = None
    sector_id: str | None = None
    ticket_id: str | None = None
    agent_id: str | None = None
    tokens_used: int | None = None

    def to_json(self) -> str:
        return _dump(self)

    @classmethod
    def from_json(cls, raw: str | None) -> MessageMetadata | None:
        """Parse stored metadata; malformed JSON yields None."""
        data = _load_json_object(raw)
        if data is None:
            return None
        blocks = None
        if isinstance(data.get("code_blocks"), list):
            blocks = [
                CodeBlockInfo(
                    language=str(b.get("language", "")),
                    content=str(b.get("content", "")),
                    start_line=_opt_int(b.get("start_line")),
                    file_path=_opt_str(b.get("file_path")),
                )
                for b in data["code_blocks"]
                if isinstance(b, dict)
            ]
        return cls(
            files_mentioned=_str_list(data.get("files_mentioned")),
            code_blocks=blocks,
            sector_id=_opt_str(data.get("sector_id")),
            ticket_id=_opt_str(data.get("ticket_id")),
            agent_id=_opt_str(data.get("agent_id")),
            tokens_used=_opt_int(data.get("tokens_used")),
        )


@dataclass
class ChunkMetadata:
    """Optional structured data attached to a chunk; drives sector/domain filters."""

    title: str | None = None
    url: str | None = None
    file_path: str | None = None
    language: str | None = None
    sector_id: str | None = None
    domain_tags: list[str] | None = None
    version: str | None = None

    def to_json(self) -> str:
        return _dump(self)

    @classmethod
    def from_json(cls, raw: str | None) -> ChunkMetadata | None:
        """Parse stored metadata; malformed JSON yields None."""
        data = _load_json_object(raw)
        if data is None:
            return None
        return cls(
            title=_opt_str(data.get("title")),
            url=_opt_str(data.get("url")),
            file_path=_opt_str(data.get("file_path")),
            language=_opt_str(data.get("language")),
            sector_id=_opt_str(data.get("sector_id")),
            domain_tags=_str_list(data.get("domain_tags")),
            version=_opt_str(data.get("version")),
        )


# ------------------------------------------------------------------
# Messages
# ------------------------------------------------------------------


@dataclass
class MessageInput:
    session_id: str
    role: MessageRole
    content: str
    workspace_path: str | None = None
    tags: list[str] | None = None
    metadata: MessageMetadata | None = None
    timestamp: datetime | None = None  # defaults to now; set when importing history


@dataclass
class StoredMessage:
    id: int
    session_id: str
    role: MessageRole
    content: str
    timestamp: datetime
    workspace_path: str | None = None
    tags: list[str] | None = None
    metadata: MessageMetadata | None = None


@dataclass
class MessageSearchResult:
    message: StoredMessage
    score: float


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------


@dataclass
class ChunkInput:
    """A chunk produced by the chunker, before it is embedded."""

    source_id: str
    source_type: ChunkSourceType
    content: str
    content_type: ChunkContentType
    chunk_index: int
    token_count: int
    keywords: list[str] = field(default_factory=list)
    metadata: ChunkMetadata | None = None


def chunk_id(source_id: str, chunk_index: int) -> str:
    return f"{source_id}_chunk_{chunk_index}"


@dataclass
class EmbeddedChunk:
    id: str
    source_id: str
    source_type: ChunkSourceType
    content: str
    content_type: ChunkContentType
    embedding: list[float]
    chunk_index: int
    token_count: int
    keywords: list[str] = field(default_factory=list)
    metadata: ChunkMetadata | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class RetrievalFilters:
    source_types: list[str] | None = None
    sector_ids: list[str] | None = None
    domain_tags: list[str] | None = None
    min_date: datetime | None = None
    max_date: datetime | None = None
    exclude_ids: list[str] | None = None

    def is_empty(self) -> bool:
        return not (
            self.source_types
            or self.sector_ids
            or self.domain_tags
            or self.min_date
            or self.max_date
            or self.exclude_ids
        )

    def matches_metadata(self, metadata: ChunkMetadata | None) -> bool:
        """Apply the sector/domain predicates that live in opaque metadata.

        With either predicate set, chunks without metadata are excluded; a chunk
        whose metadata lacks the field in question passes that predicate.
        """
        if not (self.sector_ids or self.domain_tags):
            return True
        if metadata is None:
            return False
        if self.sector_ids and metadata.sector_id:
            if metadata.sector_id not in self.sector_ids:
                return False
        if self.domain_tags and metadata.domain_tags:
            if not any(tag in metadata.domain_tags for tag in self.domain_tags):
                return False
        return True


@dataclass
class VectorSearchResult:
    chunk: EmbeddedChunk
    similarity: float


@dataclass
class KeywordSearchResult:
    chunk: EmbeddedChunk
    score: float
