"""Content-aware text chunker with keyword extraction.

Strategy:
- Detect the content type of the whole text (code / table / list / mixed / prose).
- Boundary mode: split code before function/class declarations and prose on
  blank lines, then pack units greedily into a ``max_tokens * 4`` character
  buffer. On overflow the buffer is flushed and its trailing
  ``overlap_tokens * 4`` characters seed the next buffer. Units larger than
  the buffer are cut with the fixed window.
- Fixed mode: sliding character window with the same overlap.
"""

from __future__ import annotations

import re
from collections import Counter

from recall.db.models import ChunkContentType, ChunkInput, ChunkSourceType
from recall.ingest.base import CHARS_PER_TOKEN, BaseChunker, ChunkingConfig, estimate_tokens

_CODE_INDICATORS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(import|export|const|let|var|function|class|interface|type|enum)\s", re.MULTILINE),
    re.compile(r"[{};]\s*$", re.MULTILINE),
    re.compile(r"^\s*(public|private|protected|static|async|await)\s", re.MULTILINE),
    re.compile(r"=>"),
    re.compile(r"\(\s*\)\s*\{"),
    re.compile(r"^\s*(def|class)\s+\w+.*:\s*$", re.MULTILINE),
)
_TABLE_RE = re.compile(r"^\s*\|.*\|.*\|", re.MULTILINE)
_LIST_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*[-*•]\s+", re.MULTILINE),
    re.compile(r"^\s*\d+\.\s+", re.MULTILINE),
)

_CODE_BOUNDARY_RE = re.compile(
    r"(?=\n(?:function|class|export|def |async function|public |private |protected ))"
)
_PARAGRAPH_RE = re.compile(r"\n\s*\n")

_CAMEL_RE = re.compile(r"([a-z])([A-Z])")
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_DIGITS_RE = re.compile(r"^\d+$")

MAX_KEYWORDS = 20

_STOP_WORDS: frozenset[str] = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were been
    be have has had do does did will would could should may might must shall can
    need this that these those it its they them their we us our you your he him
    his she her if then else when where why how all each every both few more most
    other some such no not only own same so than too very just
    """.split()
)


def detect_content_type(text: str) -> ChunkContentType:
    """Classify *text* by scoring indicator patterns.

    Two or more code indicators mean code; a markdown table row means table; a
    bullet or numbered line means list; a single code indicator means mixed.
    """
    code_score = sum(1 for pattern in _CODE_INDICATORS if pattern.search(text))
    if code_score >= 2:
        return "code"
    if _TABLE_RE.search(text):
        return "table"
    if any(pattern.search(text) for pattern in _LIST_RES):
        return "list"
    if code_score == 1:
        return "mixed"
    return "prose"


def extract_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Return up to *limit* keywords ranked by frequency (first occurrence breaks ties).

    camelCase and snake_case identifiers are split into their parts; stop
    words, pure numbers and words shorter than 3 or longer than 30 characters
    are dropped.
    """
    normalised = _CAMEL_RE.sub(r"\1 \2", text).lower().replace("_", " ")
    words = [
        w
        for w in _NON_WORD_RE.sub(" ", normalised).split()
        if 3 <= len(w) <= 30 and w not in _STOP_WORDS and not _DIGITS_RE.match(w)
    ]
    return [word for word, _ in Counter(words).most_common(limit)]


class TextChunker(BaseChunker):
    """Split arbitrary text into content-typed chunks sized to a token target."""

    def chunk_text(
        self,
        text: str,
        source_id: str,
        source_type: ChunkSourceType,
        config: ChunkingConfig | None = None,
    ) -> list[ChunkInput]:
        if not text.strip():
            return []

        cfg = config or self.config
        max_chars = cfg.max_tokens * CHARS_PER_TOKEN
        overlap_chars = cfg.overlap_tokens * CHARS_PER_TOKEN
        content_type = detect_content_type(text)

        if cfg.respect_boundaries:
            segments = self._pack_units(
                self._split_units(text, content_type), max_chars, overlap_chars
            )
        else:
            segments = self._split_fixed_window(text, max_chars, overlap_chars)

        return [
            ChunkInput(
                source_id=source_id,
                source_type=source_type,
                content=segment,
                content_type=content_type,
                chunk_index=i,
                token_count=estimate_tokens(segment),
                keywords=extract_keywords(segment),
            )
            for i, segment in enumerate(segments)
        ]

    @staticmethod
    def _split_units(text: str, content_type: ChunkContentType) -> list[str]:
        if content_type == "code":
            parts = _CODE_BOUNDARY_RE.split(text)
        else:
            parts = _PARAGRAPH_RE.split(text)
        return [p.strip() for p in parts if p.strip()]

    def _pack_units(self, units: list[str], max_chars: int, overlap_chars: int) -> list[str]:
        segments: list[str] = []
        buffer = ""

        for unit in units:
            if len(unit) > max_chars:
                # Oversized unit: flush, then window it on its own.
                if buffer:
                    segments.append(buffer)
                pieces = self._split_fixed_window(unit, max_chars, overlap_chars)
                segments.extend(pieces[:-1])
                buffer = pieces[-1] if pieces else ""
                continue

            if buffer and len(buffer) + len(unit) > max_chars:
                segments.append(buffer)
                carry = buffer[-overlap_chars:].strip() if overlap_chars > 0 else ""
                buffer = f"{carry}\n\n{unit}" if carry else unit
            else:
                buffer = f"{buffer}\n\n{unit}" if buffer else unit

        if buffer.strip():
            segments.append(buffer.strip())
        return segments
