"""Query complexity classification and per-class retrieval ceilings.

Rules are checked in priority order; the first family that matches wins:
  architecture   -> design / trade-off / comparison / refactoring questions
  code_reference -> "where is", "show me", file extensions, code nouns
  complex        -> more than one question mark, or more than 20 words
  simple         -> everything else
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

QueryComplexity = Literal["simple", "code_reference", "complex", "architecture"]

_ARCHITECTURE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"how (should|do) (i|we) (design|architect|structure|organize)"),
    re.compile(r"best (practice|approach|pattern|way) (for|to)"),
    re.compile(r"trade.?offs?"),
    re.compile(r"comparison|compare|versus|vs\.?"),
    re.compile(r"refactor|redesign|restructure"),
)

_CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"where (is|are|does|do)"),
    re.compile(r"find (the|all|every)"),
    re.compile(r"show (me|the)"),
    re.compile(r"how (does|do|is)"),
    re.compile(r"what (is|are|does|do)"),
    re.compile(r"\.(cs|ts|js|py|java)\b"),
    re.compile(r"function|class|method|interface|type|variable"),
)

_LONG_QUERY_WORDS = 20


@dataclass(frozen=True)
class RetrievalLimits:
    """Count ceilings for one complexity class."""

    rag_chunks: int
    kb_chunks: int
    recent_messages: int


RETRIEVAL_LIMITS: dict[str, RetrievalLimits] = {
    "simple": RetrievalLimits(rag_chunks=2, kb_chunks=1, recent_messages=3),
    "code_reference": RetrievalLimits(rag_chunks=5, kb_chunks=2, recent_messages=5),
    "complex": RetrievalLimits(rag_chunks=8, kb_chunks=3, recent_messages=8),
    "architecture": RetrievalLimits(rag_chunks=10, kb_chunks=5, recent_messages=10),
}


def classify_query(query: str) -> QueryComplexity:
    """Return the complexity class of *query*."""
    lowered = query.lower()

    if any(p.search(lowered) for p in _ARCHITECTURE_PATTERNS):
        return "architecture"
    if any(p.search(lowered) for p in _CODE_PATTERNS):
        return "code_reference"
    if query.count("?") > 1 or len(query.split()) > _LONG_QUERY_WORDS:
        return "complex"
    return "simple"


def retrieval_limits(complexity: str) -> RetrievalLimits:
    """Return the ceilings for *complexity* (unknown classes get the simple ones)."""
    return RETRIEVAL_LIMITS.get(complexity, RETRIEVAL_LIMITS["simple"])
