"""Context assembler: token budgets, message selection, chunk shaping (4-way split).

Pipeline:
  1. Merge per-call budget overrides into the base ContextBudgetConfig and
     split ``max_total_tokens`` into four sub-budgets (system prompt,
     specialist text, recent messages, retrieved chunks).
  2. Truncate the system prompt and specialist text to their sub-budgets.
  3. Classify the query to get per-class item ceilings.
  4. Select recent messages and retrieve chunks concurrently; both are packed
     greedily into their sub-budgets.
  5. Return an AssembledContext with exact per-class token counts.

``optimize_context()`` shrinks an assembled context to a harder ceiling
(chunks first, then specialist text, then the oldest messages).
"""

from __future__ import annotations

import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields, replace
from typing import Any

import structlog

from recall.db.message_store import MessageStore
from recall.db.models import RetrievalFilters, StoredMessage
from recall.ingest.base import CHARS_PER_TOKEN
from recall.rag.complexity import QueryComplexity, classify_query, retrieval_limits
from recall.rag.embeddings import EmbeddingProvider
from recall.rag.retriever import (
    HybridRetriever,
    HybridSearchResult,
    RetrievalQuery,
    apply_code_boost,
    apply_recency_boost,
    apply_sector_boost,
    cap_per_source,
    deduplicate,
)

logger = structlog.get_logger()

DEFAULT_MAX_TOTAL_TOKENS = 8000
_BOUNDARY_KEEP_RATIO = 0.7
_SPECIALIST_SHRINK = 0.7
_ELLIPSIS = "..."


@dataclass
class ContextBudgetConfig:
    max_total_tokens: int = DEFAULT_MAX_TOTAL_TOKENS
    recent_messages_ratio: float = 0.30
    retrieved_chunks_ratio: float = 0.50
    specialist_kb_ratio: float = 0.15
    system_prompt_ratio: float = 0.05
    min_chunk_relevance_score: float = 0.7
    max_chunks_per_source: int = 3
    deduplication_threshold: float = 0.9
    apply_recency_boost: bool = False
    apply_code_boost: bool = False


@dataclass
class TokenBreakdown:
    recent_messages: int = 0
    retrieved_chunks: int = 0
    specialist_context: int = 0
    system_prompt: int = 0

    @property
    def total(self) -> int:
        return self.recent_messages + self.retrieved_chunks + self.specialist_context + self.system_prompt


@dataclass
class AssembledContext:
    recent_messages: list[StoredMessage] = field(default_factory=list)
    retrieved_chunks: list[HybridSearchResult] = field(default_factory=list)
    specialist_context: str | None = None
    system_prompt: str | None = None
    total_tokens: int = 0
    token_breakdown: TokenBreakdown = field(default_factory=TokenBreakdown)
    complexity: QueryComplexity = "simple"


@dataclass
class ContextAssemblyOptions:
    """Inputs of one ``assemble_context()`` call.

    Attributes:
        query: The user query; drives classification and retrieval.
        session_id: Session whose recent turns are included.
        workspace_path: Adds workspace-wide recent turns when given.
        sector_id: Restricts retrieval to this sector and boosts it.
        specialist_context: Caller-supplied specialist knowledge text.
        system_prompt: Caller-supplied system prompt.
        budget_overrides: ContextBudgetConfig field overrides for this call.
    """

    query: str
    session_id: str
    workspace_path: str | None = None
    sector_id: str | None = None
    specialist_context: str | None = None
    system_prompt: str | None = None
    budget_overrides: dict[str, Any] | None = None


@dataclass(frozen=True)
class SubBudgets:
    max_total_tokens: int
    system_prompt: int
    specialist_context: int
    recent_messages: int
    retrieved_chunks: int


# ------------------------------------------------------------------
# Budget arithmetic
# ------------------------------------------------------------------


def _clean_ratio(value: Any) -> float:
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(ratio) or ratio < 0:
        return 0.0
    return ratio


def _clean_total(value: Any) -> int:
    try:
        total = float(value)
    except (TypeError, ValueError):
        return DEFAULT_MAX_TOTAL_TOKENS
    if math.isnan(total) or math.isinf(total) or total <= 0:
        return DEFAULT_MAX_TOTAL_TOKENS
    return int(total)


def compute_sub_budgets(config: ContextBudgetConfig) -> SubBudgets:
    """Split the total ceiling into four sub-budgets that never sum above it.

    Missing, NaN or negative ratios count as 0 and an unusable total falls back
    to the default. Ratios summing above 1 are scaled down proportionally.
    """
    total = _clean_total(config.max_total_tokens)
    ratios = {
        "system_prompt": _clean_ratio(config.system_prompt_ratio),
        "specialist_context": _clean_ratio(config.specialist_kb_ratio),
        "recent_messages": _clean_ratio(config.recent_messages_ratio),
        "retrieved_chunks": _clean_ratio(config.retrieved_chunks_ratio),
    }
    ratio_sum = sum(ratios.values())
    if ratio_sum > 1:
        logger.warning("budget.ratios_scaled", ratio_sum=round(ratio_sum, 4))
        ratios = {name: r / ratio_sum for name, r in ratios.items()}

    return SubBudgets(
        max_total_tokens=total,
        **{name: math.floor(total * r) for name, r in ratios.items()},
    )


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut *text* so that ``estimate_tokens(result) <= max_tokens``.

    Prefers the last sentence end or newline when that keeps more than 70% of
    the allowance; otherwise hard-cuts and appends an ellipsis.
    """
    if max_tokens <= 0:
        return ""
    target_chars = max_tokens * CHARS_PER_TOKEN
    if len(text) <= target_chars:
        return text

    window = text[:target_chars]
    cut = max(window.rfind("."), window.rfind("\n"))
    if cut > target_chars * _BOUNDARY_KEEP_RATIO:
        return text[: cut + 1]

    return text[: target_chars - len(_ELLIPSIS)] + _ELLIPSIS


# ------------------------------------------------------------------
# Assembler
# ------------------------------------------------------------------


class ContextAssembler:
    """Assemble token-budgeted prompt context from messages and retrieved chunks.

    Stateless per call: every call reads the stores afresh.

    Args:
        message_store: Source of recent conversation.
        retriever:     Hybrid chunk retriever.
        provider:      Used for token estimation.
        config:        Base budget configuration.
        sector_boost:  Score factor for chunks of the active sector.
        code_boost:    Score factor for code chunks on code-reference queries.
        recency_decay_days: Decay constant of the optional recency boost.
    """

    def __init__(
        self,
        message_store: MessageStore,
        retriever: HybridRetriever,
        provider: EmbeddingProvider,
        config: ContextBudgetConfig | None = None,
        *,
        sector_boost: float = 1.2,
        code_boost: float = 1.5,
        recency_decay_days: float = 30.0,
    ) -> None:
        self._messages = message_store
        self._retriever = retriever
        self._provider = provider
        self.config = config or ContextBudgetConfig()
        self.sector_boost = sector_boost
        self.code_boost = code_boost
        self.recency_decay_days = recency_decay_days
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="assembler")

    def estimate_tokens(self, text: str | None) -> int:
        return self._provider.estimate_tokens(text) if text else 0

    def assemble_context(self, options: ContextAssemblyOptions) -> AssembledContext:
        """Build an AssembledContext for *options* within the configured budget."""
        config = _merge_overrides(self.config, options.budget_overrides)
        budgets = compute_sub_budgets(config)
        complexity = classify_query(options.query)
        limits = retrieval_limits(complexity)

        messages_future = self._pool.submit(
            self._select_recent_messages,
            options.session_id,
            options.workspace_path,
            budgets.recent_messages,
            limits.recent_messages,
        )

        system_prompt, system_tokens = self._fit(options.system_prompt, budgets.system_prompt)
        specialist, specialist_tokens = self._fit(
            options.specialist_context, budgets.specialist_context
        )
        chunks = self._retrieve_chunks(
            options.query,
            options.sector_id,
            budgets.retrieved_chunks,
            limits.rag_chunks,
            complexity,
            config,
        )
        messages = messages_future.result()

        breakdown = TokenBreakdown(
            recent_messages=sum(self.estimate_tokens(m.content) for m in messages),
            retrieved_chunks=sum(r.chunk.token_count for r in chunks),
            specialist_context=specialist_tokens,
            system_prompt=system_tokens,
        )
        return AssembledContext(
            recent_messages=messages,
            retrieved_chunks=chunks,
            specialist_context=specialist,
            system_prompt=system_prompt,
            total_tokens=breakdown.total,
            token_breakdown=breakdown,
            complexity=complexity,
        )

    def _fit(self, text: str | None, budget: int) -> tuple[str | None, int]:
        """Truncate *text* to *budget*; empty results become None."""
        if not text:
            return None, 0
        text = self._truncate(text, budget)
        if not text:
            return None, 0
        return text, self.estimate_tokens(text)

    def _truncate(self, text: str, budget: int) -> str:
        """Apply truncate_to_tokens until the provider's own estimate fits *budget*."""
        allowance = budget
        while text and self.estimate_tokens(text) > budget:
            if allowance <= 0:
                return ""
            text = truncate_to_tokens(text, allowance)
            estimate = max(self.estimate_tokens(text), 1)
            allowance = min(allowance - 1, allowance * budget // estimate)
        return text

    def _select_recent_messages(
        self,
        session_id: str,
        workspace_path: str | None,
        budget_tokens: int,
        max_messages: int,
    ) -> list[StoredMessage]:
        """Newest-first greedy pack of session + workspace turns, returned oldest first."""
        candidates = {m.id: m for m in self._messages.get_session_messages(session_id, max_messages * 2)}
        if workspace_path:
            for m in self._messages.get_recent_messages(max_messages, workspace_path):
                candidates.setdefault(m.id, m)

        ordered = sorted(candidates.values(), key=lambda m: (m.timestamp, m.id))
        selected: list[StoredMessage] = []
        used = 0
        for message in reversed(ordered):
            if len(selected) >= max_messages:
                break
            tokens = self.estimate_tokens(message.content)
            if used + tokens <= budget_tokens:
                selected.append(message)
                used += tokens
        selected.reverse()
        return selected

    def _retrieve_chunks(
        self,
        query: str,
        sector_id: str | None,
        budget_tokens: int,
        max_chunks: int,
        complexity: QueryComplexity,
        config: ContextBudgetConfig,
    ) -> list[HybridSearchResult]:
        if max_chunks <= 0 or budget_tokens <= 0:
            return []

        filters = RetrievalFilters(sector_ids=[sector_id]) if sector_id else None
        results = self._retriever.search(
            RetrievalQuery(text=query, limit=max_chunks * 2, filters=filters)
        )

        results = [r for r in results if r.relevance >= config.min_chunk_relevance_score]
        results = deduplicate(results, config.deduplication_threshold)
        results = cap_per_source(results, config.max_chunks_per_source)
        if sector_id:
            results = apply_sector_boost(results, sector_id, self.sector_boost)
        if config.apply_recency_boost:
            results = apply_recency_boost(results, self.recency_decay_days)
        if config.apply_code_boost and complexity == "code_reference":
            results = apply_code_boost(results, self.code_boost)

        selected: list[HybridSearchResult] = []
        used = 0
        for result in results:
            if len(selected) >= max_chunks:
                break
            if used + result.chunk.token_count <= budget_tokens:
                selected.append(result)
                used += result.chunk.token_count
        return selected

    def optimize_context(self, context: AssembledContext, target_tokens: int) -> AssembledContext:
        """Return a copy of *context* shrunk to at most *target_tokens* where possible.

        Order: drop the lowest-ranked chunk one at a time, then shrink the
        specialist text in 30% steps until it is gone, then drop the oldest
        message one at a time. The system prompt is never touched, so the
        result can stay above target when the system prompt alone exceeds it.
        """
        chunks = list(context.retrieved_chunks)
        messages = list(context.recent_messages)
        specialist = context.specialist_context
        breakdown = replace(context.token_breakdown)

        while breakdown.total > target_tokens:
            if chunks:
                removed = chunks.pop()
                breakdown.retrieved_chunks -= removed.chunk.token_count
            elif specialist:
                specialist = self._truncate(
                    specialist, math.floor(breakdown.specialist_context * _SPECIALIST_SHRINK)
                )
                breakdown.specialist_context = self.estimate_tokens(specialist)
                if not specialist:
                    specialist = None
            elif messages:
                removed_message = messages.pop(0)
                breakdown.recent_messages -= self.estimate_tokens(removed_message.content)
            else:
                break

        return replace(
            context,
            recent_messages=messages,
            retrieved_chunks=chunks,
            specialist_context=specialist,
            total_tokens=breakdown.total,
            token_breakdown=breakdown,
        )

    def close(self) -> None:
        self._pool.shutdown(wait=True)


def _merge_overrides(
    base: ContextBudgetConfig, overrides: dict[str, Any] | None
) -> ContextBudgetConfig:
    """Apply known, non-None overrides; unknown keys raise ValueError."""
    if not overrides:
        return base
    known = {f.name for f in fields(ContextBudgetConfig)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown budget override(s): {', '.join(sorted(unknown))}")
    return replace(base, **{k: v for k, v in overrides.items() if v is not None})


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------


def format_as_prompt(context: AssembledContext) -> str:
    """Render *context* as a markdown prompt, sections separated by rules."""
    sections: list[str] = []

    if context.system_prompt:
        sections.append(context.system_prompt)

    if context.specialist_context:
        sections.append("## Specialist Knowledge\n\n" + context.specialist_context)

    if context.retrieved_chunks:
        blocks = []
        for i, result in enumerate(context.retrieved_chunks, start=1):
            meta = result.chunk.metadata
            header = (meta.title if meta is not None else None) or result.chunk.source_id
            blocks.append(f"### {i}. {header}\n\n{result.chunk.content}")
        sections.append("## Relevant Context\n\n" + "\n\n---\n\n".join(blocks))

    if context.recent_messages:
        turns = "\n\n".join(f"**{m.role}:** {m.content}" for m in context.recent_messages)
        sections.append("## Recent Conversation\n\n" + turns)

    return "\n\n---\n\n".join(sections)


def budget_summary(context: AssembledContext, config: ContextBudgetConfig | None = None) -> str:
    """Human-readable token usage report for debugging."""
    max_total = _clean_total((config or ContextBudgetConfig()).max_total_tokens)
    b = context.token_breakdown
    total = context.total_tokens
    denom = total if total > 0 else 1

    def pct(value: int) -> str:
        return f"{value / denom * 100:.1f}%"

    return "\n".join(
        [
            "Token Budget Summary:",
            f"- Max Budget: {max_total}",
            f"- Used: {total} ({total / max_total * 100:.1f}%)",
            f"- Complexity: {context.complexity}",
            "",
            "Breakdown:",
            f"- System Prompt: {b.system_prompt} ({pct(b.system_prompt)})",
            f"- Specialist KB: {b.specialist_context} ({pct(b.specialist_context)})",
            f"- Recent Messages: {b.recent_messages} ({pct(b.recent_messages)})",
            f"- Retrieved Chunks: {b.retrieved_chunks} ({pct(b.retrieved_chunks)})",
            "",
            "Items:",
            f"- Messages: {len(context.recent_messages)}",
            f"- Chunks: {len(context.retrieved_chunks)}",
        ]
    )
