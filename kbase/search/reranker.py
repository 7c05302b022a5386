# @TEST tests/test_reranker.py

"""Lexical re-ranking and context-window assembly for question answering.

The re-ranker takes vector candidates ``(note, similarity)`` and blends
three signals into one score:

* vector similarity (as retrieved),
* text relevance of the note to the query (phrase, keyword, trigram and
  synonym overlap),
* recency of the note.

The top notes are then packed into a token-bounded context string for
the answer model.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from kbase.search.query_preprocessor import SYNONYMS, extract_keywords
from kbase.search.schemas import NoteItem

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 5
DEFAULT_TOKEN_BUDGET = 2000
# Tokens left in the budget below which a truncated tail is not worth adding
MIN_TAIL_TOKENS = 50
# Per-note formatting overhead ("- " prefix, newline)
LINE_OVERHEAD_TOKENS = 5
# Tokens reserved for the trailing "..." on a truncated note
ELLIPSIS_TOKENS = 10

TRIGRAM_SIZE = 3

# (max age in hours, boost), first match wins
RECENCY_STEPS: tuple[tuple[int, float], ...] = (
    (24, 1.0),
    (168, 0.5),
    (720, 0.2),
)


@dataclass
class RankedNote:
    """A candidate with its component scores."""

    note: NoteItem
    final_score: float
    vector_score: float
    text_score: float
    recency_score: float


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def trigram_similarity(text1: str, text2: str, n: int = TRIGRAM_SIZE) -> float:
    """Jaccard similarity of the character n-gram sets of two strings.

    Returns 0.0 when either string is shorter than *n*.
    """
    if len(text1) < n or len(text2) < n:
        return 0.0

    grams1 = {text1[i : i + n] for i in range(len(text1) - n + 1)}
    grams2 = {text2[i : i + n] for i in range(len(text2) - n + 1)}
    union = grams1 | grams2
    if not union:
        return 0.0
    return len(grams1 & grams2) / len(union)


def synonym_score(content: str, keywords: frozenset[str]) -> float:
    """Fraction of *keywords* with at least one synonym present in *content*."""
    if not keywords:
        return 0.0
    matched = sum(
        1
        for keyword in keywords
        if any(synonym in content for synonym in SYNONYMS.get(keyword, ()))
    )
    return matched / len(keywords)


def text_relevance(content: str, query: str, keywords: frozenset[str] | None = None) -> float:
    """Relevance of note *content* to *query*, in [0, 1].

    1.0 when the whole query occurs in the content; otherwise the larger of
    ``0.5*keyword + 0.3*trigram + 0.2*synonym`` and the plain keyword overlap.
    """
    content_lower = content.lower()
    query_lower = query.lower()

    if query_lower in content_lower:
        return 1.0

    if keywords is None:
        keywords = extract_keywords(query)

    if keywords:
        keyword_score = sum(1 for kw in keywords if kw in content_lower) / len(keywords)
    else:
        keyword_score = 0.0

    blended = (
        keyword_score * 0.5
        + trigram_similarity(content_lower, query_lower) * 0.3
        + synonym_score(content_lower, keywords) * 0.2
    )
    return max(blended, keyword_score, 0.0)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def recency_boost(created_at: str | None, now: datetime) -> float:
    """Step-decaying boost by note age in whole hours; 0.0 if unparseable."""
    created = _parse_timestamp(created_at)
    if created is None:
        return 0.0

    hours = int((now - created).total_seconds() / 3600)
    for max_hours, boost in RECENCY_STEPS:
        if hours <= max_hours:
            return boost
    return 0.0


def rerank_weights(vector_score: float, text_score: float) -> tuple[float, float, float]:
    """Return ``(vector, text, recency)`` weights for one candidate."""
    if vector_score > 0.8:
        return 0.7, 0.2, 0.1
    if text_score > 0.8:
        return 0.3, 0.6, 0.1
    return 0.5, 0.35, 0.15


# ---------------------------------------------------------------------------
# Token budgeting
# ---------------------------------------------------------------------------


def _chars_per_token(text: str) -> float:
    # Cyrillic and other non-ASCII text packs fewer characters per token
    return 2.5 if any(ord(ch) > 127 for ch in text) else 4.0


def estimate_tokens(text: str) -> int:
    """Rough token count: ``len / 2.5`` for non-ASCII text, ``len / 4`` otherwise."""
    return int(len(text) / _chars_per_token(text))


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    """Cut *text* to about *max_tokens* tokens.

    Cuts at the last space when it lies past 80% of the cut point,
    otherwise at the character limit.
    """
    max_chars = int(max_tokens * _chars_per_token(text))
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    last_space = truncated.rfind(" ")
    if last_space > max_chars * 0.8:
        return truncated[:last_space]
    return truncated


# ---------------------------------------------------------------------------
# Re-ranker
# ---------------------------------------------------------------------------


class LexicalReranker:
    """Re-rank vector candidates with text relevance and recency.

    Args:
        now: Returns the current time (timezone-aware); injectable for tests.
        min_tail_tokens: Minimum remaining budget for a truncated tail note.
    """

    def __init__(
        self,
        now: Callable[[], datetime] | None = None,
        min_tail_tokens: int = MIN_TAIL_TOKENS,
    ) -> None:
        self._now = now or (lambda: datetime.now(UTC))
        self._min_tail_tokens = min_tail_tokens

    def score_candidates(
        self,
        candidates: list[tuple[NoteItem, float]],
        query: str,
    ) -> list[RankedNote]:
        """Score every candidate and return them best first."""
        keywords = extract_keywords(query)
        now = self._now()

        ranked: list[RankedNote] = []
        for note, vector_score in candidates:
            text_score = text_relevance(note.content, query, keywords)
            recency = recency_boost(note.created_at, now)
            vector_weight, text_weight, recency_weight = rerank_weights(vector_score, text_score)
            ranked.append(
                RankedNote(
                    note=note,
                    final_score=vector_weight * vector_score + text_weight * text_score + recency_weight * recency,
                    vector_score=vector_score,
                    text_score=text_score,
                    recency_score=recency,
                )
            )

        ranked.sort(key=lambda r: r.final_score, reverse=True)
        return ranked

    def rerank(
        self,
        candidates: list[tuple[NoteItem, float]],
        query: str,
        top_n: int = DEFAULT_TOP_N,
    ) -> list[NoteItem]:
        """Return the *top_n* best notes; scores are only logged."""
        top = self.score_candidates(candidates, query)[:top_n]
        self._log_ranking(top)
        return [r.note for r in top]

    def build_context(
        self,
        notes: list[NoteItem],
        question: str,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
    ) -> str:
        """Pack notes into ``- content`` lines within *token_budget*.

        Notes are ordered by text relevance to *question*. The first note
        that does not fit is added truncated (with ``...``) when enough
        budget remains, and assembly stops there.
        """
        if not notes:
            return ""

        keywords = extract_keywords(question)
        ordered = sorted(
            notes,
            key=lambda n: text_relevance(n.content, question, keywords),
            reverse=True,
        )

        lines: list[str] = []
        used = 0
        for note in ordered:
            note_tokens = estimate_tokens(note.content)
            if used + note_tokens > token_budget:
                remaining = token_budget - used
                if remaining >= self._min_tail_tokens:
                    truncated = truncate_to_tokens(note.content, remaining - ELLIPSIS_TOKENS)
                    lines.append(f"- {truncated}...")
                break

            lines.append(f"- {note.content}")
            used += note_tokens + LINE_OVERHEAD_TOKENS

        return "\n".join(lines).strip()

    def rerank_and_answer_context(
        self,
        candidates: list[tuple[NoteItem, float]],
        query: str,
        token_budget: int = DEFAULT_TOKEN_BUDGET,
        top_n: int = DEFAULT_TOP_N,
    ) -> str:
        """Re-rank *candidates* and build the answer context from the top notes."""
        return self.build_context(self.rerank(candidates, query, top_n=top_n), query, token_budget)

    def _log_ranking(self, results: list[RankedNote]) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        for position, r in enumerate(results, start=1):
            logger.debug(
                "Rerank #%d score=%.3f vector=%.3f text=%.3f recency=%.3f content=%r",
                position,
                r.final_score,
                r.vector_score,
                r.text_score,
                r.recency_score,
                r.note.content[:60],
            )
