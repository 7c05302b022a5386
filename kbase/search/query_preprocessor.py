"""Query preprocessing for bilingual (Russian/English) notes.

Normalizes queries, detects the script in use, extracts the keyword set
used by the re-ranker and the search terms used by lexical retrieval.
"""

from __future__ import annotations

import re
import unicodedata
from typing import NamedTuple

# Keywords shorter than or equal to this are dropped
MIN_KEYWORD_LENGTH = 2

STOP_WORDS: frozenset[str] = frozenset(
    {
        # Russian
        "что", "как", "где", "когда", "почему", "какой", "какая", "какие",
        "это", "эти", "тот", "та", "те", "в", "на", "с", "у", "к", "по", "для",
        "меня", "мне", "мой", "моя", "мое", "мои",
        # English
        "what", "how", "where", "when", "why", "which", "who",
        "is", "are", "was", "were", "the", "a", "an", "in", "on", "at", "to",
        "my", "me", "i", "you",
    }
)  # fmt: skip

# keyword -> words in note content that count as a synonym hit
SYNONYMS: dict[str, frozenset[str]] = {
    "имя": frozenset({"name", "зовут", "называют"}),
    "name": frozenset({"имя", "зовут", "называют"}),
    "возраст": frozenset({"age", "лет", "года"}),
    "age": frozenset({"возраст", "лет", "года"}),
}

_NON_WORD_RE = re.compile(r"\W+")
_CYRILLIC_RE = re.compile(r"[\u0400-\u04FF]")
_LATIN_RE = re.compile(r"[a-zA-Z]")
_EDGE_PUNCT = ",.!?;:\"'()[]{}"


class QueryAnalysis(NamedTuple):
    """Result of analyzing a search query.

    Attributes:
        original: The original query string.
        normalized: NFC-normalized, trimmed query.
        language: Detected script ("ru", "en", or "mixed").
        keywords: Lowercased content words (stop words removed).
        search_terms: Whitespace tokens for substring matching.
        is_single_term: Whether the query is a single search term.
    """

    original: str
    normalized: str
    language: str
    keywords: frozenset[str]
    search_terms: list[str]
    is_single_term: bool


def normalize_query(query: str) -> str:
    """Lowercase and trim a query; the canonical form used for cache keys."""
    return query.lower().strip()


def _detect_language(text: str) -> str:
    """Return "ru" if only Cyrillic, "en" if only Latin, "mixed" otherwise."""
    has_cyrillic = bool(_CYRILLIC_RE.search(text))
    has_latin = bool(_LATIN_RE.search(text))

    if has_cyrillic and has_latin:
        return "mixed"
    if has_cyrillic:
        return "ru"
    return "en"


def extract_keywords(text: str) -> frozenset[str]:
    """Extract the keyword set of *text*.

    Lowercases, splits on non-word characters and keeps tokens longer
    than two characters that are not stop words.
    """
    return frozenset(
        token
        for token in _NON_WORD_RE.split(text.lower())
        if len(token) > MIN_KEYWORD_LENGTH and token not in STOP_WORDS
    )


def _extract_search_terms(text: str) -> list[str]:
    """Whitespace tokens (edge punctuation stripped, length > 1), deduplicated."""
    seen: set[str] = set()
    terms: list[str] = []
    for token in text.split():
        term = token.strip(_EDGE_PUNCT).lower()
        if len(term) > 1 and term not in seen:
            seen.add(term)
            terms.append(term)
    return terms


def analyze_query(query: str) -> QueryAnalysis:
    """Analyze a search query for language, keywords and search terms.

    For empty queries, returns an analysis with no keywords or terms.
    """
    stripped = query.strip()
    if not stripped:
        return QueryAnalysis(
            original=query,
            normalized="",
            language="en",
            keywords=frozenset(),
            search_terms=[],
            is_single_term=False,
        )

    normalized = unicodedata.normalize("NFC", stripped)
    return QueryAnalysis(
        original=query,
        normalized=normalized,
        language=_detect_language(normalized),
        keywords=extract_keywords(normalized),
        search_terms=_extract_search_terms(normalized),
        is_single_term=len(normalized.split()) == 1,
    )
