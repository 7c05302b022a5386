"""Centralized search parameter management.

All retrieval and ranking constants (candidate caps, similarity floors,
fusion weights, re-ranking shortlist sizes, context budget) live in one
table. Deployments can override individual keys through the
``SEARCH_PARAMS`` setting (a JSON object in the environment).

Usage::

    from kbase.search.params import get_search_params
    params = get_search_params()
    candidates = await vector_engine.search(user_id, vec, limit=params["vector_candidate_limit"])
"""

from __future__ import annotations

from typing import Any

from kbase.config import get_settings

DEFAULT_SEARCH_PARAMS: dict[str, float | int] = {
    # Hybrid fan-out
    "vector_candidate_limit": 100,
    "lexical_candidate_limit": 50,
    "default_result_limit": 20,
    "min_vector_similarity": 0.2,
    # Fusion weights (vector, text) when only defaults apply
    "default_vector_weight": 0.7,
    "default_text_weight": 0.3,
    # Relevance thresholds driving adaptive weighting
    "high_relevance_threshold": 0.8,
    "medium_relevance_threshold": 0.5,
    # Question answering
    "rerank_candidates": 50,
    "rerank_top_n": 5,
    "fallback_results": 10,
    "filter_min_results": 3,
    "expanded_min_similarity": 0.3,
    # Context window assembly
    "context_token_budget": 2000,
    "context_min_tail_tokens": 50,
}


def get_search_params(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
    """Return search parameters, merging configured overrides with defaults.

    Unknown keys in the overrides are ignored.

    Args:
        overrides: Explicit overrides; when None, ``Settings.SEARCH_PARAMS``
            is used.
    """
    saved = overrides if overrides is not None else get_settings().SEARCH_PARAMS
    merged: dict[str, Any] = {**DEFAULT_SEARCH_PARAMS}
    if isinstance(saved, dict):
        for key in DEFAULT_SEARCH_PARAMS:
            if key in saved:
                merged[key] = saved[key]
    return merged
