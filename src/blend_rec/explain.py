"""
Human-readable reasons and discovery classification for recommendations.

Reasons only mention signals that actually fed the score: matched affinity
genres, the request's query/mood/genres, and the movie's own rating.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import (
    ADVENTURE_MIN_SIMILARITY,
    MAX_BOOST,
    MAX_REASONS,
    REASON_SIMILARITY_GREAT,
    REASON_SIMILARITY_PERFECT,
    SAFE_MAX_RATING_GAP,
    SAFE_MIN_BOOST_RATIO,
    SPARSE_AFFINITY_COUNT,
)
from .context import UserContext
from .embeddings import genre_label
from .scoring import (
    CATEGORY_EMBEDDING_MISSING,
    CATEGORY_GENRE,
    CATEGORY_MOOD,
    CATEGORY_QUALITY,
    CATEGORY_SEMANTIC,
    ScoredCandidate,
)

logger = logging.getLogger(__name__)

DISCOVERY_SAFE = "safe"
DISCOVERY_STRETCH = "stretch"
DISCOVERY_ADVENTURE = "adventure"


@dataclass
class Explanation:
    primary_reason: str
    reasons: list[str] = field(default_factory=list)
    discovery_factor: str = DISCOVERY_STRETCH


def classify_discovery(scored: ScoredCandidate, context: UserContext) -> str:
    """
    safe: rating sits close to what the user accepts and affinity is strong.
    adventure: carried by semantic similarity alone, with little history.
    stretch: everything in between.
    """
    rating = scored.movie.rating
    accepted = context.accepted_rating
    strong_affinity = scored.boost >= SAFE_MIN_BOOST_RATIO * MAX_BOOST

    if (
        strong_affinity
        and rating is not None
        and accepted is not None
        and abs(rating - accepted) <= SAFE_MAX_RATING_GAP
    ):
        return DISCOVERY_SAFE

    sparse = len(context.affinities) < SPARSE_AFFINITY_COUNT or accepted is None
    semantic_only = (
        scored.boost == 0
        and scored.similarity >= ADVENTURE_MIN_SIMILARITY
        and CATEGORY_EMBEDDING_MISSING not in scored.categories
    )
    if semantic_only and sparse:
        return DISCOVERY_ADVENTURE

    return DISCOVERY_STRETCH


def _semantic_reason(similarity: float, context: UserContext) -> str:
    if context.query:
        target = f'"{context.query}"'
    elif context.mood:
        target = f"your {context.mood} mood"
    else:
        target = "your taste"

    if similarity > REASON_SIMILARITY_PERFECT:
        return f"Perfect match for {target}"
    if similarity > REASON_SIMILARITY_GREAT:
        return f"Great match for {target}"
    return f"Good match for {target}"


def _join_genres(keys) -> str:
    return ", ".join(genre_label(k) for k in list(keys)[:2])


def explain(scored: ScoredCandidate, context: UserContext) -> Explanation:
    """Build the reason list and discovery factor for one scored candidate."""
    movie = scored.movie
    reasons: list[str] = []

    if scored.matched_genres:
        reasons.append(f"Matches your love of {_join_genres(scored.matched_genres)}")

    if CATEGORY_SEMANTIC in scored.categories:
        reasons.append(_semantic_reason(scored.similarity, context))

    if CATEGORY_GENRE in scored.categories:
        requested = [g for g in movie.genre_ids if g in context.genres]
        reasons.append(f"Matches your {_join_genres(requested)} preferences")

    if CATEGORY_MOOD in scored.categories and context.mood:
        reasons.append(f"Fits your {context.mood} mood")

    if CATEGORY_QUALITY in scored.categories and movie.rating is not None:
        reasons.append(f"Highly rated ({movie.rating:.1f}/10)")

    if not reasons:
        if context.is_cold_start and movie.genre_ids:
            reasons.append(f"Popular {genre_label(movie.primary_genre)} pick to help learn your taste")
        elif context.is_cold_start:
            reasons.append("Popular pick to help learn your taste")
        else:
            reasons.append("Recommended for you")

    reasons = reasons[:MAX_REASONS]
    return Explanation(
        primary_reason=reasons[0],
        reasons=reasons,
        discovery_factor=classify_discovery(scored, context),
    )


def apply_explanation(scored: ScoredCandidate, explanation: Explanation) -> ScoredCandidate:
    scored.reason = explanation.primary_reason
    scored.reasons = list(explanation.reasons)
    scored.discovery_factor = explanation.discovery_factor
    return scored
