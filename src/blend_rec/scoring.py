"""
Semantic matching and affinity boosting.

Combined confidence for a candidate is `clamp01(similarity + boost)`:
similarity comes from embeddings (or the neutral baseline), boost from the
user's learned genre affinities, bounded by MAX_BOOST.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import numpy as np
from scipy.spatial.distance import cdist

from .candidates import AttributeKey, CandidateMovie
from .config import (
    HIGH_QUALITY_RATING,
    MAX_BOOST,
    NEUTRAL_SIMILARITY,
    SEMANTIC_MATCH_THRESHOLD,
)
from .context import UserContext
from .embeddings import as_vector
from .utils import clamp, clamp01

logger = logging.getLogger(__name__)

CATEGORY_SEMANTIC = "semantic-match"
CATEGORY_GENRE = "genre-match"
CATEGORY_MEMORY = "memory-match"
CATEGORY_MOOD = "mood-match"
CATEGORY_QUALITY = "high-quality"
CATEGORY_EMBEDDING_MISSING = "embedding-missing"
CATEGORY_GENERAL = "general"


@dataclass
class ScoredCandidate:
    """A candidate with its scores and explanation. Request-scoped."""
    movie: CandidateMovie
    similarity: float
    boost: float
    confidence: float
    categories: list[str] = field(default_factory=list)
    matched_genres: tuple[AttributeKey, ...] = ()
    reason: str | None = None
    reasons: list[str] = field(default_factory=list)
    discovery_factor: str | None = None
    strategies: tuple[str, ...] = ()

    @property
    def id(self) -> str:
        return self.movie.id

    def to_dict(self) -> dict[str, Any]:
        payload = self.movie.to_dict()
        payload.update({
            "similarity": round(self.similarity, 4),
            "boost": round(self.boost, 4),
            "confidence": round(self.confidence, 4),
            "categories": list(self.categories),
            "reason": self.reason,
            "reasons": list(self.reasons),
            "discovery_factor": self.discovery_factor,
            "strategies": list(self.strategies),
        })
        return payload


def affinity_boost(
    genre_ids: Sequence[AttributeKey],
    affinities: Mapping[AttributeKey, float],
) -> tuple[float, tuple[AttributeKey, ...]]:
    """
    Additive boost from learned affinities.

    boost = MAX_BOOST * mean(strength of the candidate's genres that appear in
    the affinity map); 0 when none appear. Returns (boost, matched genres).
    """
    matched = tuple(g for g in genre_ids if g in affinities)
    if not matched:
        return 0.0, ()
    strengths = [clamp01(affinities[g]) for g in matched]
    boost = MAX_BOOST * (sum(strengths) / len(strengths))
    return clamp(boost, 0.0, MAX_BOOST), tuple(g for g in matched if affinities[g] > 0)


def combine_confidence(similarity: float, boost: float) -> float:
    return clamp01(clamp01(similarity) + clamp(boost, 0.0, MAX_BOOST))


def semantic_similarities(
    context_vector: np.ndarray | None,
    embeddings: Sequence[Any],
) -> list[tuple[float, bool]]:
    """
    Similarity of each candidate embedding to the context vector, in [0,1].

    Returns (similarity, embedding_missing) per input. Without a context
    vector every candidate gets NEUTRAL_SIMILARITY. A candidate whose
    embedding is absent or doesn't share the context dimension also gets
    the baseline and is flagged missing.
    """
    context = as_vector(context_vector)
    results: list[tuple[float, bool]] = []
    valid_rows: list[int] = []
    vectors: list[np.ndarray] = []

    for i, raw in enumerate(embeddings):
        vec = as_vector(raw, dim=context.size if context is not None else None)
        missing = vec is None
        results.append((NEUTRAL_SIMILARITY, missing))
        if context is not None and not missing:
            valid_rows.append(i)
            vectors.append(vec)

    if context is None or not vectors:
        return results

    cosines = 1.0 - cdist(context.reshape(1, -1), np.vstack(vectors), metric="cosine")[0]
    for row, cosine in zip(valid_rows, cosines):
        results[row] = (clamp01((float(cosine) + 1.0) / 2.0), False)
    return results


def match_categories(
    movie: CandidateMovie,
    context: UserContext,
    similarity: float,
    boost: float,
    used_vector: bool,
    embedding_missing: bool,
) -> list[str]:
    categories = []
    if used_vector and not embedding_missing and similarity > SEMANTIC_MATCH_THRESHOLD:
        categories.append(CATEGORY_SEMANTIC)
    if context.genres and any(g in context.genres for g in movie.genre_ids):
        categories.append(CATEGORY_GENRE)
    if boost > 0:
        categories.append(CATEGORY_MEMORY)
    if context.mood and context.mood.lower() in movie.overview.lower():
        categories.append(CATEGORY_MOOD)
    if movie.rating is not None and movie.rating > HIGH_QUALITY_RATING:
        categories.append(CATEGORY_QUALITY)
    if not categories:
        categories.append(CATEGORY_GENERAL)
    if used_vector and embedding_missing:
        categories.append(CATEGORY_EMBEDDING_MISSING)
    return categories


def score_candidates(
    candidates: Sequence[CandidateMovie],
    context: UserContext,
    embeddings: Sequence[Any],
    context_vector: np.ndarray | None,
    strategy: str,
) -> list[ScoredCandidate]:
    """
    Semantic match + affinity boost for every candidate, in input order.

    `embeddings[i]` belongs to `candidates[i]` (None when unavailable).
    `context_vector` is whichever of the context's vectors the strategy uses;
    a zero vector means "no usable context".
    """
    if len(embeddings) != len(candidates):
        raise ValueError("embeddings must align with candidates")

    used_vector = as_vector(context_vector) is not None
    similarities = semantic_similarities(context_vector if used_vector else None, embeddings)

    scored = []
    for movie, (similarity, missing) in zip(candidates, similarities):
        boost, matched = affinity_boost(movie.genre_ids, context.affinities)
        scored.append(ScoredCandidate(
            movie=movie,
            similarity=similarity,
            boost=boost,
            confidence=combine_confidence(similarity, boost),
            categories=match_categories(movie, context, similarity, boost, used_vector, missing),
            matched_genres=matched,
            strategies=(strategy,),
        ))

    n_missing = sum(1 for _, missing in similarities if missing) if used_vector else 0
    if n_missing:
        logger.debug(f"{n_missing}/{len(candidates)} candidates lack embeddings ({strategy})")
    return scored
