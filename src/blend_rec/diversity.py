"""Genre-aware re-ranking of scored candidates."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from typing import Sequence

from .scoring import ScoredCandidate
from .utils import clamp01, to_finite_float

logger = logging.getLogger(__name__)


def genre_cap(diversity_factor: float, window: int) -> int | None:
    """
    Max items per primary genre before further ones are deferred.

    None means no cap (factor 0). The cap shrinks as the factor grows and
    reaches 1 at factor 1, which spreads genres as widely as possible.
    """
    factor = clamp01(to_finite_float(diversity_factor) or 0.0)
    if factor <= 0 or window <= 0:
        return None
    return max(1, math.ceil(window * (1.0 - factor)))


def rank_by_confidence(candidates: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    """Stable confidence-descending order; ties keep input order."""
    order = sorted(range(len(candidates)), key=lambda i: (-candidates[i].confidence, i))
    return [candidates[i] for i in order]


def diversify(
    candidates: Sequence[ScoredCandidate],
    diversity_factor: float,
    window: int,
) -> list[ScoredCandidate]:
    """
    Re-order candidates to bound primary-genre repetition.

    Candidates are first ranked by confidence. Each gets a tier: how many
    earlier candidates shared its primary genre, divided by the genre cap.
    The result is ordered by (tier, rank), so a genre's first `cap` picks
    come before any genre's overflow. Nothing is dropped, and the top
    candidate always stays first.
    """
    ranked = rank_by_confidence(candidates)
    cap = genre_cap(diversity_factor, window)
    if cap is None:
        return ranked

    seen: dict = defaultdict(int)
    tiers = []
    for cand in ranked:
        genre = cand.movie.primary_genre
        tiers.append(seen[genre] // cap)
        seen[genre] += 1

    order = sorted(range(len(ranked)), key=lambda i: (tiers[i], i))
    deferred = sum(1 for t in tiers[:window] if t > 0)
    if deferred:
        logger.debug(f"Diversity cap {cap} deferred {deferred} candidates")
    return [ranked[i] for i in order]


def diversity_score(movies: Sequence[ScoredCandidate]) -> float:
    """Distinct primary genres / result count (0.0 for no results)."""
    if not movies:
        return 0.0
    distinct = {m.movie.primary_genre for m in movies}
    return round(len(distinct) / len(movies), 2)
