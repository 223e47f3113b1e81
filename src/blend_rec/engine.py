"""
Blending orchestrator.

Sequences context building, candidate fetching, semantic matching,
affinity boosting, diversity ranking and explanation for one request, and
merges composite strategies. Collaborator failures degrade the result and
are reported in `metadata.errors`; only an invalid user id or a total lack
of candidates propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from .candidates import (
    CandidateFilter,
    CandidateMovie,
    candidate_fetch_size,
    dedupe_candidates,
    movie_from_row,
    normalize_attribute_keys,
)
from .collaborators import Collaborators, Outcome, attempt
from .config import (
    BEHAVIORAL_TOP_GENRES,
    COMPOSITE_STRATEGIES,
    DEFAULT_DIVERSITY_FACTOR,
    DEFAULT_INTERACTION_CONFIDENCE,
    DEFAULT_LIMIT,
    DEFAULT_STRATEGY,
    INSIGHT_REASON_COUNT,
    INTERACTION_CONFIDENCE,
    MAX_BOOST,
    MAX_LIMIT,
    STRATEGIES,
    STRATEGY_BEHAVIORAL,
    STRATEGY_HYPER,
    STRATEGY_SMART,
)
from .context import (
    UserContext,
    assemble_user_context,
    behavior_text,
    clean_text,
    coerce_affinities,
    declared_taste_text,
    validate_user_id,
)
from .diversity import diversify, diversity_score
from .embeddings import as_vector
from .exceptions import NoCandidatesError
from .explain import apply_explanation, explain
from .scoring import (
    CATEGORY_GENERAL,
    CATEGORY_MEMORY,
    CATEGORY_SEMANTIC,
    ScoredCandidate,
    score_candidates,
)
from .utils import clamp, clamp01, to_finite_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecommendationRequest:
    user_id: str
    strategy: str = DEFAULT_STRATEGY
    limit: int = DEFAULT_LIMIT
    query: str | None = None
    mood: str | None = None
    genres: Sequence[Any] | None = None
    diversity_factor: float = DEFAULT_DIVERSITY_FACTOR
    exclude_seen: bool = True

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecommendationRequest":
        """Accept snake_case or camelCase keys (userId, diversityFactor)."""
        def pick(*keys, default=None):
            for key in keys:
                if key in payload and payload[key] is not None:
                    return payload[key]
            return default

        return cls(
            user_id=pick("user_id", "userId", default=""),
            strategy=pick("strategy", "algorithm", default=DEFAULT_STRATEGY),
            limit=pick("limit", default=DEFAULT_LIMIT),
            query=pick("query"),
            mood=pick("mood"),
            genres=pick("genres"),
            diversity_factor=pick("diversity_factor", "diversityFactor", default=DEFAULT_DIVERSITY_FACTOR),
            exclude_seen=pick("exclude_seen", "excludeWatched", default=True),
        )


def normalize_strategy(strategy: Any) -> str:
    name = strategy.strip().lower() if isinstance(strategy, str) else ""
    if name in STRATEGIES:
        return name
    logger.warning(f"Unknown strategy {strategy!r}, falling back to {DEFAULT_STRATEGY}")
    return DEFAULT_STRATEGY


def normalize_limit(limit: Any) -> int:
    if isinstance(limit, bool):
        return DEFAULT_LIMIT
    number = to_finite_float(limit)
    if number is None or number < 1:
        return DEFAULT_LIMIT
    return min(int(number), MAX_LIMIT)


def normalize_diversity(value: Any) -> float:
    number = to_finite_float(value)
    if number is None:
        return DEFAULT_DIVERSITY_FACTOR
    return clamp01(number)


def normalize_request(request: RecommendationRequest) -> RecommendationRequest:
    """Validate the user id and coerce every optional field into range."""
    return replace(
        request,
        user_id=validate_user_id(request.user_id),
        strategy=normalize_strategy(request.strategy),
        limit=normalize_limit(request.limit),
        query=clean_text(request.query),
        mood=clean_text(request.mood),
        genres=normalize_attribute_keys(request.genres),
        diversity_factor=normalize_diversity(request.diversity_factor),
        exclude_seen=bool(request.exclude_seen),
    )


@dataclass(frozen=True)
class StrategyProfile:
    """How one base strategy picks its context vector and candidates."""
    name: str
    vector: str            # "preference", "behavior" or "combined"
    candidate_mode: str    # "request", "affinity" or "browse"


STRATEGY_PROFILES = {
    STRATEGY_SMART: StrategyProfile(STRATEGY_SMART, vector="preference", candidate_mode="request"),
    STRATEGY_BEHAVIORAL: StrategyProfile(STRATEGY_BEHAVIORAL, vector="behavior", candidate_mode="affinity"),
    STRATEGY_HYPER: StrategyProfile(STRATEGY_HYPER, vector="combined", candidate_mode="browse"),
}


@dataclass
class StrategyRun:
    name: str
    scored: list[ScoredCandidate] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    fatal: str | None = None


@dataclass(frozen=True)
class ResultInsights:
    primary_reasons: list[str]
    semantic_matches: int
    memory_influences: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary_reasons": list(self.primary_reasons),
            "semantic_matches": self.semantic_matches,
            "memory_influences": self.memory_influences,
        }


def summarize_insights(movies: Sequence[ScoredCandidate]) -> ResultInsights:
    """Headline reasons of the top picks and how many results each signal shaped."""
    reasons = [m.reason for m in movies[:INSIGHT_REASON_COUNT] if m.reason]
    return ResultInsights(
        primary_reasons=reasons,
        semantic_matches=sum(1 for m in movies if CATEGORY_SEMANTIC in m.categories),
        memory_influences=sum(1 for m in movies if CATEGORY_MEMORY in m.categories),
    )


@dataclass
class ResultMetadata:
    source: str
    requested_strategy: str
    confidence: float
    diversity_score: float
    certainty: str
    strategies: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    insights: ResultInsights | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "source": self.source,
            "requested_strategy": self.requested_strategy,
            "confidence": self.confidence,
            "diversity_score": self.diversity_score,
            "certainty": self.certainty,
            "strategies": list(self.strategies),
        }
        if self.insights is not None:
            payload["insights"] = self.insights.to_dict()
        if self.errors:
            payload["errors"] = dict(self.errors)
        return payload


@dataclass
class RecommendationResult:
    movies: list[ScoredCandidate]
    metadata: ResultMetadata

    def to_dict(self) -> dict[str, Any]:
        return {
            "movies": [m.to_dict() for m in self.movies],
            "metadata": self.metadata.to_dict(),
        }


def merge_strategy_results(
    runs: Sequence[tuple[str, Sequence[ScoredCandidate]]],
    weights: Mapping[str, float],
) -> list[ScoredCandidate]:
    """
    Union scored candidates from several strategies by movie id.

    Movie metadata comes from the first occurrence (in run order). Similarity,
    boost and confidence become weight-normalized averages over the strategies
    that surfaced the movie; categories and matched genres are unioned.
    """
    first_seen: dict[str, ScoredCandidate] = {}
    contributions: dict[str, list[tuple[float, str, ScoredCandidate]]] = {}

    for name, scored in runs:
        weight = max(0.0, weights.get(name, 0.0))
        for cand in scored:
            first_seen.setdefault(cand.id, cand)
            contributions.setdefault(cand.id, []).append((weight, name, cand))

    merged = []
    for movie_id, first in first_seen.items():
        parts = contributions[movie_id]
        total = sum(w for w, _, _ in parts)
        if total <= 0:
            parts = [(1.0, name, cand) for _, name, cand in parts]
            total = float(len(parts))

        def _avg(attr: str) -> float:
            return sum(w * getattr(c, attr) for w, _, c in parts) / total

        categories = list(dict.fromkeys(cat for _, _, c in parts for cat in c.categories))
        if len(categories) > 1 and CATEGORY_GENERAL in categories:
            categories.remove(CATEGORY_GENERAL)

        merged.append(ScoredCandidate(
            movie=first.movie,
            similarity=clamp01(_avg("similarity")),
            boost=clamp(_avg("boost"), 0.0, MAX_BOOST),
            confidence=clamp01(_avg("confidence")),
            categories=categories,
            matched_genres=tuple(dict.fromkeys(g for _, _, c in parts for g in c.matched_genres)),
            strategies=tuple(dict.fromkeys(name for _, name, _ in parts)),
        ))
    return merged


def _as_movie(item: Any) -> CandidateMovie | None:
    if isinstance(item, CandidateMovie):
        return item
    if isinstance(item, Mapping):
        return movie_from_row(dict(item))
    return None


def _error_text(outcome: Outcome) -> str:
    return str(outcome.error.cause) if outcome.error else ""


class RecommendationEngine:
    """
    Recommendation scoring and blending engine.

    Construct once with its collaborators and pass it to request handlers.
    Holds no per-request state.
    """

    def __init__(self, collaborators: Collaborators):
        self.collaborators = collaborators

    async def generate_recommendations(
        self,
        request: RecommendationRequest | Mapping[str, Any],
    ) -> RecommendationResult:
        if not isinstance(request, RecommendationRequest):
            request = RecommendationRequest.from_dict(request)
        requested_strategy = request.strategy if isinstance(request.strategy, str) else str(request.strategy)
        req = normalize_request(request)

        errors: dict[str, str] = {}
        context = await self.build_context(req, errors)

        components = COMPOSITE_STRATEGIES.get(req.strategy, {req.strategy: 1.0})
        runs = await asyncio.gather(*(
            self._run_strategy(STRATEGY_PROFILES[name], req, context) for name in components
        ))

        productive = [run for run in runs if run.scored]
        if not productive:
            causes = "; ".join(f"{run.name}: {run.fatal}" for run in runs)
            raise NoCandidatesError(f"No candidates for user {req.user_id} ({causes})")

        for run in runs:
            if run.fatal:
                errors[f"candidates:{run.name}"] = run.fatal
            for component, message in run.errors.items():
                errors.setdefault(component, message)

        if len(components) > 1:
            pool = merge_strategy_results([(r.name, r.scored) for r in productive], components)
        else:
            pool = productive[0].scored

        ranked = diversify(pool, req.diversity_factor, req.limit)
        movies = ranked[:req.limit]
        self._explain_all(movies, context, errors)

        confidence = sum(m.confidence for m in movies) / len(movies) if movies else 0.0
        metadata = ResultMetadata(
            source=req.strategy,
            requested_strategy=requested_strategy,
            confidence=round(confidence, 3),
            diversity_score=diversity_score(movies),
            certainty=context.certainty,
            strategies=[run.name for run in productive],
            errors=errors,
            insights=summarize_insights(movies),
        )
        degraded = f", degraded: {sorted(errors)}" if errors else ""
        logger.info(
            f"Recommended {len(movies)}/{len(pool)} movies for {req.user_id} via {req.strategy} "
            f"(confidence {metadata.confidence:.3f}, diversity {metadata.diversity_score:.2f}{degraded})"
        )
        return RecommendationResult(movies=movies, metadata=metadata)

    async def build_context(self, req: RecommendationRequest, errors: dict[str, str]) -> UserContext:
        """Fetch the user's stored signals and embed their taste; failures degrade to defaults."""
        store = self.collaborators.affinities
        calls = {"affinities": store.fetch_user_affinities}
        optional = {"accepted_rating": "fetch_accepted_rating"}
        if req.exclude_seen:
            optional["interactions"] = "fetch_interacted_ids"
        for component, method in optional.items():
            fetch = getattr(store, method, None)
            if fetch is not None:
                calls[component] = fetch
        names = list(calls)
        results = await asyncio.gather(*(attempt(name, calls[name](req.user_id)) for name in names))
        outcomes = dict(zip(names, results))
        for component, outcome in outcomes.items():
            if not outcome.ok:
                errors[component] = _error_text(outcome)

        affinity_outcome = outcomes["affinities"]
        rating_outcome = outcomes.get("accepted_rating", Outcome())
        seen_outcome = outcomes.get("interactions", Outcome())

        affinities = coerce_affinities(affinity_outcome.value_or({}))
        pref_outcome, behavior_outcome = await asyncio.gather(
            self._embed(declared_taste_text(req.query, req.mood, req.genres)),
            self._embed(behavior_text(affinities)),
        )
        embed_failures = [o for o in (pref_outcome, behavior_outcome) if not o.ok]
        if embed_failures:
            errors["context_embedding"] = _error_text(embed_failures[0])

        return assemble_user_context(
            req.user_id,
            query=req.query,
            mood=req.mood,
            genres=req.genres or (),
            affinities=affinities,
            accepted_rating=rating_outcome.value,
            preference_vector=pref_outcome.value,
            behavior_vector=behavior_outcome.value,
            seen_ids=seen_outcome.value_or(()),
        )

    async def _embed(self, text: str | None) -> Outcome:
        if not text:
            return Outcome()
        return await attempt("context_embedding", self.collaborators.embeddings.embed_text(text))

    def _candidate_filter(
        self,
        profile: StrategyProfile,
        req: RecommendationRequest,
        context: UserContext,
    ) -> CandidateFilter:
        size = candidate_fetch_size(req.limit)
        genres = tuple(req.genres or ())
        seen = context.seen_ids
        if profile.candidate_mode == "request":
            return CandidateFilter(query=req.query, genres=genres, limit=size, exclude_ids=seen)
        if profile.candidate_mode == "affinity":
            return CandidateFilter(
                genres=genres or context.top_affinity_genres(BEHAVIORAL_TOP_GENRES),
                limit=size,
                exclude_ids=seen,
            )
        return CandidateFilter(genres=genres, limit=size, exclude_ids=seen)

    async def _run_strategy(
        self,
        profile: StrategyProfile,
        req: RecommendationRequest,
        context: UserContext,
    ) -> StrategyRun:
        """One base strategy's pipeline: fetch, look up embeddings, score."""
        run = StrategyRun(name=profile.name)
        candidate_filter = self._candidate_filter(profile, req, context)
        outcome = await attempt(
            f"candidates:{profile.name}",
            self.collaborators.candidates.fetch_candidates(candidate_filter),
        )
        if not outcome.ok:
            run.fatal = _error_text(outcome)
            return run

        payload = outcome.value or []
        if isinstance(payload, (str, bytes, Mapping)) or not isinstance(payload, Iterable):
            run.fatal = f"malformed candidate payload: {type(payload).__name__}"
            return run

        candidates = dedupe_candidates(
            movie for movie in (_as_movie(item) for item in payload)
            if movie is not None and movie.id not in candidate_filter.exclude_ids
        )
        if not candidates:
            run.fatal = f"empty result for {candidate_filter.mode} filter"
            return run

        vector = getattr(context, f"{profile.vector}_vector")
        embeddings: list[Any] = [None] * len(candidates)
        if as_vector(vector) is not None:
            lookups = await asyncio.gather(*(
                attempt("embeddings", self.collaborators.embeddings.embedding(movie.id))
                for movie in candidates
            ))
            embeddings = [o.value if o.ok else None for o in lookups]
            failed = [o for o in lookups if not o.ok]
            if failed:
                run.errors["embeddings"] = f"{len(failed)} lookups failed: {_error_text(failed[0])}"

        run.scored = score_candidates(candidates, context, embeddings, vector, profile.name)
        return run

    def _explain_all(
        self,
        movies: list[ScoredCandidate],
        context: UserContext,
        errors: dict[str, str],
    ) -> None:
        failures = 0
        last_error: Exception | None = None
        for scored in movies:
            try:
                apply_explanation(scored, explain(scored, context))
            except Exception as exc:
                failures += 1
                last_error = exc
                logger.warning(f"Explanation failed for {scored.id}: {exc}")
        if failures:
            errors["explanations"] = f"{failures} explanations failed: {last_error}"

    async def record_interaction(
        self,
        user_id: str,
        movie_id: str,
        interaction_type: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        """
        Forward an interaction to the sink; never raises on sink failure.

        The interaction confidence for the type is attached unless the
        caller supplied one.
        """
        user_id = validate_user_id(user_id)
        kind = (interaction_type or "").strip().lower()
        payload = dict(metadata or {})
        payload.setdefault("confidence", INTERACTION_CONFIDENCE.get(kind, DEFAULT_INTERACTION_CONFIDENCE))
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

        outcome = await attempt(
            "interactions",
            self.collaborators.interactions.record_interaction(user_id, str(movie_id), kind, payload),
        )
        if outcome.ok:
            logger.debug(f"Recorded {kind} of {movie_id} for {user_id}")
        return outcome.ok
