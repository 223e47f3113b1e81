"""
Per-request user context: validated affinities plus taste vectors.

Fetching is done by the orchestrator; everything here is a pure
transformation of what was fetched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

import numpy as np

from .candidates import AttributeKey, normalize_attribute_key, normalize_attribute_keys
from .config import (
    BEHAVIOR_TEXT_MAX_GENRES,
    BEHAVIOR_VECTOR_WEIGHT,
    EMBEDDING_DIM,
    PREFERENCE_VECTOR_WEIGHT,
    RATING_SCALE_MAX,
)
from .embeddings import as_vector, genre_label, unit_vector
from .exceptions import InvalidRequest
from .utils import clamp, clamp01, to_finite_float

logger = logging.getLogger(__name__)

CERTAINTY_LOW = "low"
CERTAINTY_HIGH = "high"


@dataclass(frozen=True, eq=False)
class UserContext:
    """Snapshot of one user's signals for a single request. Never persisted."""
    user_id: str
    query: str | None = None
    mood: str | None = None
    genres: tuple[AttributeKey, ...] = ()
    preference_vector: np.ndarray = field(default_factory=lambda: np.zeros(EMBEDDING_DIM))
    behavior_vector: np.ndarray = field(default_factory=lambda: np.zeros(EMBEDDING_DIM))
    combined_vector: np.ndarray = field(default_factory=lambda: np.zeros(EMBEDDING_DIM))
    affinities: dict[AttributeKey, float] = field(default_factory=dict)
    accepted_rating: float | None = None
    seen_ids: frozenset[str] = frozenset()
    certainty: str = CERTAINTY_LOW

    @property
    def has_preference_vector(self) -> bool:
        return bool(np.any(self.preference_vector))

    @property
    def has_behavior_vector(self) -> bool:
        return bool(np.any(self.behavior_vector))

    @property
    def has_context_vector(self) -> bool:
        return bool(np.any(self.combined_vector))

    @property
    def is_cold_start(self) -> bool:
        return self.certainty == CERTAINTY_LOW

    def top_affinity_genres(self, n: int) -> tuple[AttributeKey, ...]:
        """Strongest positive affinities, strongest first (ties by key text)."""
        ranked = sorted(
            ((k, v) for k, v in self.affinities.items() if v > 0),
            key=lambda item: (-item[1], str(item[0])),
        )
        return tuple(k for k, _ in ranked[:n])


def validate_user_id(user_id: Any) -> str:
    """The one fatal precondition: a non-empty user identifier."""
    if not isinstance(user_id, str) or not user_id.strip():
        raise InvalidRequest("user_id is required")
    return user_id.strip()


def coerce_affinities(raw: Mapping[Any, Any] | Iterable[Any] | None) -> dict[AttributeKey, float]:
    """
    Validate a memory-store payload into {attribute key: strength in [0,1]}.

    Accepts a mapping or an iterable of (key, strength) pairs / row dicts with
    `memory_key` and `preference_strength`. Malformed entries are dropped;
    strengths are clipped. When a key repeats, the strongest value wins.
    """
    if not raw:
        return {}

    if isinstance(raw, Mapping):
        items = list(raw.items())
    elif isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        logger.warning(f"Ignoring affinity payload of type {type(raw).__name__}")
        return {}
    else:
        items = []
        for entry in raw:
            if isinstance(entry, Mapping):
                items.append((entry.get("memory_key"), entry.get("preference_strength")))
            elif isinstance(entry, (tuple, list)) and len(entry) == 2:
                items.append((entry[0], entry[1]))
            else:
                logger.debug(f"Dropping malformed affinity entry {entry!r}")

    affinities: dict[AttributeKey, float] = {}
    for key, value in items:
        norm_key = normalize_attribute_key(key)
        strength = to_finite_float(value)
        if norm_key is None or strength is None:
            logger.debug(f"Dropping malformed affinity {key!r}={value!r}")
            continue
        strength = clamp01(strength)
        affinities[norm_key] = max(strength, affinities.get(norm_key, 0.0))
    return affinities


def coerce_accepted_rating(value: Any) -> float | None:
    rating = to_finite_float(value)
    if rating is None:
        return None
    return clamp(rating, 0.0, RATING_SCALE_MAX)


def clean_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = " ".join(value.split())
    return cleaned or None


def declared_taste_text(
    query: str | None,
    mood: str | None,
    genres: Iterable[AttributeKey] = (),
) -> str | None:
    """Text describing what the user asked for in this request."""
    parts = []
    if query:
        parts.append(f"User query: {query}")
    if mood:
        parts.append(f"Mood: {mood}")
    genres = list(genres)
    if genres:
        parts.append(f"Preferred genres: {', '.join(genre_label(g) for g in genres)}")
    return ". ".join(parts) if parts else None


def behavior_text(affinities: Mapping[AttributeKey, float]) -> str | None:
    """Text describing learned taste, strongest affinities first."""
    ranked = sorted(
        ((k, v) for k, v in affinities.items() if v > 0),
        key=lambda item: (-item[1], str(item[0])),
    )[:BEHAVIOR_TEXT_MAX_GENRES]
    if not ranked:
        return None
    return "Enjoys " + ", ".join(genre_label(k) for k, _ in ranked)


def combine_vectors(preference: np.ndarray | None, behavior: np.ndarray | None) -> np.ndarray | None:
    """Weighted, normalized blend of whichever vectors are present."""
    present = []
    if preference is not None:
        present.append((PREFERENCE_VECTOR_WEIGHT, unit_vector(preference)))
    if behavior is not None:
        if present and behavior.shape != present[0][1].shape:
            logger.warning(
                f"Behavior vector dim {behavior.shape} != preference dim {present[0][1].shape}; "
                f"using preference only"
            )
        else:
            present.append((BEHAVIOR_VECTOR_WEIGHT, unit_vector(behavior)))
    if not present:
        return None
    blended = sum(weight * vec for weight, vec in present)
    return unit_vector(blended)


def coerce_movie_ids(value: Any) -> frozenset[str]:
    if value is None or isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Iterable):
        if value:
            logger.warning(f"Ignoring malformed seen-movie payload: {type(value).__name__}")
        return frozenset()
    return frozenset(str(v).strip() for v in value if v is not None and str(v).strip())


def assemble_user_context(
    user_id: str,
    query: str | None = None,
    mood: str | None = None,
    genres: Iterable[Any] = (),
    affinities: Mapping[Any, Any] | None = None,
    accepted_rating: Any = None,
    preference_vector: Any = None,
    behavior_vector: Any = None,
    seen_ids: Any = (),
) -> UserContext:
    """
    Build a UserContext from already-fetched inputs.

    Missing vectors become zero-filled vectors of the same dimension as any
    vector that is present (EMBEDDING_DIM otherwise). Certainty is "high"
    only when real personalization data exists.
    `seen_ids` are movies to keep out of the candidate set.
    """
    user_id = validate_user_id(user_id)
    affinity_map = coerce_affinities(affinities)
    rating = coerce_accepted_rating(accepted_rating)

    pref = as_vector(preference_vector)
    behavior = as_vector(behavior_vector)
    combined = combine_vectors(pref, behavior)

    dim = combined.size if combined is not None else EMBEDDING_DIM
    zeros = np.zeros(dim)

    has_data = bool(affinity_map) or rating is not None or pref is not None
    certainty = CERTAINTY_HIGH if has_data else CERTAINTY_LOW

    return UserContext(
        user_id=user_id,
        query=clean_text(query),
        mood=clean_text(mood),
        genres=normalize_attribute_keys(genres),
        preference_vector=pref if pref is not None and pref.size == dim else zeros,
        behavior_vector=behavior if behavior is not None and behavior.size == dim else zeros,
        combined_vector=combined if combined is not None else zeros,
        affinities=affinity_map,
        accepted_rating=rating,
        seen_ids=coerce_movie_ids(seen_ids),
        certainty=certainty,
    )
