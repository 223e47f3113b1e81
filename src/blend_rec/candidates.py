"""
Candidate movies and the filters used to fetch them.

The content store itself lives outside the engine; this module defines the
shape the engine consumes and coerces loosely-typed rows into it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from .config import CANDIDATE_MULTIPLIER, MAX_CANDIDATES, RATING_SCALE_MAX, UNKNOWN_GENRE
from .utils import clamp, to_finite_float

logger = logging.getLogger(__name__)

AttributeKey = int | str


def normalize_attribute_key(value: Any) -> AttributeKey | None:
    """
    Normalize a genre/attribute identifier.

    Integers stay integers, digit strings become integers, other strings are
    stripped and lower-cased. Anything else (or an empty string) is rejected.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        if cleaned.isdigit():
            return int(cleaned)
        return cleaned.lower()
    return None


def normalize_attribute_keys(values: Iterable[Any] | None) -> tuple[AttributeKey, ...]:
    """Normalize a list of keys, dropping invalid ones and duplicates (order kept)."""
    if values is None:
        return ()
    if isinstance(values, (str, int)):
        values = [values]
    keys = (normalize_attribute_key(v) for v in values)
    return tuple(dict.fromkeys(k for k in keys if k is not None))


@dataclass(frozen=True)
class CandidateMovie:
    """A movie eligible for scoring in one request."""
    id: str
    title: str
    year: int | None = None
    genre_ids: tuple[AttributeKey, ...] = ()
    overview: str = ""
    rating: float | None = None
    popularity: int | None = None

    @property
    def primary_genre(self) -> AttributeKey:
        return self.genre_ids[0] if self.genre_ids else UNKNOWN_GENRE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "year": self.year,
            "genre_ids": list(self.genre_ids),
            "overview": self.overview,
            "rating": self.rating,
            "popularity": self.popularity,
        }


def movie_from_row(row: dict[str, Any]) -> CandidateMovie | None:
    """
    Build a CandidateMovie from a content-store row.

    Returns None for rows without an id. Ratings are clamped to the 0-10
    scale, genres normalized, and numeric fields that fail to parse are
    dropped rather than propagated.
    """
    movie_id = row.get("id")
    if movie_id is None or str(movie_id).strip() == "":
        logger.debug(f"Skipping candidate row without id: {row!r}")
        return None

    rating = to_finite_float(row.get("rating"))
    if rating is not None:
        rating = clamp(rating, 0.0, RATING_SCALE_MAX)

    year = to_finite_float(row.get("year"))
    popularity = to_finite_float(row.get("popularity"))

    return CandidateMovie(
        id=str(movie_id),
        title=str(row.get("title") or movie_id),
        year=int(year) if year is not None else None,
        genre_ids=normalize_attribute_keys(row.get("genre_ids") or row.get("genres")),
        overview=str(row.get("overview") or row.get("plot") or ""),
        rating=rating,
        popularity=max(0, int(popularity)) if popularity is not None else None,
    )


@dataclass(frozen=True)
class CandidateFilter:
    """What to ask the content store for."""
    query: str | None = None
    genres: tuple[AttributeKey, ...] = ()
    limit: int = MAX_CANDIDATES
    exclude_ids: frozenset[str] = field(default_factory=frozenset)

    @property
    def mode(self) -> str:
        if self.query:
            return "query"
        if self.genres:
            return "genre"
        return "popular"


def candidate_fetch_size(limit: int) -> int:
    """Over-fetch relative to the result size, bounded by MAX_CANDIDATES."""
    return max(1, min(MAX_CANDIDATES, limit * CANDIDATE_MULTIPLIER))


def dedupe_candidates(movies: Iterable[CandidateMovie]) -> list[CandidateMovie]:
    """Drop repeated ids; the first occurrence wins."""
    seen: set[str] = set()
    unique = []
    for movie in movies:
        if movie.id in seen:
            continue
        seen.add(movie.id)
        unique.append(movie)
    return unique
