"""
Contracts for the engine's external collaborators.

Every collaborator call goes through `attempt`, which turns success or
failure into an explicit `Outcome`. The orchestrator decides per component
whether a failed outcome is substituted with a default or is fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Iterable, Mapping, Protocol, Sequence, TypeVar

from .candidates import CandidateFilter, CandidateMovie
from .exceptions import CollaboratorError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Vector = Sequence[float]


class CandidateSource(Protocol):
    async def fetch_candidates(self, candidate_filter: CandidateFilter) -> list[CandidateMovie]: ...


class AffinityStore(Protocol):
    async def fetch_user_affinities(self, user_id: str) -> Mapping[Any, Any]: ...

    async def fetch_accepted_rating(self, user_id: str) -> float | None: ...

    async def fetch_interacted_ids(self, user_id: str) -> Iterable[str]: ...


class EmbeddingService(Protocol):
    async def embed_text(self, text: str) -> Vector: ...

    async def embedding(self, movie_id: str) -> Vector | None: ...


class InteractionSink(Protocol):
    async def record_interaction(
        self,
        user_id: str,
        movie_id: str,
        interaction_type: str,
        metadata: Mapping[str, Any],
    ) -> None: ...


@dataclass(frozen=True)
class Collaborators:
    """The four collaborator roles the engine needs. One object may fill several."""
    candidates: CandidateSource
    affinities: AffinityStore
    embeddings: EmbeddingService
    interactions: InteractionSink

    @classmethod
    def from_single(cls, backend: Any) -> "Collaborators":
        return cls(
            candidates=backend,
            affinities=backend,
            embeddings=backend,
            interactions=backend,
        )


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of one collaborator call: a value or a CollaboratorError."""
    value: T | None = None
    error: CollaboratorError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: T) -> T:
        if self.ok and self.value is not None:
            return self.value
        return default


async def attempt(component: str, awaitable: Awaitable[T]) -> Outcome[T]:
    """Await a collaborator call, capturing any failure as an Outcome."""
    try:
        return Outcome(value=await awaitable)
    except Exception as exc:
        logger.warning(f"{component} unavailable: {exc}")
        return Outcome(error=CollaboratorError(component, exc))
