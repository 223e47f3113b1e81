"""
Text embedders.

`HashingEmbedder` is a deterministic, dependency-light embedder (hashed
token buckets) used offline and for the reference store. `RemoteEmbedder`
talks to an OpenAI-compatible `/embeddings` endpoint over httpx.
"""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Sequence

import httpx
import numpy as np

from .candidates import CandidateMovie
from .config import (
    EMBEDDING_API_KEY,
    EMBEDDING_DIM,
    EMBEDDING_MODEL,
    EMBEDDING_URL,
    GENRE_NAMES,
    HTTP_TIMEOUT,
    MAX_HTTP_RETRIES,
)
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

# Function words plus the labels used when composing context text
STOPWORDS = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has", "he",
    "her", "his", "in", "is", "it", "its", "of", "on", "or", "she", "that", "the",
    "their", "they", "this", "to", "was", "were", "who", "with",
    "user", "query", "mood", "preferred", "genres", "enjoys",
})


def tokenize(text: str) -> list[str]:
    return [t for t in TOKEN_PATTERN.findall((text or "").lower()) if t not in STOPWORDS]


def as_vector(value: Any, dim: int | None = None) -> np.ndarray | None:
    """
    Coerce an embedding into a 1-D float array.

    Returns None when the value is missing, empty, non-finite, all zeros, or
    (if `dim` is given) of the wrong length.
    """
    if value is None:
        return None
    try:
        vec = np.asarray(value, dtype=float).ravel()
    except (TypeError, ValueError):
        return None
    if vec.size == 0 or not np.all(np.isfinite(vec)):
        return None
    if dim is not None and vec.size != dim:
        return None
    if not np.any(vec):
        return None
    return vec


def unit_vector(vec: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vec)
    return vec / norm if norm > 0 else vec


def genre_label(key: Any) -> str:
    """Human-readable genre name for an attribute key."""
    if isinstance(key, int):
        return GENRE_NAMES.get(key, f"genre {key}")
    return str(key).title()


def movie_text(movie: CandidateMovie) -> str:
    """Text used to embed a movie."""
    genres = ", ".join(genre_label(g) for g in movie.genre_ids)
    return ". ".join(part for part in (movie.title, genres, movie.overview) if part)


class HashingEmbedder:
    """
    Feature-hashing embedder.

    Each token (and adjacent token pair) is hashed with blake2b into one of
    `dim` buckets with a hash-derived sign; the result is L2-normalized.
    Stable across processes, unlike the builtin hash().
    """

    def __init__(self, dim: int = EMBEDDING_DIM):
        self.dim = dim

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        h = int.from_bytes(digest, "little")
        sign = 1.0 if (h >> 63) == 0 else -1.0
        return h % self.dim, sign

    def embed(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dim, dtype=float)
        tokens = tokenize(text)
        features = tokens + [f"{a}_{b}" for a, b in zip(tokens, tokens[1:])]
        for feature in features:
            idx, sign = self._bucket(feature)
            vec[idx] += sign
        return unit_vector(vec)

    async def embed_text(self, text: str) -> np.ndarray:
        return self.embed(text)

    async def embed_many(self, texts: Sequence[str]) -> list[np.ndarray]:
        return [self.embed(t) for t in texts]


class TransientStatusError(httpx.HTTPStatusError):
    """A 429 or 5xx response; worth retrying, unlike other 4xx errors."""


class RemoteEmbedder:
    """Client for an OpenAI-compatible embeddings endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str = EMBEDDING_MODEL,
        api_key: str = EMBEDDING_API_KEY,
        timeout: float = HTTP_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ):
        self.url = base_url.rstrip("/") + "/embeddings"
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, payload: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(self.url, json=payload, headers=self._headers())
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload, headers=self._headers())

    @async_retry_with_backoff(
        max_retries=MAX_HTTP_RETRIES,
        initial_delay=0.5,
        exceptions=(httpx.TransportError, TransientStatusError),
    )
    async def _post_with_retry(self, payload: dict) -> httpx.Response:
        response = await self._post(payload)
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientStatusError(
                f"Embedding service returned {response.status_code}",
                request=response.request,
                response=response,
            )
        return response

    async def embed_many(self, texts: Sequence[str]) -> list[np.ndarray]:
        response = await self._post_with_retry({"model": self.model, "input": list(texts)})
        response.raise_for_status()
        data = response.json().get("data") or []
        if len(data) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(data)}")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [np.asarray(item["embedding"], dtype=float) for item in ordered]

    async def embed_text(self, text: str) -> np.ndarray:
        vectors = await self.embed_many([text])
        return vectors[0]


def build_embedder() -> HashingEmbedder | RemoteEmbedder:
    """Remote embedder when BLEND_EMBEDDING_URL is set, local hashing otherwise."""
    if EMBEDDING_URL:
        logger.info(f"Using remote embeddings at {EMBEDDING_URL} ({EMBEDDING_MODEL})")
        return RemoteEmbedder(EMBEDDING_URL)
    logger.debug(f"Using local hashing embedder (dim={EMBEDDING_DIM})")
    return HashingEmbedder()
