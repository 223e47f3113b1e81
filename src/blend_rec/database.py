"""
SQLite reference store.

Backs every collaborator role the engine needs (content store, memory store,
embedding lookup, interaction sink) so the engine can be run end to end from
the CLI. Blocking sqlite calls are pushed off the event loop with
`asyncio.to_thread`.
"""
import asyncio
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

from .candidates import CandidateFilter, CandidateMovie, movie_from_row, normalize_attribute_key
from .config import (
    ACCEPTED_INTERACTION_TYPES,
    ACCEPTED_RATING_FLOOR,
    DB_PATH,
    SEEN_INTERACTION_TYPES,
)
from .embeddings import HashingEmbedder, RemoteEmbedder, as_vector, build_embedder, tokenize

logger = logging.getLogger(__name__)

MEMORY_GENRE_PREFERENCE = "genre_preference"


class ConnectionPool:
    """
    One SQLite connection per thread.

    `asyncio.to_thread` runs store calls on executor threads, so each worker
    thread lazily opens its own connection and keeps it until `close_all`.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Opened connection for thread {thread_id} (pool size: {len(self._connections)})")
            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def adjust_transaction_depth(self, delta: int):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 0) + delta
            self._transaction_depth[thread_id] = max(0, depth)

    def close_all(self):
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._transaction_depth.clear()


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Connection for the current thread with transaction handling.

    Only the outermost context commits (unless read_only) or rolls back;
    nested contexts join the outer transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.adjust_transaction_depth(1)
    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.adjust_transaction_depth(-1)


def close_pool():
    """Close every pooled connection. Call on shutdown and between tests."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val, default=None):
    """Safely load JSON from a db field."""
    fallback = [] if default is None else default
    if val is None or val == "":
        return fallback
    if isinstance(val, (list, dict)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return fallback


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db() -> None:
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS movies (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                year INTEGER,
                genre_ids TEXT,     -- JSON list of genre ids / names
                overview TEXT,
                rating REAL,        -- 0-10
                popularity INTEGER
            );

            CREATE TABLE IF NOT EXISTS movie_embeddings (
                movie_id TEXT PRIMARY KEY,
                dim INTEGER NOT NULL,
                vector TEXT NOT NULL,   -- JSON list of floats
                model TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS conversational_memory (
                user_id TEXT NOT NULL,
                memory_type TEXT NOT NULL,
                memory_key TEXT NOT NULL,
                preference_strength REAL NOT NULL,
                updated_at TEXT,
                PRIMARY KEY (user_id, memory_type, memory_key)
            );

            CREATE TABLE IF NOT EXISTS user_interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                movie_id TEXT NOT NULL,
                interaction_type TEXT NOT NULL,
                rating REAL,
                metadata TEXT,      -- JSON object
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_movies_popularity ON movies(popularity);
            CREATE INDEX IF NOT EXISTS idx_memory_user ON conversational_memory(user_id, memory_type);
            CREATE INDEX IF NOT EXISTS idx_interactions_user ON user_interactions(user_id, interaction_type);
        """)


def upsert_movies(rows: Iterable[Mapping[str, Any]]) -> list[CandidateMovie]:
    """Insert or replace movies; rows without an id are skipped. Returns what was stored."""
    movies = [m for m in (movie_from_row(dict(r)) for r in rows) if m is not None]
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO movies (id, title, year, genre_ids, overview, rating, popularity)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [
            (m.id, m.title, m.year, json.dumps(list(m.genre_ids)), m.overview, m.rating, m.popularity)
            for m in movies
        ])
    return movies


def _row_to_movie(row: sqlite3.Row) -> CandidateMovie | None:
    data = dict(row)
    data["genre_ids"] = load_json(data.get("genre_ids"))
    return movie_from_row(data)


def search_movies(candidate_filter: CandidateFilter) -> list[CandidateMovie]:
    """
    Candidates for a filter, most popular first.

    A query matches any query token against title or overview; requested
    genres match any of them. Both narrow the result when given together.
    With neither, the catalogue head is returned.
    """
    clauses: list[str] = []
    params: list[Any] = []

    if candidate_filter.query:
        tokens = tokenize(candidate_filter.query) or [candidate_filter.query.lower()]
        token_clauses = []
        for token in tokens:
            token_clauses.append("(LOWER(title) LIKE ? OR LOWER(overview) LIKE ?)")
            params.extend([f"%{token}%", f"%{token}%"])
        clauses.append("(" + " OR ".join(token_clauses) + ")")
    if candidate_filter.genres:
        placeholders = ",".join("?" * len(candidate_filter.genres))
        clauses.append(
            f"EXISTS (SELECT 1 FROM json_each(movies.genre_ids) WHERE json_each.value IN ({placeholders}))"
        )
        params.extend(candidate_filter.genres)

    if candidate_filter.exclude_ids:
        excluded = sorted(candidate_filter.exclude_ids)
        clauses.append(f"id NOT IN ({','.join('?' * len(excluded))})")
        params.extend(excluded)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"""
        SELECT id, title, year, genre_ids, overview, rating, popularity
        FROM movies
        {where}
        ORDER BY COALESCE(popularity, -1) DESC, COALESCE(rating, -1) DESC, id ASC
        LIMIT ?
    """
    params.append(candidate_filter.limit)

    with get_db(read_only=True) as conn:
        rows = conn.execute(sql, params).fetchall()
    return [m for m in (_row_to_movie(r) for r in rows) if m is not None]


def save_movie_embedding(movie_id: str, vector: Sequence[float], model: str = "hashing") -> None:
    values = [float(v) for v in vector]
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO movie_embeddings (movie_id, dim, vector, model, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (movie_id, len(values), json.dumps(values), model, _now()))


def load_movie_embedding(movie_id: str) -> list[float] | None:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT vector FROM movie_embeddings WHERE movie_id = ?", (movie_id,)
        ).fetchone()
    if row is None:
        return None
    vector = load_json(row["vector"])
    return vector or None


def save_memory(
    user_id: str,
    memory_key: Any,
    strength: float,
    memory_type: str = MEMORY_GENRE_PREFERENCE,
) -> None:
    """Store one preference; genre keys are normalized so '28' and 28 collide."""
    key = normalize_attribute_key(memory_key)
    if key is None:
        raise ValueError(f"Invalid memory key: {memory_key!r}")
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO conversational_memory
                (user_id, memory_type, memory_key, preference_strength, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, memory_type, str(key), float(strength), _now()))


def load_user_affinities(user_id: str) -> list[dict]:
    """Positive genre preferences as raw rows; validation happens in the engine."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT memory_key, preference_strength
            FROM conversational_memory
            WHERE user_id = ? AND memory_type = ? AND preference_strength > 0
            ORDER BY preference_strength DESC, memory_key ASC
        """, (user_id, MEMORY_GENRE_PREFERENCE)).fetchall()
    return [dict(r) for r in rows]


def load_accepted_rating(user_id: str) -> float | None:
    """Mean rating across liked/rated movies at or above the acceptance floor."""
    placeholders = ",".join("?" * len(ACCEPTED_INTERACTION_TYPES))
    with get_db(read_only=True) as conn:
        row = conn.execute(f"""
            SELECT AVG(rating) AS accepted
            FROM user_interactions
            WHERE user_id = ?
              AND interaction_type IN ({placeholders})
              AND rating IS NOT NULL
              AND rating >= ?
        """, (user_id, *ACCEPTED_INTERACTION_TYPES, ACCEPTED_RATING_FLOOR)).fetchone()
    return row["accepted"] if row and row["accepted"] is not None else None


def load_interacted_ids(user_id: str, interaction_types: Sequence[str] = SEEN_INTERACTION_TYPES) -> set[str]:
    """Movies the user has already rated, liked, disliked or watched."""
    if not interaction_types:
        return set()
    placeholders = ",".join("?" * len(interaction_types))
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT DISTINCT movie_id
            FROM user_interactions
            WHERE user_id = ? AND interaction_type IN ({placeholders})
        """, (user_id, *interaction_types)).fetchall()
    return {row["movie_id"] for row in rows}


def save_interaction(
    user_id: str,
    movie_id: str,
    interaction_type: str,
    metadata: Mapping[str, Any] | None = None,
) -> int:
    payload = dict(metadata or {})
    rating = payload.get("rating")
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO user_interactions (user_id, movie_id, interaction_type, rating, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            user_id,
            movie_id,
            interaction_type,
            float(rating) if rating is not None else None,
            json.dumps(payload, default=str),
            payload.get("timestamp") or _now(),
        ))
        return cursor.lastrowid


def load_interactions(user_id: str) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT movie_id, interaction_type, rating, metadata, created_at
            FROM user_interactions
            WHERE user_id = ?
            ORDER BY id ASC
        """, (user_id,)).fetchall()
    interactions = []
    for row in rows:
        item = dict(row)
        item["metadata"] = load_json(item["metadata"], default={})
        interactions.append(item)
    return interactions


class SqliteCollaborators:
    """Every engine collaborator role, backed by the local SQLite store."""

    def __init__(self, embedder: HashingEmbedder | RemoteEmbedder | None = None):
        self.embedder = embedder or build_embedder()

    async def fetch_candidates(self, candidate_filter: CandidateFilter) -> list[CandidateMovie]:
        return await asyncio.to_thread(search_movies, candidate_filter)

    async def fetch_user_affinities(self, user_id: str) -> list[dict]:
        return await asyncio.to_thread(load_user_affinities, user_id)

    async def fetch_accepted_rating(self, user_id: str) -> float | None:
        return await asyncio.to_thread(load_accepted_rating, user_id)

    async def fetch_interacted_ids(self, user_id: str) -> set[str]:
        return await asyncio.to_thread(load_interacted_ids, user_id)

    async def embed_text(self, text: str):
        return await self.embedder.embed_text(text)

    async def embedding(self, movie_id: str):
        vector = await asyncio.to_thread(load_movie_embedding, movie_id)
        return as_vector(vector)

    async def record_interaction(
        self,
        user_id: str,
        movie_id: str,
        interaction_type: str,
        metadata: Mapping[str, Any],
    ) -> None:
        await asyncio.to_thread(save_interaction, user_id, movie_id, interaction_type, metadata)
