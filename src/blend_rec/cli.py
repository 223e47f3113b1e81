import argparse
import asyncio
import atexit
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .candidates import normalize_attribute_key
from .collaborators import Collaborators
from .config import DEFAULT_DIVERSITY_FACTOR, DEFAULT_LIMIT, GENRE_NAMES, INTERACTION_CONFIDENCE, STRATEGIES
from .database import (
    SqliteCollaborators, close_pool, init_db, save_memory, save_movie_embedding, upsert_movies,
)
from .embeddings import build_embedder, movie_text
from .engine import RecommendationEngine, RecommendationRequest, RecommendationResult
from .exceptions import InvalidRequest, NoCandidatesError

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)

EMBED_BATCH_SIZE = 32

_GENRE_IDS_BY_NAME = {name.lower(): genre_id for genre_id, name in GENRE_NAMES.items()}


def _parse_genre(value: str):
    """Genre id or TMDB genre name ('sci-fi' style names fall through as text keys)."""
    key = normalize_attribute_key(value)
    if isinstance(key, str):
        return _GENRE_IDS_BY_NAME.get(key, key)
    return key


def _build_engine() -> RecommendationEngine:
    return RecommendationEngine(Collaborators.from_single(SqliteCollaborators()))


def _read_json_list(path: str, key: str) -> list | None:
    file_path = Path(path)
    if not file_path.exists():
        logger.error(f"File not found: {path}")
        return None
    with open(file_path, 'r') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        logger.error(f"Expected a JSON list in {path}")
        return None
    return data


def cmd_init_db(args: argparse.Namespace) -> int:
    init_db()
    logger.info("Database initialized")
    return 0


async def _embed_movies(movies, embedder) -> int:
    model = getattr(embedder, "model", "hashing")
    stored = 0
    batches = [movies[i:i + EMBED_BATCH_SIZE] for i in range(0, len(movies), EMBED_BATCH_SIZE)]
    for batch in tqdm(batches, desc="Embeddings"):
        vectors = await embedder.embed_many([movie_text(m) for m in batch])
        for movie, vector in zip(batch, vectors):
            save_movie_embedding(movie.id, vector, model=model)
            stored += 1
    return stored


def cmd_load_movies(args: argparse.Namespace) -> int:
    """Load a JSON list of movies and embed them."""
    rows = _read_json_list(args.file, "movies")
    if rows is None:
        return 1

    init_db()
    movies = upsert_movies(rows)
    skipped = len(rows) - len(movies)
    logger.info(f"Loaded {len(movies)} movies" + (f" ({skipped} skipped without id)" if skipped else ""))

    if args.skip_embeddings or not movies:
        return 0
    stored = asyncio.run(_embed_movies(movies, build_embedder()))
    logger.info(f"Stored {stored} movie embeddings")
    return 0


def cmd_remember(args: argparse.Namespace) -> int:
    init_db()
    genre = _parse_genre(args.genre)
    try:
        save_memory(args.user, genre, args.strength)
    except ValueError as e:
        logger.error(str(e))
        return 1
    logger.info(f"Remembered {args.user} likes {args.genre} ({args.strength:.2f})")
    return 0


def cmd_record(args: argparse.Namespace) -> int:
    init_db()
    metadata = {"rating": args.rating} if args.rating is not None else {}
    try:
        ok = asyncio.run(_build_engine().record_interaction(args.user, args.movie, args.type, metadata))
    except InvalidRequest as e:
        logger.error(f"Invalid request: {e}")
        return 1
    if not ok:
        logger.error(f"Failed to record {args.type} for {args.user}")
        return 1
    logger.info(f"Recorded {args.type} of {args.movie} for {args.user}")
    return 0


def _output_result(result: RecommendationResult, user: str, output_format: str) -> None:
    """Log a result in the requested format."""
    if output_format == 'json':
        logger.info(json.dumps(result.to_dict(), indent=2))
        return

    meta = result.metadata
    logger.info(f"\nTop {len(result.movies)} recommendations for {user} ({meta.source}):")
    for i, scored in enumerate(result.movies, 1):
        movie = scored.movie
        year = f" ({movie.year})" if movie.year else ""
        logger.info(f"{i}. {movie.title}{year} - Confidence: {scored.confidence:.0%} [{scored.discovery_factor}]")
        logger.info(f"   Why: {', '.join(scored.reasons)}")
    logger.info(
        f"Overall confidence {meta.confidence:.3f}, diversity {meta.diversity_score:.2f}, "
        f"certainty {meta.certainty}"
    )
    for component, message in meta.errors.items():
        logger.warning(f"Degraded: {component}: {message}")


def cmd_recommend(args: argparse.Namespace) -> int:
    request = RecommendationRequest(
        user_id=args.user,
        strategy=args.strategy,
        limit=args.limit,
        query=args.query,
        mood=args.mood,
        genres=[_parse_genre(g) for g in args.genres] if args.genres else None,
        diversity_factor=args.diversity,
        exclude_seen=not args.include_seen,
    )
    try:
        result = asyncio.run(_build_engine().generate_recommendations(request))
    except InvalidRequest as e:
        logger.error(f"Invalid request: {e}")
        return 1
    except NoCandidatesError as e:
        logger.error(str(e))
        return 1

    _output_result(result, args.user, args.format)
    return 0


async def _run_batch(engine: RecommendationEngine, requests: list[dict]) -> list[dict]:
    results = []
    for payload in tqdm(requests, desc="Users"):
        user = (payload.get("user_id") or payload.get("userId")) if isinstance(payload, dict) else None
        try:
            if not isinstance(payload, dict):
                raise InvalidRequest(f"request must be an object, got {type(payload).__name__}")
            result = await engine.generate_recommendations(RecommendationRequest.from_dict(payload))
            results.append({"user_id": user, **result.to_dict()})
        except (InvalidRequest, NoCandidatesError) as e:
            logger.error(f"Batch request for {user!r} failed: {e}")
            results.append({"user_id": user, "error": str(e)})
    return results


def cmd_batch(args: argparse.Namespace) -> int:
    """Run one recommendation request per entry of a JSON list."""
    requests = _read_json_list(args.file, "requests")
    if requests is None:
        return 1

    results = asyncio.run(_run_batch(_build_engine(), requests))
    failed = sum(1 for r in results if "error" in r)

    if args.output:
        with open(args.output, 'w') as f:
            json.dump(results, f, indent=2)
        logger.info(f"Wrote {len(results)} results to {args.output}")
    else:
        logger.info(json.dumps(results, indent=2))

    if failed:
        logger.warning(f"{failed}/{len(results)} batch requests failed")
        return 1
    return 0


def main():
    parser = argparse.ArgumentParser(description="Movie Blend Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create the database schema")
    init_parser.set_defaults(func=cmd_init_db)

    load_parser = subparsers.add_parser("load-movies", help="Load movies from a JSON file and embed them")
    load_parser.add_argument("file", help="JSON list of movies (id, title, year, genre_ids, overview, rating, popularity)")
    load_parser.add_argument("--skip-embeddings", action="store_true", help="Store movies without embeddings")
    load_parser.set_defaults(func=cmd_load_movies)

    remember_parser = subparsers.add_parser("remember", help="Store a genre preference for a user")
    remember_parser.add_argument("user", help="User id")
    remember_parser.add_argument("genre", help="Genre id or name (e.g. 28 or action)")
    remember_parser.add_argument("strength", type=float, help="Preference strength in [0, 1]")
    remember_parser.set_defaults(func=cmd_remember)

    record_parser = subparsers.add_parser("record", help="Record a user interaction")
    record_parser.add_argument("user", help="User id")
    record_parser.add_argument("movie", help="Movie id")
    record_parser.add_argument("type", help=f"Interaction type ({', '.join(INTERACTION_CONFIDENCE)})")
    record_parser.add_argument("--rating", type=float, help="Rating on the 0-10 scale")
    record_parser.set_defaults(func=cmd_record)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("user", help="User id")
    rec_parser.add_argument("--strategy", default="hybrid",
                            help=f"Recommendation strategy ({', '.join(STRATEGIES)})")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    rec_parser.add_argument("--query", help="Free-text query")
    rec_parser.add_argument("--mood", help="Current mood")
    rec_parser.add_argument("--genres", nargs="+", help="Genre ids or names to focus on")
    rec_parser.add_argument("--diversity", type=float, default=DEFAULT_DIVERSITY_FACTOR,
                            help="Diversity factor in [0, 1]")
    rec_parser.add_argument("--include-seen", action="store_true",
                            help="Keep movies the user already rated or watched")
    rec_parser.add_argument("--format", choices=['text', 'json'], default='text', help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    batch_parser = subparsers.add_parser("batch", help="Generate recommendations for many users")
    batch_parser.add_argument("file", help="JSON list of requests")
    batch_parser.add_argument("--output", "-o", help="Write results to this JSON file")
    batch_parser.set_defaults(func=cmd_batch)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    status = args.func(args)
    if status:
        sys.exit(status)


if __name__ == "__main__":
    main()
