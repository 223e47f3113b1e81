"""
Configuration constants for the movie blend recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables where noted.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0, max_val: float | None = None) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value
        max_val: Optional maximum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        if max_val is not None and val > max_val:
            logger.warning(f"{key}={val} is above maximum {max_val}, using {max_val}")
            return max_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration (reference SQLite store)
DB_PATH = Path(os.environ.get("BLEND_DB", "data/blend.db"))

# Request Limits
MAX_LIMIT = _get_int_env("BLEND_MAX_LIMIT", 100, min_val=1)
DEFAULT_LIMIT = min(_get_int_env("BLEND_DEFAULT_LIMIT", 12, min_val=1), MAX_LIMIT)
DEFAULT_DIVERSITY_FACTOR = _get_float_env("BLEND_DIVERSITY_FACTOR", 0.3, min_val=0.0, max_val=1.0)

# Candidate fetching: over-fetch so the diversity pass has room to trade off
CANDIDATE_MULTIPLIER = 5
MAX_CANDIDATES = 100

# Strategies
STRATEGY_SMART = "smart"
STRATEGY_BEHAVIORAL = "behavioral"
STRATEGY_HYPER = "hyper-personalized"
STRATEGY_HYBRID = "hybrid"
STRATEGIES = (STRATEGY_SMART, STRATEGY_BEHAVIORAL, STRATEGY_HYPER, STRATEGY_HYBRID)
DEFAULT_STRATEGY = STRATEGY_HYBRID

# Composite strategies: component -> blend weight (order is merge priority)
COMPOSITE_STRATEGIES = {
    STRATEGY_HYBRID: {
        STRATEGY_SMART: 0.6,
        STRATEGY_HYPER: 0.4,
    },
}

# Number of top affinity genres the behavioral strategy filters candidates by
BEHAVIORAL_TOP_GENRES = 3

# Scoring
MAX_BOOST = 0.25  # Fixed: upper bound of the affinity boost, not env-overridable
NEUTRAL_SIMILARITY = 0.5  # Similarity assigned when no context/candidate embedding exists
SEMANTIC_MATCH_THRESHOLD = 0.7
HIGH_QUALITY_RATING = 8.0
RATING_SCALE_MAX = 10.0

# Embeddings
EMBEDDING_DIM = _get_int_env("BLEND_EMBEDDING_DIM", 384, min_val=8)
EMBEDDING_URL = os.environ.get("BLEND_EMBEDDING_URL", "")
EMBEDDING_MODEL = os.environ.get("BLEND_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_API_KEY = os.environ.get("BLEND_EMBEDDING_API_KEY", "")
HTTP_TIMEOUT = _get_float_env("BLEND_HTTP_TIMEOUT", 30.0, min_val=1.0)
MAX_HTTP_RETRIES = 3

# User context vectors
PREFERENCE_VECTOR_WEIGHT = 0.6
BEHAVIOR_VECTOR_WEIGHT = 0.4
BEHAVIOR_TEXT_MAX_GENRES = 5

# Discovery classification (0-10 rating scale)
SAFE_MIN_BOOST_RATIO = 0.6     # Boost must reach this share of MAX_BOOST for "safe"
SAFE_MAX_RATING_GAP = 1.0      # |movie rating - accepted rating| for "safe"
ADVENTURE_MIN_SIMILARITY = 0.6  # Semantic similarity needed for "adventure"
SPARSE_AFFINITY_COUNT = 3      # Fewer affinities than this counts as sparse data

# Explanation similarity ladder
REASON_SIMILARITY_PERFECT = 0.8
REASON_SIMILARITY_GREAT = 0.6
MAX_REASONS = 3
INSIGHT_REASON_COUNT = 5  # Reasons surfaced in result metadata

# Accepted rating: interactions at or above this rating count as "accepted"
ACCEPTED_RATING_FLOOR = 6.0
ACCEPTED_INTERACTION_TYPES = ("like", "rate")

# Movies with any of these interactions are left out of candidate sets
SEEN_INTERACTION_TYPES = ("like", "dislike", "rate", "watched")

# Interaction confidence by type (written alongside recorded interactions)
INTERACTION_CONFIDENCE = {
    'like': 0.9,
    'rate': 0.8,
    'watched': 0.8,
    'view': 0.6,
    'search': 0.7,
    'dislike': 0.9,  # Negative signals are just as certain
}
DEFAULT_INTERACTION_CONFIDENCE = 0.5

UNKNOWN_GENRE = "unknown"

# TMDB genre ids
GENRE_NAMES = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
}
