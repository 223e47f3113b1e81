import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from blend_rec.candidates import CandidateMovie  # noqa: E402
from blend_rec.embeddings import HashingEmbedder, movie_text  # noqa: E402

TEST_DIM = 64


class FakeBackend:
    """
    In-memory stand-in for every collaborator role.

    Method names listed in `fail` raise RuntimeError, so tests can take any
    collaborator down independently.
    """

    def __init__(self, movies=(), affinities=None, accepted_rating=None, embeddings=None, fail=(), seen=()):
        self.movies = list(movies)
        self.affinities = affinities if affinities is not None else {}
        self.accepted_rating = accepted_rating
        self.embedder = HashingEmbedder(dim=TEST_DIM)
        if embeddings is None:
            embeddings = {m.id: self.embedder.embed(movie_text(m)) for m in self.movies}
        self.embeddings = embeddings
        self.seen = set(seen)
        self.fail = set(fail)
        self.filters = []
        self.interactions = []

    def _check(self, name):
        if name in self.fail:
            raise RuntimeError(f"{name} down")

    async def fetch_candidates(self, candidate_filter):
        self._check("fetch_candidates")
        self.filters.append(candidate_filter)
        movies = [m for m in self.movies if m.id not in candidate_filter.exclude_ids]
        if candidate_filter.genres:
            movies = [m for m in movies if any(g in candidate_filter.genres for g in m.genre_ids)]
        return movies[:candidate_filter.limit]

    async def fetch_user_affinities(self, user_id):
        self._check("fetch_user_affinities")
        return self.affinities

    async def fetch_accepted_rating(self, user_id):
        self._check("fetch_accepted_rating")
        return self.accepted_rating

    async def fetch_interacted_ids(self, user_id):
        self._check("fetch_interacted_ids")
        return self.seen

    async def embed_text(self, text):
        self._check("embed_text")
        return self.embedder.embed(text)

    async def embedding(self, movie_id):
        self._check("embedding")
        return self.embeddings.get(movie_id)

    async def record_interaction(self, user_id, movie_id, interaction_type, metadata):
        self._check("record_interaction")
        self.interactions.append((user_id, movie_id, interaction_type, dict(metadata)))


def build_movie(movie_id, genres=(), rating=None, overview="", title=None, year=2020, popularity=None):
    return CandidateMovie(
        id=movie_id,
        title=title or movie_id.replace("-", " ").title(),
        year=year,
        genre_ids=tuple(genres),
        overview=overview,
        rating=rating,
        popularity=popularity,
    )


@pytest.fixture
def make_movie():
    return build_movie


@pytest.fixture
def catalogue():
    """A small mixed-genre catalogue (TMDB ids: 28 action, 18 drama, 35 comedy, 27 horror)."""
    return [
        build_movie("heat", (28, 80), rating=8.3, overview="A tense heist thriller in Los Angeles.", popularity=90),
        build_movie("speed", (28, 53), rating=7.2, overview="A bus that cannot slow down.", popularity=85),
        build_movie("die-hard", (28,), rating=8.2, overview="A cop fights terrorists in a tower.", popularity=80),
        build_movie("arrival", (18, 878), rating=7.9, overview="A linguist decodes alien language.", popularity=75),
        build_movie("moonlight", (18,), rating=7.4, overview="A quiet coming of age story.", popularity=70),
        build_movie("paddington", (35, 10751), rating=7.8, overview="A cheerful bear in London.", popularity=65),
        build_movie("airplane", (35,), rating=7.7, overview="A cheerful disaster spoof.", popularity=60),
        build_movie("hereditary", (27, 9648), rating=7.3, overview="A grieving family unravels.", popularity=55),
    ]


@pytest.fixture
def backend_factory():
    return FakeBackend


@pytest.fixture
def reload_config(monkeypatch):
    """Reload config after env changes; restores the default config on teardown."""
    import blend_rec.config as config

    yield lambda: importlib.reload(config)
    monkeypatch.undo()
    importlib.reload(config)


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("BLEND_DB", str(db_path))

    import blend_rec.config as config
    import blend_rec.database as database

    importlib.reload(config)
    importlib.reload(database)

    yield database
    database.close_pool()
