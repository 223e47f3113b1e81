import pytest

from blend_rec.diversity import diversify, diversity_score, genre_cap, rank_by_confidence
from blend_rec.scoring import ScoredCandidate


def _scored(make_movie, movie_id, genre, confidence):
    genres = (genre,) if genre is not None else ()
    return ScoredCandidate(
        movie=make_movie(movie_id, genres),
        similarity=confidence,
        boost=0.0,
        confidence=confidence,
    )


@pytest.fixture
def action_heavy(make_movie):
    return [
        _scored(make_movie, "a", 28, 0.9),
        _scored(make_movie, "b", 28, 0.8),
        _scored(make_movie, "c", 28, 0.7),
        _scored(make_movie, "d", 18, 0.6),
        _scored(make_movie, "e", 35, 0.5),
        _scored(make_movie, "f", 28, 0.4),
    ]


def test_genre_cap():
    assert genre_cap(0.0, 10) is None
    assert genre_cap(1.0, 10) == 1
    assert genre_cap(0.3, 10) == 7
    assert genre_cap(0.5, 5) == 3
    assert genre_cap(0.5, 0) is None
    assert genre_cap(float("nan"), 10) is None


def test_rank_by_confidence_is_stable(make_movie):
    tied = [_scored(make_movie, "x", 28, 0.5), _scored(make_movie, "y", 18, 0.5), _scored(make_movie, "z", 35, 0.9)]

    assert [c.id for c in rank_by_confidence(tied)] == ["z", "x", "y"]


def test_zero_diversity_is_pure_confidence_order(action_heavy):
    shuffled = list(reversed(action_heavy))
    assert [c.id for c in diversify(shuffled, 0.0, 4)] == ["a", "b", "c", "d", "e", "f"]


def test_full_diversity_spreads_genres(action_heavy):
    ranked = diversify(action_heavy, 1.0, 4)

    assert [c.id for c in ranked] == ["a", "d", "e", "b", "c", "f"]


def test_diversify_keeps_top_candidate_and_drops_nothing(action_heavy):
    for factor in (0.0, 0.2, 0.5, 0.8, 1.0):
        ranked = diversify(action_heavy, factor, 3)
        assert ranked[0].id == "a"
        assert sorted(c.id for c in ranked) == sorted(c.id for c in action_heavy)


def test_more_diversity_never_reduces_distinct_genres(action_heavy):
    window = 3
    distinct = []
    for factor in (0.0, 0.25, 0.5, 0.75, 1.0):
        top = diversify(action_heavy, factor, window)[:window]
        distinct.append(len({c.movie.primary_genre for c in top}))

    assert distinct == sorted(distinct)
    assert distinct[0] == 1
    assert distinct[-1] == 3


def test_movies_without_genres_share_unknown_bucket(make_movie):
    candidates = [_scored(make_movie, "u1", None, 0.9), _scored(make_movie, "u2", None, 0.8), _scored(make_movie, "d", 18, 0.1)]

    assert [c.id for c in diversify(candidates, 1.0, 2)] == ["u1", "d", "u2"]


def test_diversity_score(make_movie):
    assert diversity_score([]) == 0.0
    movies = [_scored(make_movie, "a", 28, 0.9), _scored(make_movie, "b", 28, 0.8), _scored(make_movie, "c", 18, 0.7)]
    assert diversity_score(movies) == 0.67
