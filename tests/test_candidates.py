import pytest

from blend_rec.candidates import (
    CandidateFilter,
    candidate_fetch_size,
    dedupe_candidates,
    movie_from_row,
    normalize_attribute_key,
    normalize_attribute_keys,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        (28, 28),
        ("28", 28),
        (" 28 ", 28),
        (28.0, 28),
        (" Drama ", "drama"),
        (28.5, None),
        (True, None),
        ("", None),
        ("   ", None),
        (None, None),
        (["28"], None),
    ],
)
def test_normalize_attribute_key(value, expected):
    assert normalize_attribute_key(value) == expected


def test_normalize_attribute_keys_dedupes_and_keeps_order():
    assert normalize_attribute_keys(None) == ()
    assert normalize_attribute_keys("28") == (28,)
    assert normalize_attribute_keys(35) == (35,)
    assert normalize_attribute_keys([28, "28", "Drama", "drama", None, "", 18]) == (28, "drama", 18)


def test_movie_from_row_coerces_loose_fields():
    movie = movie_from_row({
        "id": 7,
        "title": "Seven",
        "year": "1995",
        "genres": ["80", "Mystery"],
        "plot": "Two detectives hunt a killer.",
        "rating": "12",
        "popularity": -5,
    })

    assert movie.id == "7"
    assert movie.year == 1995
    assert movie.genre_ids == (80, "mystery")
    assert movie.overview == "Two detectives hunt a killer."
    assert movie.rating == 10.0
    assert movie.popularity == 0
    assert movie.primary_genre == 80


def test_movie_from_row_drops_unparseable_values():
    movie = movie_from_row({"id": "x", "rating": "n/a", "year": None, "genre_ids": None})

    assert movie.title == "x"
    assert movie.rating is None
    assert movie.year is None
    assert movie.genre_ids == ()
    assert movie.primary_genre == "unknown"


def test_movie_from_row_requires_id():
    assert movie_from_row({"title": "No id"}) is None
    assert movie_from_row({"id": "  ", "title": "Blank id"}) is None


def test_candidate_filter_mode():
    assert CandidateFilter(query="space", genres=(878,)).mode == "query"
    assert CandidateFilter(genres=(878,)).mode == "genre"
    assert CandidateFilter().mode == "popular"


def test_candidate_fetch_size_over_fetches_within_bound():
    assert candidate_fetch_size(1) == 5
    assert candidate_fetch_size(12) == 60
    assert candidate_fetch_size(20) == 100
    assert candidate_fetch_size(100) == 100


def test_dedupe_candidates_first_occurrence_wins(make_movie):
    first = make_movie("heat", (28,), rating=8.0)
    duplicate = make_movie("heat", (18,), rating=1.0)
    other = make_movie("speed", (28,))

    unique = dedupe_candidates([first, other, duplicate])

    assert unique == [first, other]
    assert unique[0].rating == 8.0
