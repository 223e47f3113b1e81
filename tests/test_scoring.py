import numpy as np
import pytest

from blend_rec.config import MAX_BOOST, NEUTRAL_SIMILARITY
from blend_rec.context import assemble_user_context
from blend_rec.scoring import (
    affinity_boost,
    combine_confidence,
    score_candidates,
    semantic_similarities,
)


def test_affinity_boost_is_mean_strength_scaled():
    assert affinity_boost((28, 18), {28: 1.0}) == (MAX_BOOST, (28,))

    boost, matched = affinity_boost((28, 18), {28: 1.0, 18: 0.5})
    assert boost == pytest.approx(0.1875)
    assert matched == (28, 18)


def test_affinity_boost_without_overlap_or_strength():
    assert affinity_boost((35,), {28: 1.0}) == (0.0, ())
    assert affinity_boost((), {28: 1.0}) == (0.0, ())
    assert affinity_boost((28,), {28: 0.0}) == (0.0, ())


def test_affinity_boost_never_exceeds_max():
    boost, _ = affinity_boost((1, 2, 3), {1: 1.0, 2: 1.0, 3: 1.0})
    assert 0.0 <= boost <= MAX_BOOST


def test_combine_confidence_clamps():
    assert combine_confidence(0.9, 0.25) == 1.0
    assert combine_confidence(-0.2, 0.0) == 0.0
    assert combine_confidence(0.5, 0.1) == pytest.approx(0.6)


def test_semantic_similarities_maps_cosine_to_unit_interval():
    results = semantic_similarities(
        np.array([1.0, 0.0]),
        [[1.0, 0.0], [-1.0, 0.0], [0.0, 1.0], None, [1.0, 0.0, 0.0]],
    )

    sims = [round(s, 6) for s, _ in results]
    missing = [m for _, m in results]
    assert sims == [1.0, 0.0, 0.5, NEUTRAL_SIMILARITY, NEUTRAL_SIMILARITY]
    assert missing == [False, False, False, True, True]


def test_semantic_similarities_without_context_is_neutral():
    results = semantic_similarities(None, [[1.0, 0.0], None])
    assert [s for s, _ in results] == [NEUTRAL_SIMILARITY, NEUTRAL_SIMILARITY]


def test_affinity_match_outranks_neutral_by_exact_boost(make_movie):
    context = assemble_user_context("alice", affinities={28: 0.9})
    action = make_movie("a", (28,))
    drama = make_movie("b", (18,))

    scored = score_candidates([action, drama], context, [None, None], context.combined_vector, "smart")

    assert scored[0].confidence - scored[1].confidence == pytest.approx(0.225)
    assert scored[0].matched_genres == (28,)
    assert "memory-match" in scored[0].categories
    assert scored[1].categories == ["general"]


def test_cold_start_scores_are_at_most_neutral(catalogue):
    context = assemble_user_context("newbie")

    scored = score_candidates(catalogue, context, [None] * len(catalogue), context.combined_vector, "smart")

    assert all(s.confidence <= NEUTRAL_SIMILARITY for s in scored)
    assert all("embedding-missing" not in s.categories for s in scored)


def test_score_candidates_tags_categories(make_movie):
    context = assemble_user_context(
        "alice",
        mood="cheerful",
        genres=[35],
        preference_vector=[1.0, 0.0],
    )
    movie = make_movie("paddington", (35,), rating=8.4, overview="A cheerful bear.")
    unembedded = make_movie("mystery-box", (99,), rating=5.0)

    scored = score_candidates(
        [movie, unembedded],
        context,
        [[1.0, 0.1], None],
        context.preference_vector,
        "smart",
    )

    assert scored[0].categories == ["semantic-match", "genre-match", "mood-match", "high-quality"]
    assert scored[0].strategies == ("smart",)
    assert scored[1].categories == ["general", "embedding-missing"]
    assert scored[1].similarity == NEUTRAL_SIMILARITY


def test_score_candidates_requires_aligned_embeddings(make_movie):
    context = assemble_user_context("alice")
    with pytest.raises(ValueError):
        score_candidates([make_movie("a")], context, [], None, "smart")
