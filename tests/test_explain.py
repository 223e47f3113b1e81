from blend_rec.context import assemble_user_context
from blend_rec.explain import (
    DISCOVERY_ADVENTURE,
    DISCOVERY_SAFE,
    DISCOVERY_STRETCH,
    apply_explanation,
    classify_discovery,
    explain,
)
from blend_rec.scoring import score_candidates


def _score_one(movie, context, embedding=None, vector=None):
    return score_candidates([movie], context, [embedding], vector, "smart")[0]


def test_safe_when_affinity_strong_and_rating_close(make_movie):
    context = assemble_user_context("alice", affinities={28: 1.0}, accepted_rating=8.0)
    scored = _score_one(make_movie("heat", (28, 80), rating=8.3), context)

    assert classify_discovery(scored, context) == DISCOVERY_SAFE


def test_stretch_when_rating_far_from_accepted(make_movie):
    context = assemble_user_context("alice", affinities={28: 1.0}, accepted_rating=8.0)
    scored = _score_one(make_movie("commando", (28,), rating=5.0), context)

    assert classify_discovery(scored, context) == DISCOVERY_STRETCH


def test_adventure_when_carried_by_similarity_with_sparse_history(make_movie):
    context = assemble_user_context("alice", query="first contact", preference_vector=[1.0, 0.0])
    scored = _score_one(make_movie("arrival", (878,), rating=7.9), context, [1.0, 0.2], context.preference_vector)

    assert scored.boost == 0
    assert classify_discovery(scored, context) == DISCOVERY_ADVENTURE


def test_missing_embedding_is_never_adventure(make_movie):
    context = assemble_user_context("alice", query="first contact", preference_vector=[1.0, 0.0])
    scored = _score_one(make_movie("arrival", (878,)), context, None, context.preference_vector)
    scored.similarity = 0.9

    assert classify_discovery(scored, context) == DISCOVERY_STRETCH


def test_reasons_cite_memory_then_quality(make_movie):
    context = assemble_user_context("alice", affinities={28: 1.0}, accepted_rating=8.0)
    scored = _score_one(make_movie("heat", (28, 80), rating=8.3), context)

    explanation = explain(scored, context)

    assert explanation.reasons == ["Matches your love of Action", "Highly rated (8.3/10)"]
    assert explanation.primary_reason == "Matches your love of Action"


def test_reasons_are_capped_in_priority_order(make_movie):
    context = assemble_user_context(
        "alice",
        query="heist",
        mood="tense",
        genres=[28],
        affinities={28: 1.0},
        preference_vector=[1.0, 0.0],
    )
    movie = make_movie("heat", (28,), rating=8.5, overview="A tense heist.")
    scored = _score_one(movie, context, [1.0, 0.0], context.preference_vector)

    explanation = explain(scored, context)

    assert explanation.reasons == [
        "Matches your love of Action",
        'Perfect match for "heist"',
        "Matches your Action preferences",
    ]


def test_semantic_ladder_targets_mood_without_query(make_movie):
    context = assemble_user_context("alice", mood="dreamy", preference_vector=[1.0, 0.0])
    scored = _score_one(make_movie("solaris", (878,)), context, [1.0, 0.0], context.preference_vector)
    scored.similarity = 0.75

    assert explain(scored, context).reasons[0] == "Great match for your dreamy mood"


def test_cold_start_fallback_names_primary_genre(make_movie):
    context = assemble_user_context("newbie")
    scored = _score_one(make_movie("airplane", (35,), rating=7.7), context)

    explanation = explain(scored, context)

    assert explanation.reasons == ["Popular Comedy pick to help learn your taste"]


def test_generic_fallback_for_known_user(make_movie):
    context = assemble_user_context("alice", affinities={18: 0.5})
    scored = _score_one(make_movie("airplane", (35,), rating=7.0), context)

    assert explain(scored, context).primary_reason == "Recommended for you"


def test_apply_explanation_sets_fields(make_movie):
    context = assemble_user_context("newbie")
    scored = _score_one(make_movie("airplane", (35,)), context)

    apply_explanation(scored, explain(scored, context))

    assert scored.reason == scored.reasons[0]
    assert scored.discovery_factor in {DISCOVERY_SAFE, DISCOVERY_STRETCH, DISCOVERY_ADVENTURE}
