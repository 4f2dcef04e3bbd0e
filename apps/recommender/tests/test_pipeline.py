# apps/recommender/tests/test_pipeline.py
import pytest

from conftest import add_item, add_user, seed_catalog, watch
from models import (
    RecommendationCandidate,
    RecommendationConfig,
    RecommendationEvidence,
    RecommendationRun,
    TasteProfile,
)
from pipeline import generate_recommendations_for_user


def _generate(session_factory, store, user, **kwargs):
    kwargs.setdefault("overrides", {"selected_count": 2})
    return generate_recommendations_for_user(
        user.id, store, session_factory=session_factory, **kwargs
    )


def _seed_user(db, store, **user_kwargs):
    user = add_user(db, **user_kwargs)
    watched, unwatched = seed_catalog(db, store)
    watch(db, user, watched[0], play_count=5, favorite=True)
    watch(db, user, watched[1], play_count=1)
    watch(db, user, watched[2], play_count=1)
    return user, watched, unwatched


def test_end_to_end_run(session_factory, db, store):
    user, watched, unwatched = _seed_user(db, store)

    result = _generate(session_factory, store, user)

    db.expire_all()
    run = db.get(RecommendationRun, result.run_id)
    assert run.status == "completed"
    assert run.run_type == "scheduled"
    assert run.candidate_count >= 2
    assert run.selected_count == 2
    assert run.duration_ms is not None

    selected = (
        db.query(RecommendationCandidate)
        .filter_by(run_id=run.id, is_selected=True)
        .order_by(RecommendationCandidate.selected_rank)
        .all()
    )
    assert sorted(c.selected_rank for c in selected) == [1, 2]
    assert [c.item_id for c in selected] == [c.item_id for c in result.selections]
    assert not {c.item_id for c in selected} & {w.id for w in watched}

    for row in selected:
        evidence = db.query(RecommendationEvidence).filter_by(candidate_id=row.id).all()
        assert len(evidence) == 3
        assert {e.similar_item_id for e in evidence} == {w.id for w in watched}
        by_item = {e.similar_item_id: e.evidence_type for e in evidence}
        assert by_item[watched[0].id] == "favorite"
        assert by_item[watched[1].id] == "watched"

    profile = db.get(TasteProfile, (user.id, "movie"))
    assert profile is not None
    assert len(profile.embedding) == 3
    assert profile.item_count == 3


def test_all_scored_candidates_are_persisted(session_factory, db, store):
    user, watched, unwatched = _seed_user(db, store)
    result = _generate(session_factory, store, user)

    rows = db.query(RecommendationCandidate).filter_by(run_id=result.run_id).all()
    assert len(rows) == len(unwatched)
    assert sorted(r.rank for r in rows) == list(range(1, len(unwatched) + 1))
    assert sum(1 for r in rows if r.is_selected) == 2


def test_no_history_completes_with_zero_counts(session_factory, db, store):
    user = add_user(db)
    seed_catalog(db, store)

    result = _generate(session_factory, store, user)

    run = db.get(RecommendationRun, result.run_id)
    assert (run.status, run.candidate_count, run.selected_count) == ("completed", 0, 0)
    assert result.selections == []
    assert db.query(TasteProfile).count() == 0


def test_history_without_embeddings_completes_without_profile(session_factory, db, store):
    user = add_user(db)
    item = add_item(db, store, "Unindexed", [1, 0, 0], indexed=False)
    add_item(db, store, "Other", [1, 0, 0])
    watch(db, user, item)

    result = _generate(session_factory, store, user)

    run = db.get(RecommendationRun, result.run_id)
    assert (run.status, run.candidate_count) == ("completed", 0)
    assert db.query(TasteProfile).count() == 0


def test_everything_watched_completes_empty(session_factory, db, store):
    user = add_user(db)
    item = add_item(db, store, "Only", [1, 0, 0])
    watch(db, user, item)

    result = _generate(session_factory, store, user)
    run = db.get(RecommendationRun, result.run_id)
    assert (run.status, run.candidate_count, run.selected_count) == ("completed", 0, 0)
    # the profile is still refreshed
    assert db.query(TasteProfile).count() == 1


def test_include_watched_preference(session_factory, db, store):
    user, watched, _ = _seed_user(db, store, include_watched=True)
    result = _generate(session_factory, store, user, overrides={"selected_count": 3})
    assert watched[0].id in {c.item_id for c in result.selections}


def test_failure_finalizes_run_and_reraises(session_factory, db, store):
    user, watched, _ = _seed_user(db, store)
    store.fail_on_ids = {watched[0].id}

    with pytest.raises(ConnectionError):
        _generate(session_factory, store, user)

    db.expire_all()
    [run] = db.query(RecommendationRun).all()
    assert run.status == "failed"
    assert run.error_message == "embedding index unavailable"
    assert run.duration_ms is not None
    assert db.query(RecommendationCandidate).count() == 0


def test_stored_config_and_user_overrides(session_factory, db, store):
    user, _, _ = _seed_user(db, store, weight_overrides={"movie": {"selected_count": 4}})
    db.add(
        RecommendationConfig(
            media_type="movie",
            max_candidates=100,
            selected_count=1,
            recent_watch_limit=50,
            similarity_weight=0.4,
            novelty_weight=0.2,
            rating_weight=0.2,
            diversity_weight=0.2,
        )
    )
    db.commit()

    # user override (4) beats the stored row (1)
    result = _generate(session_factory, store, user, overrides=None)
    assert result.count == 4

    # caller overrides beat both
    result = _generate(session_factory, store, user, overrides={"selected_count": 3})
    assert result.count == 3


def test_selection_never_repeats_title_and_year(session_factory, db, store):
    user, _, _ = _seed_user(db, store)
    add_item(db, store, "thief", [0.95, 0.05, 0.01], genres=["Crime"], year=1981)

    result = _generate(session_factory, store, user, overrides={"selected_count": 10})
    keys = [c.title_key for c in result.selections]
    assert len(keys) == len(set(keys))


class _StubExplainer:
    def __init__(self, fail=False):
        self.fail = fail

    def explain(self, selected, evidence, history, catalog):
        if self.fail:
            raise RuntimeError("llm down")
        return {c.item_id: f"Because you liked {len(evidence[c.item_id])} titles" for c in selected}


def test_explanations_are_stored(session_factory, db, store):
    user, _, _ = _seed_user(db, store)
    result = _generate(session_factory, store, user, explainer=_StubExplainer())

    rows = db.query(RecommendationCandidate).filter_by(run_id=result.run_id, is_selected=True).all()
    assert all(r.ai_explanation == "Because you liked 3 titles" for r in rows)
    unselected = db.query(RecommendationCandidate).filter_by(run_id=result.run_id, is_selected=False).all()
    assert all(r.ai_explanation is None for r in unselected)


def test_explanation_failure_does_not_fail_run(session_factory, db, store):
    user, _, _ = _seed_user(db, store)
    result = _generate(session_factory, store, user, explainer=_StubExplainer(fail=True))

    run = db.get(RecommendationRun, result.run_id)
    assert run.status == "completed"
    assert run.selected_count == 2
    assert db.query(RecommendationEvidence).count() == 6


def test_selected_overviews_reach_the_explanation_prompt(session_factory, db, store):
    import json
    from types import SimpleNamespace

    from explanations import ExplanationGenerator

    user, _, unwatched = _seed_user(db, store)
    for item in unwatched:
        item.overview = f"Overview of {item.title}"
    db.commit()

    prompts = []

    def create(**kwargs):
        prompts.append(kwargs["messages"][1]["content"])
        payload = {"explanations": [{"index": 1, "explanation": "one"}, {"index": 2, "explanation": "two"}]}
        message = SimpleNamespace(content=json.dumps(payload))
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    explainer = ExplanationGenerator(client=client, enabled=True)

    result = _generate(session_factory, store, user, explainer=explainer)

    assert len(prompts) == 1
    assert "No overview available" not in prompts[0]
    for c in result.selections:
        assert f"Plot: Overview of {c.title}" in prompts[0]
