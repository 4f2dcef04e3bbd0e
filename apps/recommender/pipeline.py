# apps/recommender/pipeline.py
from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from config import settings
from db import SessionLocal, transaction
from domain import GenerationResult
from embedding_index import EmbeddingStore
from explanations import ExplanationGenerator
from history import load_catalog, load_history, load_watched_ids
from rec_config import include_watched_for, load_pipeline_config
from retrieval import get_library_scope, retrieve_candidates
from runs import (
    build_evidence,
    create_run,
    finalize_run,
    store_candidates,
    store_evidence,
    store_explanations,
)
from scoring import score_candidates
from selection import select_diverse
from taste import build_taste_profile, store_taste_profile

log = logging.getLogger("recommendations")

SessionFactory = Callable[[], Session]


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def _step(user_id: UUID, step: str, **fields: Any) -> None:
    log.info(json.dumps({"user_id": str(user_id), "step": step, **fields}, default=str))


def generate_recommendations_for_user(
    user_id: UUID,
    store: EmbeddingStore,
    *,
    media_type: str = "movie",
    run_type: str = "scheduled",
    overrides: Optional[Mapping[str, Any]] = None,
    explainer: Optional[ExplanationGenerator] = None,
    session_factory: SessionFactory = SessionLocal,
) -> GenerationResult:
    """
    Run the whole pipeline for one user and media type. The run row is
    always finalized: ``completed`` (possibly with zero counts) or
    ``failed``, in which case the exception is re-raised.
    """
    t0 = time.monotonic()
    with transaction(session_factory) as db:
        run_id = create_run(db, user_id, media_type, run_type).id

    db = session_factory()
    try:
        return _run(db, run_id, user_id, store, media_type, overrides, explainer, t0)
    except Exception as exc:
        db.rollback()
        log.exception("recommendations_failed user_id=%s run_id=%s", user_id, run_id)
        with transaction(session_factory) as fdb:
            finalize_run(
                fdb,
                run_id,
                status="failed",
                duration_ms=_elapsed_ms(t0),
                error_message=str(exc),
            )
        raise
    finally:
        db.close()


def _finish_empty(db: Session, run_id: UUID, t0: float) -> GenerationResult:
    finalize_run(db, run_id, status="completed", duration_ms=_elapsed_ms(t0))
    db.commit()
    return GenerationResult(run_id=run_id, selections=[])


def _run(
    db: Session,
    run_id: UUID,
    user_id: UUID,
    store: EmbeddingStore,
    media_type: str,
    overrides: Optional[Mapping[str, Any]],
    explainer: Optional[ExplanationGenerator],
    t0: float,
) -> GenerationResult:
    cfg = load_pipeline_config(db, media_type, user_id=user_id, overrides=overrides)

    history = load_history(db, user_id, cfg.recent_watch_limit, media_type)
    if not history:
        log.info("recommendations_no_history user_id=%s media_type=%s", user_id, media_type)
        return _finish_empty(db, run_id, t0)

    history_ids = [h.item_id for h in history]
    embeddings = store.get_embeddings(history_ids)
    catalog = load_catalog(db, history_ids)
    ratings = {item_id: item.community_rating for item_id, item in catalog.items()}

    taste_vector = build_taste_profile(history, embeddings, ratings)
    if taste_vector is None:
        log.info("recommendations_no_embeddings user_id=%s history=%d", user_id, len(history))
        return _finish_empty(db, run_id, t0)
    embedded = sum(1 for item_id in history_ids if embeddings.get(item_id))
    store_taste_profile(db, user_id, media_type, taste_vector, embedded)
    _step(user_id, "taste_profile", history=len(history), embedded=embedded)

    include_watched = include_watched_for(db, user_id)
    watched_ids = set() if include_watched else load_watched_ids(db, user_id, media_type)
    scope = get_library_scope(db, media_type)

    candidates = retrieve_candidates(
        db,
        store,
        taste_vector,
        watched_ids,
        cfg.max_candidates,
        include_watched=include_watched,
        media_type=media_type,
        library_ids=scope,
    )
    _step(user_id, "retrieve", candidates=len(candidates), excluded=len(watched_ids))
    if not candidates:
        log.info("recommendations_no_candidates user_id=%s", user_id)
        return _finish_empty(db, run_id, t0)

    recent_genres = [
        catalog[item_id].genres
        for item_id in history_ids[: settings.genre_history_window]
        if item_id in catalog
    ]
    scored = score_candidates(candidates, recent_genres, cfg.weights)
    selected = select_diverse(scored, cfg.selected_count, cfg.diversity_weight)
    evidence = build_evidence(store, selected, history)

    rows = store_candidates(db, run_id, scored, selected)
    evidence_count = store_evidence(db, rows, evidence)
    db.commit()
    _step(
        user_id,
        "persist",
        stored=len(rows),
        selected=len(selected),
        evidence=evidence_count,
    )

    if explainer is not None and selected:
        try:
            # selections are usually unwatched, so their overviews are loaded here
            missing = [c.item_id for c in selected if c.item_id not in catalog]
            catalog.update(load_catalog(db, missing))
            texts = explainer.explain(selected, evidence, history, catalog)
            store_explanations(db, rows, texts)
            db.commit()
        except Exception:
            db.rollback()
            log.exception("recommendations_explanations_failed user_id=%s", user_id)

    finalize_run(
        db,
        run_id,
        status="completed",
        candidate_count=len(scored),
        selected_count=len(selected),
        duration_ms=_elapsed_ms(t0),
    )
    db.commit()
    _step(user_id, "finalize", run_id=run_id, duration_ms=_elapsed_ms(t0))
    return GenerationResult(run_id=run_id, selections=selected)
