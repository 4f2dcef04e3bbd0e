# apps/recommender/runs.py
from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import settings
from domain import Candidate, EvidenceRow, WatchedItem
from embedding_index import EmbeddingStore
from models import (
    RecommendationCandidate,
    RecommendationEvidence,
    RecommendationRun,
    TasteProfile,
)

log = logging.getLogger("recommendations.runs")


def create_run(
    db: Session, user_id: UUID, media_type: str, run_type: str = "scheduled"
) -> RecommendationRun:
    run = RecommendationRun(
        user_id=user_id,
        media_type=media_type,
        run_type=run_type,
        status="running",
    )
    db.add(run)
    db.flush()
    return run


def finalize_run(
    db: Session,
    run_id: UUID,
    *,
    status: str,
    candidate_count: int = 0,
    selected_count: int = 0,
    duration_ms: Optional[int] = None,
    error_message: Optional[str] = None,
) -> bool:
    """Move a running run to its terminal status. Returns False if already final."""
    if status not in ("completed", "failed"):
        raise ValueError(f"not a terminal run status: {status!r}")
    run = db.get(RecommendationRun, run_id)
    if run is None:
        raise LookupError(f"recommendation run {run_id} not found")
    if run.status != "running":
        log.warning(
            "run_already_finalized run_id=%s status=%s requested=%s",
            run_id,
            run.status,
            status,
        )
        return False
    run.status = status
    run.candidate_count = candidate_count
    run.selected_count = selected_count
    run.duration_ms = duration_ms
    run.error_message = error_message
    db.flush()
    return True


def evidence_type_for(item: WatchedItem) -> str:
    if item.is_favorite:
        return "favorite"
    if item.play_count > 1:
        return "highly_rated"
    return "watched"


def build_evidence(
    store: EmbeddingStore,
    selected: Sequence[Candidate],
    history: Sequence[WatchedItem],
    limit: Optional[int] = None,
) -> Dict[UUID, List[EvidenceRow]]:
    """For each selection, the closest watched items by embedding."""
    limit = settings.evidence_per_selection if limit is None else limit
    if not selected or not history or limit <= 0:
        return {}

    watched = {h.item_id: h for h in history}
    vectors = store.get_embeddings([c.item_id for c in selected])
    evidence: Dict[UUID, List[EvidenceRow]] = {}
    for candidate in selected:
        vector = vectors.get(candidate.item_id)
        if not vector:
            continue
        # one extra in case the candidate itself was watched
        neighbors = store.nearest_neighbors(
            vector, limit=limit + 1, item_ids=list(watched.keys())
        )
        rows = [
            EvidenceRow(
                similar_item_id=item_id,
                similarity=similarity,
                evidence_type=evidence_type_for(watched[item_id]),
            )
            for item_id, similarity in neighbors
            if item_id in watched and item_id != candidate.item_id
        ]
        evidence[candidate.item_id] = rows[:limit]
    return evidence


def store_candidates(
    db: Session,
    run_id: UUID,
    scored: Sequence[Candidate],
    selected: Sequence[Candidate],
    stored_limit: Optional[int] = None,
) -> Dict[UUID, RecommendationCandidate]:
    """
    Persist the top ``stored_limit`` scored candidates plus every selected
    candidate, each with its rank in the full scored list.
    """
    stored_limit = settings.stored_candidate_limit if stored_limit is None else stored_limit
    selected_rank = {c.item_id: i for i, c in enumerate(selected, start=1)}

    rows: Dict[UUID, RecommendationCandidate] = {}
    for rank, candidate in enumerate(scored, start=1):
        in_window = rank <= stored_limit
        if not in_window and candidate.item_id not in selected_rank:
            continue
        if candidate.item_id in rows:
            continue
        sel = selected_rank.get(candidate.item_id)
        row = RecommendationCandidate(
            run_id=run_id,
            item_id=candidate.item_id,
            rank=rank,
            is_selected=sel is not None,
            selected_rank=sel,
            final_score=candidate.final_score,
            similarity_score=candidate.similarity,
            novelty_score=candidate.novelty,
            rating_score=candidate.rating_score,
            diversity_score=candidate.diversity_score,
            score_breakdown=candidate.breakdown(),
        )
        db.add(row)
        rows[candidate.item_id] = row
    db.flush()
    return rows


def store_evidence(
    db: Session,
    candidate_rows: Mapping[UUID, RecommendationCandidate],
    evidence: Mapping[UUID, Sequence[EvidenceRow]],
) -> int:
    count = 0
    for item_id, items in evidence.items():
        row = candidate_rows.get(item_id)
        if row is None or not row.is_selected:
            continue
        for ev in items:
            db.add(
                RecommendationEvidence(
                    candidate_id=row.id,
                    similar_item_id=ev.similar_item_id,
                    similarity=ev.similarity,
                    evidence_type=ev.evidence_type,
                )
            )
            count += 1
    db.flush()
    return count


def store_explanations(
    db: Session,
    candidate_rows: Mapping[UUID, RecommendationCandidate],
    explanations: Mapping[UUID, str],
) -> int:
    count = 0
    for item_id, text in explanations.items():
        row = candidate_rows.get(item_id)
        if row is None or not text:
            continue
        row.ai_explanation = text
        count += 1
    db.flush()
    return count


def _delete_runs(db: Session, run_filter) -> int:
    run_ids = select(RecommendationRun.id).where(*run_filter)
    candidate_ids = select(RecommendationCandidate.id).where(
        RecommendationCandidate.run_id.in_(run_ids)
    )
    db.query(RecommendationEvidence).filter(
        RecommendationEvidence.candidate_id.in_(candidate_ids)
    ).delete(synchronize_session=False)
    db.query(RecommendationCandidate).filter(
        RecommendationCandidate.run_id.in_(run_ids)
    ).delete(synchronize_session=False)
    return db.query(RecommendationRun).filter(*run_filter).delete(
        synchronize_session=False
    )


def clear_user_recommendations(
    db: Session, user_id: UUID, media_type: Optional[str] = None
) -> int:
    """Delete a user's runs (with candidates and evidence) and taste profiles."""
    run_filter = [RecommendationRun.user_id == user_id]
    profile_q = db.query(TasteProfile).filter(TasteProfile.user_id == user_id)
    if media_type:
        run_filter.append(RecommendationRun.media_type == media_type)
        profile_q = profile_q.filter(TasteProfile.media_type == media_type)
    runs = _delete_runs(db, run_filter)
    profile_q.delete(synchronize_session=False)
    db.flush()
    return runs


def clear_all_recommendations(db: Session, media_type: Optional[str] = None) -> int:
    """
    Evidence, candidates, runs, then taste profiles, for every user. The
    caller owns the transaction so the four deletes commit or roll back
    together.
    """
    run_filter = []
    profile_q = db.query(TasteProfile)
    if media_type:
        run_filter.append(RecommendationRun.media_type == media_type)
        profile_q = profile_q.filter(TasteProfile.media_type == media_type)
    runs = _delete_runs(db, run_filter)
    profiles = profile_q.delete(synchronize_session=False)
    db.flush()
    log.info("recommendations_cleared runs=%d profiles=%d", runs, profiles)
    return runs


def latest_run(
    db: Session, user_id: UUID, media_type: str = "movie"
) -> Optional[RecommendationRun]:
    return (
        db.query(RecommendationRun)
        .filter(
            RecommendationRun.user_id == user_id,
            RecommendationRun.media_type == media_type,
            RecommendationRun.status == "completed",
        )
        .order_by(RecommendationRun.created_at.desc())
        .first()
    )


def latest_selections(
    db: Session, user_id: UUID, media_type: str = "movie"
) -> List[RecommendationCandidate]:
    run = latest_run(db, user_id, media_type)
    if run is None:
        return []
    return (
        db.query(RecommendationCandidate)
        .filter(
            RecommendationCandidate.run_id == run.id,
            RecommendationCandidate.is_selected.is_(True),
        )
        .order_by(RecommendationCandidate.selected_rank.asc())
        .all()
    )
