# apps/recommender/orchestrator.py
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from db import SessionLocal, transaction
from domain import GenerationResult, MEDIA_TYPES
from embedding_index import EmbeddingStore
from explanations import ExplanationGenerator
from models import User
from pipeline import generate_recommendations_for_user
from progress import ProgressStore
from runs import clear_all_recommendations, clear_user_recommendations

log = logging.getLogger("orchestrator")


class RecommendationOrchestrator:
    """
    Drives pipeline runs for one user or for every enabled user. Batch
    runs are sequential, report progress after each user, and check the
    job's cancel flag between users.
    """

    def __init__(
        self,
        store: EmbeddingStore,
        progress: ProgressStore,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        explainer: Optional[ExplanationGenerator] = None,
    ):
        self.store = store
        self.progress = progress
        self.session_factory = session_factory
        self.explainer = explainer

    def generate(
        self,
        user_id: UUID,
        *,
        media_type: str = "movie",
        weight_overrides: Optional[Mapping[str, Any]] = None,
        run_type: str = "manual",
    ) -> GenerationResult:
        return generate_recommendations_for_user(
            user_id,
            self.store,
            media_type=media_type,
            run_type=run_type,
            overrides=weight_overrides,
            explainer=self.explainer,
            session_factory=self.session_factory,
        )

    def regenerate(self, user_id: UUID, *, media_type: str = "movie") -> Dict[str, Any]:
        """Drop the user's previous runs and profile, then generate afresh."""
        with transaction(self.session_factory) as db:
            if db.get(User, user_id) is None:
                raise LookupError(f"user {user_id} not found")
            cleared = clear_user_recommendations(db, user_id, media_type)
        log.info("regenerate_cleared user_id=%s runs=%d", user_id, cleared)
        result = self.generate(user_id, media_type=media_type, run_type="manual")
        return {"run_id": result.run_id, "count": result.count}

    def _enabled_users(self) -> List[Tuple[UUID, str]]:
        db = self.session_factory()
        try:
            rows = (
                db.query(User.id, User.username)
                .filter(User.is_enabled.is_(True))
                .order_by(User.username.asc(), User.id.asc())
                .all()
            )
            return [(row.id, row.username) for row in rows]
        finally:
            db.close()

    def generate_for_all_users(
        self,
        job_id: Optional[str] = None,
        *,
        media_type: str = "movie",
        run_type: str = "scheduled",
    ) -> Dict[str, Any]:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"unknown media_type: {media_type!r}")
        job_id = job_id or str(uuid.uuid4())
        self.progress.start(job_id, f"generate-{media_type}-recommendations")
        try:
            summary = self._run_batch(job_id, media_type, run_type)
        except Exception as exc:
            log.exception("batch_failed job_id=%s", job_id)
            self.progress.fail(job_id, str(exc))
            raise
        return self._finish(job_id, summary)

    def clear_and_rebuild_all(
        self, job_id: Optional[str] = None, *, media_type: str = "movie"
    ) -> Dict[str, Any]:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"unknown media_type: {media_type!r}")
        job_id = job_id or str(uuid.uuid4())
        self.progress.start(
            job_id, f"rebuild-{media_type}-recommendations", total_steps=2
        )
        try:
            self.progress.set_step(job_id, 0, "Clearing existing recommendations")
            with transaction(self.session_factory) as db:
                cleared = clear_all_recommendations(db)
            self.progress.log(
                job_id, "info", f"Cleared {cleared} recommendation runs", {"cleared": cleared}
            )
            summary = self._run_batch(job_id, media_type, "rebuild", first_step=1)
        except Exception as exc:
            log.exception("rebuild_failed job_id=%s", job_id)
            self.progress.fail(job_id, str(exc))
            raise
        summary["cleared"] = cleared
        return self._finish(job_id, summary)

    def get_progress(self, job_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self.progress.get(job_id)
        if snapshot is None:
            return None
        return {
            **snapshot,
            "processed": snapshot.get("items_processed", 0),
            "total": snapshot.get("items_total", 0),
            "label": snapshot.get("current_item"),
        }

    def request_cancel(self, job_id: str) -> bool:
        return self.progress.request_cancel(job_id)

    def _finish(self, job_id: str, summary: Dict[str, Any]) -> Dict[str, Any]:
        summary["job_id"] = job_id
        result = {k: v for k, v in summary.items() if k != "cancelled"}
        if summary.get("cancelled"):
            self.progress.cancel(job_id, result)
        else:
            self.progress.complete(job_id, result)
        return summary

    def _run_batch(
        self,
        job_id: str,
        media_type: str,
        run_type: str,
        *,
        first_step: int = 0,
    ) -> Dict[str, Any]:
        self.progress.set_step(job_id, first_step, "Generating recommendations")

        users = self._enabled_users()
        total = len(users)
        self.progress.update_items(job_id, 0, total)
        self.progress.log(job_id, "info", f"Found {total} enabled users")

        success = 0
        failed = 0
        cancelled = False
        for index, (user_id, username) in enumerate(users):
            if self.progress.is_cancel_requested(job_id):
                cancelled = True
                self.progress.log(
                    job_id, "warn", f"Cancelled after {index} of {total} users"
                )
                break
            label = f"{username} ({index + 1}/{total})"
            self.progress.update_items(job_id, index, total, label)
            try:
                result = self.generate(user_id, media_type=media_type, run_type=run_type)
                success += 1
                self.progress.log(
                    job_id,
                    "info",
                    f"{username}: {result.count} recommendations",
                    {"user_id": str(user_id), "run_id": str(result.run_id)},
                )
            except Exception as exc:
                failed += 1
                log.warning("batch_user_failed job_id=%s user_id=%s: %s", job_id, user_id, exc)
                self.progress.log(
                    job_id,
                    "error",
                    f"{username}: {exc}",
                    {"user_id": str(user_id)},
                )
            self.progress.update_items(job_id, index + 1, total, label)

        self.progress.log(
            job_id, "info", f"Finished: {success} succeeded, {failed} failed"
        )
        return {"success": success, "failed": failed, "cancelled": cancelled}
