# apps/recommender/rec_config.py
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from config import settings
from domain import PipelineConfig, MEDIA_TYPES
from models import RecommendationConfig, UserPreferences

log = logging.getLogger("recommendations.config")

TUNING_FIELDS = (
    "max_candidates",
    "selected_count",
    "recent_watch_limit",
    "similarity_weight",
    "novelty_weight",
    "rating_weight",
    "diversity_weight",
)


def _defaults(media_type: str) -> Dict[str, Any]:
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"unknown media_type: {media_type!r}")
    return dict(settings.media_defaults[media_type])


def _apply(values: Dict[str, Any], overrides: Optional[Mapping[str, Any]]) -> None:
    for key, value in (overrides or {}).items():
        if key in TUNING_FIELDS and value is not None:
            values[key] = value


def _stored_values(db: Session, media_type: str) -> Optional[Dict[str, Any]]:
    try:
        row = db.get(RecommendationConfig, media_type)
    except Exception as exc:
        log.warning("recommendation_config_load_failed media_type=%s: %s", media_type, exc)
        db.rollback()
        return None
    if not row:
        return None
    return {name: getattr(row, name) for name in TUNING_FIELDS}


def user_weight_overrides(
    db: Session, user_id: UUID, media_type: str
) -> Dict[str, Any]:
    prefs = db.get(UserPreferences, user_id)
    if not prefs or not isinstance(prefs.weight_overrides, dict):
        return {}
    by_type = prefs.weight_overrides.get(media_type)
    return dict(by_type) if isinstance(by_type, dict) else {}


def include_watched_for(db: Session, user_id: UUID) -> bool:
    prefs = db.get(UserPreferences, user_id)
    return bool(prefs.include_watched) if prefs else False


def load_pipeline_config(
    db: Session,
    media_type: str = "movie",
    *,
    user_id: Optional[UUID] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> PipelineConfig:
    """
    Resolve tuning for one run: env defaults, then the stored row for the
    media type, then the user's per-media-type overrides, then ``overrides``.
    """
    values = _defaults(media_type)
    _apply(values, _stored_values(db, media_type))
    if user_id is not None:
        _apply(values, user_weight_overrides(db, user_id, media_type))
    _apply(values, overrides)
    return PipelineConfig(
        media_type=media_type,
        max_candidates=int(values["max_candidates"]),
        selected_count=int(values["selected_count"]),
        recent_watch_limit=int(values["recent_watch_limit"]),
        similarity_weight=float(values["similarity_weight"]),
        novelty_weight=float(values["novelty_weight"]),
        rating_weight=float(values["rating_weight"]),
        diversity_weight=float(values["diversity_weight"]),
    )
