# apps/recommender/history.py
from __future__ import annotations

from typing import Dict, List, Sequence, Set
from uuid import UUID

from sqlalchemy.orm import Session

from domain import CatalogItem, WatchedItem
from models import MediaItem, WatchHistory


def load_history(
    db: Session, user_id: UUID, limit: int, media_type: str = "movie"
) -> List[WatchedItem]:
    """
    Favorites first, then most re-watched, then most recent, so the
    strongest taste signals survive truncation to ``limit``.
    """
    rows = (
        db.query(WatchHistory)
        .join(MediaItem, WatchHistory.item_id == MediaItem.id)
        .filter(WatchHistory.user_id == user_id, MediaItem.media_type == media_type)
        .order_by(
            WatchHistory.is_favorite.desc(),
            WatchHistory.play_count.desc(),
            WatchHistory.last_played_at.desc().nulls_last(),
        )
        .limit(max(1, int(limit)))
        .all()
    )
    return [
        WatchedItem(
            user_id=row.user_id,
            item_id=row.item_id,
            last_played_at=row.last_played_at,
            play_count=int(row.play_count or 0),
            is_favorite=bool(row.is_favorite),
        )
        for row in rows
    ]


def load_watched_ids(db: Session, user_id: UUID, media_type: str = "movie") -> Set[UUID]:
    rows = (
        db.query(WatchHistory.item_id)
        .join(MediaItem, WatchHistory.item_id == MediaItem.id)
        .filter(WatchHistory.user_id == user_id, MediaItem.media_type == media_type)
        .all()
    )
    return {item_id for (item_id,) in rows}


def load_catalog(db: Session, item_ids: Sequence[UUID]) -> Dict[UUID, CatalogItem]:
    if not item_ids:
        return {}
    rows = db.query(MediaItem).filter(MediaItem.id.in_(list(set(item_ids)))).all()
    return {
        row.id: CatalogItem(
            id=row.id,
            title=row.title,
            year=row.year,
            genres=list(row.genres or []),
            community_rating=row.community_rating,
            overview=row.overview,
        )
        for row in rows
    }
