# apps/recommender/taste.py
from __future__ import annotations

import logging
import math
from typing import List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from domain import WatchedItem
from models import TasteProfile

log = logging.getLogger("taste")

POSITION_DECAY = 0.3
PLAY_COUNT_BOOST = 0.4
RATING_BOOST_THRESHOLD = 7.5
RATING_BOOST_PER_POINT = 0.05
WEIGHT_CAP_MULTIPLIER = 3.0


def favorite_boost(favorite_count: int) -> float:
    if favorite_count > 20:
        return 1.3
    if favorite_count > 10:
        return 1.5
    return 1.8


def item_weight(
    index: int,
    total: int,
    item: WatchedItem,
    *,
    max_play_count: int,
    favorite_count: int,
    community_rating: Optional[float],
) -> float:
    # 1.0 for the head of the (already sorted) history down to 0.7 at the tail
    weight = 1.0 - (index / total) * POSITION_DECAY

    if item.play_count > 1:
        normalized = math.log2(item.play_count + 1) / math.log2(max_play_count + 1)
        weight *= 1.0 + normalized * PLAY_COUNT_BOOST

    if item.is_favorite:
        weight *= favorite_boost(favorite_count)

    # 7.5 -> +2.5%, 10 -> +15%
    if community_rating is not None and community_rating >= RATING_BOOST_THRESHOLD:
        weight *= 1.0 + (min(community_rating, 10.0) - 7.0) * RATING_BOOST_PER_POINT

    return weight


def taste_weights(
    history: Sequence[WatchedItem],
    embedding_by_item: Mapping[UUID, Sequence[float]],
    ratings: Optional[Mapping[UUID, Optional[float]]] = None,
) -> List[Tuple[UUID, float]]:
    """Raw per-item weights for history entries that have an embedding."""
    if not history:
        return []
    ratings = ratings or {}
    total = len(history)
    max_play_count = max([h.play_count for h in history] + [1])
    favorite_count = sum(1 for h in history if h.is_favorite)

    weighted: List[Tuple[UUID, float]] = []
    for index, item in enumerate(history):
        if not embedding_by_item.get(item.item_id):
            continue
        weighted.append(
            (
                item.item_id,
                item_weight(
                    index,
                    total,
                    item,
                    max_play_count=max_play_count,
                    favorite_count=favorite_count,
                    community_rating=ratings.get(item.item_id),
                ),
            )
        )
    return weighted


def cap_weights(weights: Sequence[float]) -> List[float]:
    """Clamp every weight to 3x the mean so one item cannot dominate."""
    if not weights:
        return []
    cap = (sum(weights) / len(weights)) * WEIGHT_CAP_MULTIPLIER
    return [min(w, cap) for w in weights]


def average_embeddings(
    vectors: Sequence[Sequence[float]], weights: Sequence[float]
) -> Optional[List[float]]:
    if not vectors or len(vectors) != len(weights):
        return None

    expected_dim = len(vectors[0])
    accumulator = [0.0] * expected_dim
    weight_sum = 0.0
    for vector, weight in zip(vectors, weights):
        if len(vector) != expected_dim:
            log.debug(
                "taste_skip_vector_dim_mismatch expected=%d actual=%d",
                expected_dim,
                len(vector),
            )
            continue
        if weight <= 0:
            continue
        for idx, value in enumerate(vector):
            accumulator[idx] += weight * float(value)
        weight_sum += weight

    if weight_sum <= 0:
        return None

    avg_vector = [value / weight_sum for value in accumulator]
    norm = math.sqrt(sum(value * value for value in avg_vector))
    if norm <= 0:
        return None
    return [value / norm for value in avg_vector]


def build_taste_profile(
    history: Sequence[WatchedItem],
    embedding_by_item: Mapping[UUID, Sequence[float]],
    ratings: Optional[Mapping[UUID, Optional[float]]] = None,
) -> Optional[List[float]]:
    """
    Weighted, unit-length average of the watched items' embeddings.
    Returns None when no history entry resolves to an embedding.
    """
    weighted = taste_weights(history, embedding_by_item, ratings)
    if not weighted:
        return None

    raw = [weight for _item_id, weight in weighted]
    capped = cap_weights(raw)
    log.debug(
        "taste_weights items=%d favorites=%d mean=%.3f top=%s",
        len(weighted),
        sum(1 for h in history if h.is_favorite),
        sum(raw) / len(raw),
        [round(w, 2) for w in capped[:5]],
    )
    vectors = [embedding_by_item[item_id] for item_id, _weight in weighted]
    return average_embeddings(vectors, capped)


def store_taste_profile(
    db: Session,
    user_id: UUID,
    media_type: str,
    embedding: Sequence[float],
    item_count: int,
) -> None:
    existing = db.get(TasteProfile, (user_id, media_type))
    if existing:
        existing.embedding = [float(x) for x in embedding]
        existing.item_count = item_count
    else:
        db.add(
            TasteProfile(
                user_id=user_id,
                media_type=media_type,
                embedding=[float(x) for x in embedding],
                item_count=item_count,
            )
        )
    db.flush()


def get_taste_profile(db: Session, user_id: UUID, media_type: str) -> Optional[List[float]]:
    row = db.get(TasteProfile, (user_id, media_type))
    if not row or not row.embedding:
        return None
    return [float(x) for x in row.embedding]
