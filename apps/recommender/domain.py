# apps/recommender/domain.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

MEDIA_TYPES = ("movie", "series")


def _check_media_type(media_type: str) -> None:
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"unknown media_type: {media_type!r}")


def _clean_rating(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    rating = float(value)
    if math.isnan(rating) or math.isinf(rating):
        return None
    return rating


def _clean_genres(genres) -> List[str]:
    return [str(g).strip() for g in (genres or []) if g and str(g).strip()]


@dataclass(frozen=True)
class WatchedItem:
    user_id: UUID
    item_id: UUID
    last_played_at: Optional[datetime]
    play_count: int
    is_favorite: bool

    def __post_init__(self) -> None:
        if self.play_count is None or self.play_count < 0:
            raise ValueError(f"play_count must be >= 0, got {self.play_count!r}")


@dataclass(frozen=True)
class CatalogItem:
    id: UUID
    title: str
    year: Optional[int]
    genres: List[str] = field(default_factory=list)
    community_rating: Optional[float] = None
    overview: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "title", (self.title or "").strip())
        object.__setattr__(self, "genres", _clean_genres(self.genres))
        object.__setattr__(self, "community_rating", _clean_rating(self.community_rating))


@dataclass
class Candidate:
    item_id: UUID
    title: str
    year: Optional[int]
    genres: List[str]
    community_rating: Optional[float]
    similarity: float
    novelty: float = 0.0
    rating_score: float = 0.0
    diversity_score: float = 0.0
    final_score: float = 0.0

    def __post_init__(self) -> None:
        self.title = (self.title or "").strip()
        self.genres = _clean_genres(self.genres)
        self.community_rating = _clean_rating(self.community_rating)
        self.similarity = float(self.similarity)

    @property
    def title_key(self) -> str:
        return f"{self.title.lower()}|{self.year or 'unknown'}"

    def breakdown(self) -> Dict[str, float]:
        return {
            "similarity": self.similarity,
            "novelty": self.novelty,
            "rating": self.rating_score,
            "diversity": self.diversity_score,
        }


@dataclass(frozen=True)
class ScoringWeights:
    similarity: float
    novelty: float
    rating: float

    def __post_init__(self) -> None:
        for name in ("similarity", "novelty", "rating"):
            value = getattr(self, name)
            if value is None or value < 0:
                raise ValueError(f"{name} weight must be >= 0, got {value!r}")


@dataclass(frozen=True)
class PipelineConfig:
    media_type: str
    max_candidates: int
    selected_count: int
    recent_watch_limit: int
    similarity_weight: float
    novelty_weight: float
    rating_weight: float
    diversity_weight: float

    def __post_init__(self) -> None:
        _check_media_type(self.media_type)
        for name in ("max_candidates", "selected_count", "recent_watch_limit"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1")
        for name in ("similarity_weight", "novelty_weight", "rating_weight", "diversity_weight"):
            if float(getattr(self, name)) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def weights(self) -> ScoringWeights:
        return ScoringWeights(
            similarity=self.similarity_weight,
            novelty=self.novelty_weight,
            rating=self.rating_weight,
        )


@dataclass(frozen=True)
class EvidenceRow:
    similar_item_id: UUID
    similarity: float
    evidence_type: str


@dataclass
class GenerationResult:
    run_id: UUID
    selections: List[Candidate]

    @property
    def count(self) -> int:
        return len(self.selections)
