# apps/recommender/models.py
import uuid
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

# Naming convention helps Alembic autogenerate predictable constraint names
naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=naming_convention)
Base = declarative_base(metadata=metadata)

# JSONB on Postgres, plain JSON elsewhere (tests run on SQLite)
JSONType = JSONB().with_variant(JSON(), "sqlite")

RUN_STATUSES = ("running", "completed", "failed")
RUN_TYPES = ("scheduled", "manual", "rebuild")
EVIDENCE_TYPES = ("favorite", "highly_rated", "watched")


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    username = Column(String, nullable=False)
    provider_user_id = Column(String, nullable=True)  # media server user id
    is_enabled = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class UserPreferences(Base):
    __tablename__ = "user_preferences"

    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, nullable=False
    )
    include_watched = Column(Boolean, nullable=False, default=False, server_default="false")
    # {"movie": {"similarity_weight": 0.5, ...}, "series": {...}}
    weight_overrides = Column(JSONType, nullable=True)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class Library(Base):
    """Media-server library; rows here switch on access scoping."""

    __tablename__ = "libraries"

    provider_library_id = Column(String, primary_key=True, nullable=False)
    name = Column(String, nullable=False, default="", server_default="")
    media_type = Column(String, nullable=False, default="movie", server_default="movie")
    is_enabled = Column(Boolean, nullable=False, default=True, server_default="true")


class MediaItem(Base):
    __tablename__ = "media_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    media_type = Column(String, nullable=False)  # movie | series
    title = Column(String, nullable=False)
    year = Column(Integer, nullable=True)
    genres = Column(JSONType, nullable=True)  # list[str]
    community_rating = Column(Float, nullable=True)
    overview = Column(Text, nullable=True)
    provider_library_id = Column(String, nullable=True)

    __table_args__ = (Index("ix_media_items_media_type", "media_type"),)


class WatchHistory(Base):
    __tablename__ = "watch_history"

    user_id = Column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )
    item_id = Column(
        Uuid,
        ForeignKey("media_items.id", ondelete="CASCADE"),
        primary_key=True,
        nullable=False,
    )

    last_played_at = Column(DateTime(timezone=True), nullable=True)
    play_count = Column(Integer, nullable=False, default=0, server_default="0")
    is_favorite = Column(Boolean, nullable=False, default=False, server_default="false")

    __table_args__ = (
        Index("ix_watch_history_user_lastplayed", "user_id", "last_played_at"),
    )


class TasteProfile(Base):
    __tablename__ = "taste_profiles"

    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, nullable=False
    )
    media_type = Column(String, primary_key=True, nullable=False)
    embedding = Column(JSONType, nullable=False)  # list[float]
    item_count = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RecommendationConfig(Base):
    __tablename__ = "recommendation_config"

    media_type = Column(String, primary_key=True, nullable=False)
    max_candidates = Column(Integer, nullable=False)
    selected_count = Column(Integer, nullable=False)
    recent_watch_limit = Column(Integer, nullable=False)
    similarity_weight = Column(Float, nullable=False)
    novelty_weight = Column(Float, nullable=False)
    rating_weight = Column(Float, nullable=False)
    diversity_weight = Column(Float, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class RecommendationRun(Base):
    __tablename__ = "recommendation_runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    user_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    media_type = Column(String, nullable=False, default="movie", server_default="movie")
    run_type = Column(String, nullable=False, default="scheduled", server_default="scheduled")
    status = Column(
        String, nullable=False, default="running", server_default="running"
    )  # running|completed|failed
    candidate_count = Column(Integer, nullable=False, default=0, server_default="0")
    selected_count = Column(Integer, nullable=False, default=0, server_default="0")
    duration_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    candidates = relationship(
        "RecommendationCandidate", back_populates="run", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_recommendation_runs_user_created", "user_id", "created_at"),
    )


class RecommendationCandidate(Base):
    __tablename__ = "recommendation_candidates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    run_id = Column(
        Uuid, ForeignKey("recommendation_runs.id", ondelete="CASCADE"), nullable=False
    )
    item_id = Column(
        Uuid, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False
    )
    rank = Column(Integer, nullable=False)  # position in the full scored list
    is_selected = Column(Boolean, nullable=False, default=False, server_default="false")
    selected_rank = Column(Integer, nullable=True)
    final_score = Column(Float, nullable=False)
    similarity_score = Column(Float, nullable=False)
    novelty_score = Column(Float, nullable=False)
    rating_score = Column(Float, nullable=False)
    diversity_score = Column(Float, nullable=False)
    score_breakdown = Column(JSONType, nullable=True)
    ai_explanation = Column(Text, nullable=True)

    run = relationship("RecommendationRun", back_populates="candidates")
    evidence = relationship(
        "RecommendationEvidence", back_populates="candidate", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("run_id", "item_id"),
        Index("ix_recommendation_candidates_run_selected", "run_id", "is_selected"),
    )


class RecommendationEvidence(Base):
    __tablename__ = "recommendation_evidence"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4, nullable=False)
    candidate_id = Column(
        Uuid,
        ForeignKey("recommendation_candidates.id", ondelete="CASCADE"),
        nullable=False,
    )
    similar_item_id = Column(
        Uuid, ForeignKey("media_items.id", ondelete="CASCADE"), nullable=False
    )
    similarity = Column(Float, nullable=False)
    evidence_type = Column(String, nullable=False)  # favorite|highly_rated|watched

    candidate = relationship("RecommendationCandidate", back_populates="evidence")

    __table_args__ = (
        Index("ix_recommendation_evidence_candidate", "candidate_id"),
    )
