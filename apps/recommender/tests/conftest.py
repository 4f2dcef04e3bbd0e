# apps/recommender/tests/conftest.py
import math
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "")
os.environ.setdefault("EXPLANATIONS_ENABLED", "false")

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import Base, Library, MediaItem, User, UserPreferences, WatchHistory
from progress import ProgressStore

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if na == 0 or nb == 0:
        return 0.0
    return dot / (na * nb)


class FakeEmbeddingStore:
    """Exact cosine search over an in-memory dict, same contract as the OpenSearch store."""

    def __init__(self):
        self.vectors: Dict[uuid.UUID, List[float]] = {}
        self.media_types: Dict[uuid.UUID, str] = {}
        self.libraries: Dict[uuid.UUID, Optional[str]] = {}
        self.fail_on_ids = set()
        # exact id sets whose lookup fails, e.g. one user's history
        self.fail_on_lookups = []
        self.knn_calls = []

    def add(self, item_id, vector, media_type="movie", library_id=None):
        self.vectors[item_id] = [float(x) for x in vector]
        self.media_types[item_id] = media_type
        self.libraries[item_id] = library_id

    def get_embedding(self, item_id):
        return self.vectors.get(item_id)

    def get_embeddings(self, item_ids):
        if self.fail_on_ids.intersection(item_ids) or set(item_ids) in self.fail_on_lookups:
            raise ConnectionError("embedding index unavailable")
        return {i: self.vectors[i] for i in item_ids if i in self.vectors}

    def nearest_neighbors(self, vector, *, limit, media_type=None, library_ids=None, item_ids=None):
        self.knn_calls.append({"limit": limit, "media_type": media_type, "library_ids": library_ids, "item_ids": item_ids})
        allowed = set(item_ids) if item_ids is not None else None
        scope = set(library_ids) if library_ids is not None else None
        hits = []
        for item_id, emb in self.vectors.items():
            if media_type and self.media_types[item_id] != media_type:
                continue
            if scope is not None and self.libraries[item_id] not in scope:
                continue
            if allowed is not None and item_id not in allowed:
                continue
            hits.append((item_id, _cosine(vector, emb)))
        hits.sort(key=lambda pair: pair[1], reverse=True)
        return hits[:limit]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store():
    return FakeEmbeddingStore()


@pytest.fixture
def redis_conn():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def progress(redis_conn):
    return ProgressStore(redis_conn)


def add_user(db, username="alice", *, enabled=True, include_watched=None, weight_overrides=None):
    user = User(id=uuid.uuid4(), username=username, is_enabled=enabled)
    db.add(user)
    if include_watched is not None or weight_overrides is not None:
        db.add(
            UserPreferences(
                user_id=user.id,
                include_watched=bool(include_watched),
                weight_overrides=weight_overrides,
            )
        )
    db.commit()
    return user


def add_item(
    db,
    store,
    title,
    vector,
    *,
    genres=("Drama",),
    rating=None,
    year=2000,
    media_type="movie",
    library_id=None,
    indexed=True,
):
    item = MediaItem(
        id=uuid.uuid4(),
        media_type=media_type,
        title=title,
        year=year,
        genres=list(genres),
        community_rating=rating,
        provider_library_id=library_id,
    )
    db.add(item)
    db.commit()
    if indexed:
        store.add(item.id, vector, media_type=media_type, library_id=library_id)
    return item


def add_library(db, library_id, *, enabled=True, media_type="movie"):
    db.add(Library(provider_library_id=library_id, name=library_id, media_type=media_type, is_enabled=enabled))
    db.commit()


def watch(db, user, item, *, play_count=1, favorite=False, days_ago=1):
    last_played = None if days_ago is None else NOW - timedelta(days=days_ago)
    db.add(
        WatchHistory(
            user_id=user.id,
            item_id=item.id,
            play_count=play_count,
            is_favorite=favorite,
            last_played_at=last_played,
        )
    )
    db.commit()


def seed_catalog(db, store):
    """Three watched-style items and six candidates spread around them."""
    watched = [
        add_item(db, store, "Heat", [1.0, 0.0, 0.0], genres=["Crime", "Drama"], rating=8.3, year=1995),
        add_item(db, store, "Ronin", [0.9, 0.1, 0.0], genres=["Action", "Crime"], rating=7.2, year=1998),
        add_item(db, store, "Collateral", [0.8, 0.2, 0.1], genres=["Crime", "Thriller"], rating=7.5, year=2004),
    ]
    unwatched = [
        add_item(db, store, "Thief", [0.95, 0.05, 0.0], genres=["Crime", "Drama"], rating=7.4, year=1981),
        add_item(db, store, "Drive", [0.7, 0.3, 0.2], genres=["Crime", "Drama"], rating=7.8, year=2011),
        add_item(db, store, "Sicario", [0.6, 0.2, 0.4], genres=["Action", "Thriller"], rating=7.6, year=2015),
        add_item(db, store, "Up", [0.0, 1.0, 0.0], genres=["Animation", "Family"], rating=8.3, year=2009),
        add_item(db, store, "Amelie", [0.1, 0.2, 1.0], genres=["Comedy", "Romance"], rating=8.3, year=2001),
        add_item(db, store, "Fargo", [0.5, 0.5, 0.5], genres=["Crime", "Comedy"], rating=8.1, year=1996),
    ]
    return watched, unwatched
