# apps/recommender/retrieval.py
from __future__ import annotations

import logging
from typing import Collection, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from config import settings
from domain import Candidate
from embedding_index import EmbeddingStore
from history import load_catalog
from models import Library

log = logging.getLogger("retrieval")


def get_library_scope(db: Session, media_type: Optional[str] = None) -> Optional[List[str]]:
    """
    Enabled library ids, or None when no library is configured at all
    (then every item is eligible). An empty list means nothing is.
    """
    q = db.query(Library)
    if media_type:
        q = q.filter(Library.media_type == media_type)
    libraries = q.all()
    if not libraries:
        return None
    return [lib.provider_library_id for lib in libraries if lib.is_enabled]


def retrieve_candidates(
    db: Session,
    store: EmbeddingStore,
    taste_vector: Sequence[float],
    watched_ids: Collection[UUID],
    limit: int,
    *,
    include_watched: bool = False,
    media_type: Optional[str] = None,
    library_ids: Optional[Sequence[str]] = None,
) -> List[Candidate]:
    if limit <= 0:
        return []

    excluded = set() if include_watched else set(watched_ids)
    # the index cannot exclude an id list, so over-fetch and drop watched ids here
    wanted = limit + len(excluded)
    fetch = min(wanted, settings.knn_max_results)
    if fetch < wanted:
        log.warning("retrieval_fetch_clamped requested=%d max=%d", wanted, fetch)

    while True:
        neighbors = store.nearest_neighbors(
            taste_vector, limit=fetch, media_type=media_type, library_ids=library_ids
        )
        kept = [(item_id, sim) for item_id, sim in neighbors if item_id not in excluded]
        kept.sort(key=lambda pair: pair[1], reverse=True)

        # indexed items with no catalog row must not take a slot
        catalog = load_catalog(db, [item_id for item_id, _ in kept])
        missing = len(kept) - len(catalog)
        exhausted = len(neighbors) < fetch or fetch >= settings.knn_max_results
        if len(catalog) >= limit or missing == 0 or exhausted:
            break
        fetch = min(fetch + missing, settings.knn_max_results)

    candidates: List[Candidate] = []
    for item_id, similarity in kept:
        item = catalog.get(item_id)
        if item is None:
            continue
        candidates.append(
            Candidate(
                item_id=item.id,
                title=item.title,
                year=item.year,
                genres=list(item.genres),
                community_rating=item.community_rating,
                similarity=similarity,
            )
        )
        if len(candidates) >= limit:
            break

    log.info(
        "retrieval_done fetched=%d excluded=%d uncatalogued=%d returned=%d",
        len(neighbors),
        len(neighbors) - len(kept),
        missing,
        len(candidates),
    )
    return candidates
