# apps/recommender/scoring.py
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from domain import Candidate, ScoringWeights

log = logging.getLogger("recommendations.scoring")

NOVELTY_HIGH_RATIO = 0.7
PREFERENCE_SCALE = 0.3
PREFERENCE_CAP = 0.15


def genre_preferences(genre_lists: Iterable[Sequence[str]]) -> Dict[str, float]:
    """Share of each genre across the given items' genre lists."""
    counts: Counter = Counter()
    for genres in genre_lists:
        for genre in genres or []:
            counts[genre] += 1
    total = sum(counts.values())
    if total == 0:
        return {}
    return {genre: count / total for genre, count in counts.items()}


def novelty_score(genres: Sequence[str], preferences: Mapping[str, float]) -> float:
    if not genres:
        return 0.4
    novel = sum(1 for g in genres if g not in preferences)
    ratio = novel / len(genres)
    if ratio == 0:
        return 0.4
    if ratio >= NOVELTY_HIGH_RATIO:
        return 0.3
    return 0.5 + ratio * 0.5


def rating_score(rating: Optional[float]) -> float:
    if rating is None:
        return 0.5
    if rating >= 8:
        return min(1.0, 0.8 + (rating - 8) * 0.1)
    if rating >= 7:
        return 0.6 + (rating - 7) * 0.2
    if rating >= 6:
        return 0.4 + (rating - 6) * 0.2
    return max(0.0, rating / 15)


def preference_bonus(genres: Sequence[str], preferences: Mapping[str, float]) -> float:
    total = sum(preferences.get(g, 0.0) for g in genres)
    return min(total * PREFERENCE_SCALE, PREFERENCE_CAP)


def score_candidates(
    candidates: List[Candidate],
    recent_genres: Iterable[Sequence[str]],
    weights: ScoringWeights,
) -> List[Candidate]:
    """
    Fill in novelty, rating and final scores and return the candidates
    sorted by final score, best first. ``recent_genres`` is the genre list
    of each recent history item.
    """
    preferences = genre_preferences(recent_genres)
    for c in candidates:
        c.novelty = novelty_score(c.genres, preferences)
        c.rating_score = rating_score(c.community_rating)
        c.final_score = (
            c.similarity * weights.similarity
            + c.novelty * weights.novelty
            + c.rating_score * weights.rating
            + preference_bonus(c.genres, preferences)
        )
    # stable sort keeps retrieval order on ties
    ranked = sorted(candidates, key=lambda c: c.final_score, reverse=True)
    if ranked:
        log.debug(
            "scoring_done candidates=%d genres=%d top=%.4f",
            len(ranked),
            len(preferences),
            ranked[0].final_score,
        )
    return ranked
