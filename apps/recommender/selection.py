# apps/recommender/selection.py
from __future__ import annotations

from typing import List, Sequence, Set

from domain import Candidate


def genre_diversity(genres: Sequence[str], claimed: Set[str]) -> float:
    if not genres:
        return 0.5
    overlap = sum(1 for g in genres if g in claimed)
    return 1.0 - overlap / max(len(genres), 1)


def select_diverse(
    scored: Sequence[Candidate], target_count: int, diversity_weight: float
) -> List[Candidate]:
    """
    Single greedy pass in score order. Each accepted candidate gets its
    diversity score added into ``final_score`` in place; candidates are not
    re-sorted afterwards. Same title and year is only taken once.
    """
    selected: List[Candidate] = []
    if target_count <= 0:
        return selected

    seen_titles: Set[str] = set()
    claimed_genres: Set[str] = set()
    for candidate in scored:
        if len(selected) >= target_count:
            break
        key = candidate.title_key
        if key in seen_titles:
            continue

        candidate.diversity_score = genre_diversity(candidate.genres, claimed_genres)
        candidate.final_score += candidate.diversity_score * diversity_weight

        selected.append(candidate)
        seen_titles.add(key)
        claimed_genres.update(candidate.genres)
    return selected
