# apps/recommender/tests/test_selection.py
import uuid

import pytest

from domain import Candidate
from selection import genre_diversity, select_diverse


def _c(title, genres, score, year=2000):
    c = Candidate(
        item_id=uuid.uuid4(),
        title=title,
        year=year,
        genres=list(genres),
        community_rating=None,
        similarity=score,
    )
    c.final_score = score
    return c


def test_duplicate_title_and_year_is_selected_once():
    scored = [
        _c("Heat", ["Crime"], 0.9, 1995),
        _c("HEAT ", ["Crime"], 0.8, 1995),
        _c("Heat", ["Crime"], 0.7, 1986),
        _c("Other", ["Drama"], 0.6),
    ]
    picked = select_diverse(scored, 10, 0.2)
    keys = [c.title_key for c in picked]
    assert len(keys) == len(set(keys))
    assert [c.year for c in picked[:2]] == [1995, 1986]
    assert len(picked) == 3


def test_missing_year_groups_as_unknown():
    scored = [_c("Heat", ["Crime"], 0.9, None), _c("heat", ["Crime"], 0.8, None)]
    assert len(select_diverse(scored, 5, 0.2)) == 1


def test_diversity_scores_against_claimed_genres():
    first = _c("A", ["Crime", "Drama"], 0.9)
    second = _c("B", ["Crime", "Comedy"], 0.8)
    third = _c("C", [], 0.7)
    picked = select_diverse([first, second, third], 3, 0.5)

    assert [c.diversity_score for c in picked] == pytest.approx([1.0, 0.5, 0.5])
    assert first.final_score == pytest.approx(0.9 + 0.5)
    assert second.final_score == pytest.approx(0.8 + 0.25)
    assert third.final_score == pytest.approx(0.7 + 0.25)


def test_order_is_preserved_after_adjustment():
    # the diversity bonus would flip these two if the list were re-sorted
    a = _c("A", ["Crime"], 0.80)
    b = _c("B", ["Crime"], 0.79)
    c = _c("C", ["Comedy"], 0.78)
    picked = select_diverse([a, b, c], 3, 1.0)
    assert [x.title for x in picked] == ["A", "B", "C"]
    assert c.final_score > b.final_score


def test_stops_at_target_count():
    scored = [_c(f"T{i}", ["Drama"], 1.0 - i * 0.01) for i in range(10)]
    picked = select_diverse(scored, 4, 0.2)
    assert [c.title for c in picked] == ["T0", "T1", "T2", "T3"]
    # candidates after the cut keep their scores
    assert scored[5].diversity_score == 0.0
    assert select_diverse(scored, 0, 0.2) == []


def test_genre_diversity_without_genres_is_neutral():
    assert genre_diversity([], {"Drama"}) == 0.5
    assert genre_diversity(["Drama"], set()) == 1.0
