from __future__ import annotations

import itertools

import pytest

from engine.confidence import score_confidence
from engine.models import ProcessedQuery, QueryFilters, TrackCandidate, ValueRange


def _candidate(n, *, analyzed=False, bpm=None):
    track = TrackCandidate(youtube_id=f"vid{n:08d}", title=f"Track {n}")
    if analyzed:
        track.apply_analysis({"bpm": bpm})
    return track


def _query(bpm_range=None):
    return ProcessedQuery(intent="search", search_terms=("house",), filters=QueryFilters(bpm=bpm_range))


def test_zero_candidates_scores_exactly_zero() -> None:
    assert score_confidence(_query(ValueRange(120, 130)), []) == 0


def test_yield_term_is_capped() -> None:
    assert score_confidence(_query(), [_candidate(1)]) == pytest.approx(0.6)
    assert score_confidence(_query(), [_candidate(i) for i in range(3)]) == pytest.approx(0.8)
    assert score_confidence(_query(), [_candidate(i) for i in range(20)]) == pytest.approx(0.8)


def test_analysis_coverage_term() -> None:
    candidates = [_candidate(0, analyzed=True, bpm=100), _candidate(1)]
    # 0.5 + 0.2 + (1 / 2) * 0.2
    assert score_confidence(_query(), candidates) == pytest.approx(0.8)


def test_bpm_match_counts_only_analyzed_candidates() -> None:
    candidates = [
        _candidate(0, analyzed=True, bpm=124),
        _candidate(1, analyzed=True, bpm=90),
        _candidate(2),
        _candidate(3),
    ]
    # 0.5 + 0.3 + (2 / 4) * 0.2 + (1 / 2) * 0.2, clamped to 1.
    assert score_confidence(_query(ValueRange(120, 130)), candidates) == pytest.approx(1.0)

    single = [_candidate(0, analyzed=True, bpm=90)]
    # 0.5 + 0.1 + 0.2 + 0 matches
    assert score_confidence(_query(ValueRange(120, 130)), single) == pytest.approx(0.8)


def test_open_ended_bpm_range_uses_defaults() -> None:
    single = [_candidate(0, analyzed=True, bpm=150)]
    assert score_confidence(_query(ValueRange(min=140)), single) == pytest.approx(1.0)
    assert score_confidence(_query(ValueRange(max=100)), single) == pytest.approx(0.8)


def test_confidence_always_within_bounds() -> None:
    ranges = [None, ValueRange(0, 10), ValueRange(100, 140)]
    for count, analyzed, bpm_range in itertools.product(range(0, 13, 3), range(0, 13, 3), ranges):
        analyzed = min(analyzed, count)
        candidates = [
            _candidate(i, analyzed=i < analyzed, bpm=120 if i % 2 else 60) for i in range(count)
        ]
        score = score_confidence(_query(bpm_range), candidates)
        assert 0.0 <= score <= 1.0
        if count == 0:
            assert score == 0


def test_fallback_query_without_filters() -> None:
    candidates = [_candidate(0, analyzed=True, bpm=128)]
    assert score_confidence(ProcessedQuery.fallback("anything"), candidates) == pytest.approx(0.8)


def test_score_is_reported_to_four_decimal_places() -> None:
    candidates = [_candidate(i, analyzed=i == 0, bpm=120) for i in range(3)]
    assert score_confidence(_query(), candidates) == 0.8667
