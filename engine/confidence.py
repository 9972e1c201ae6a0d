"""Deterministic confidence score for a finished pipeline run."""

from __future__ import annotations

from typing import Sequence

from engine.models import ProcessedQuery, TrackCandidate

BASE_SCORE = 0.5
YIELD_CAP = 0.3
COVERAGE_WEIGHT = 0.2
BPM_MATCH_WEIGHT = 0.2

BPM_DEFAULT_MIN = 0.0
BPM_DEFAULT_MAX = 200.0


def score_confidence(
    processed_query: ProcessedQuery | None,
    candidates: Sequence[TrackCandidate],
) -> float:
    total = len(candidates)
    if total == 0:
        return 0.0

    score = BASE_SCORE + min(total / 10.0, YIELD_CAP)

    analyzed = [c for c in candidates if c.is_analyzed]
    if analyzed:
        score += (len(analyzed) / total) * COVERAGE_WEIGHT

    bpm_range = processed_query.filters.bpm if processed_query is not None else None
    if bpm_range is not None and analyzed:
        matching = sum(
            1
            for c in analyzed
            if c.bpm is not None
            and bpm_range.contains(c.bpm, default_min=BPM_DEFAULT_MIN, default_max=BPM_DEFAULT_MAX)
        )
        score += (matching / len(analyzed)) * BPM_MATCH_WEIGHT

    return round(max(0.0, min(1.0, score)), 4)
