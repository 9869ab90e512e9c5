"""
Confidence scoring for strict visit candidates.

Score is 0-100, driven by two signals:
  - hit count: 40 base + 5.5 per ping, capped at 95 (diminishing past ~10 hits)
  - average distance: no penalty inside the tight inner radius, then a linear
    penalty reaching 20 points at the outer search radius
"""

from __future__ import annotations

from services.visits.backfill.models import ReconciliationSettings

HIT_SCORE_BASE = 40.0
HIT_SCORE_PER_PING = 5.5
HIT_SCORE_CAP = 95.0
MAX_DISTANCE_PENALTY = 20.0


def distance_penalty(avg_distance_m: float, settings: ReconciliationSettings) -> float:
    """Points deducted for pings averaging beyond the inner radius."""
    if avg_distance_m <= settings.min_radius_m:
        return 0.0
    span = settings.max_radius_m - settings.min_radius_m
    if span <= 0:
        return 0.0
    excess = avg_distance_m - settings.min_radius_m
    return min(MAX_DISTANCE_PENALTY, (excess / span) * MAX_DISTANCE_PENALTY)


def score_confidence(hit_count: int, avg_distance_m: float, settings: ReconciliationSettings) -> int:
    """Return a 0-100 confidence that ``hit_count`` pings represent a real visit."""
    hit_score = min(HIT_SCORE_CAP, HIT_SCORE_BASE + hit_count * HIT_SCORE_PER_PING)
    raw = hit_score - distance_penalty(avg_distance_m, settings)
    return max(0, min(100, round(raw)))
