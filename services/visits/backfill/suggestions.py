"""
"Consider also" suggestions: cross-tier evidence below the strict threshold.

A single ping close to a place is weak evidence (GPS noise), but combined
with a few pings slightly farther out, or with a user check-in, it is strong
enough to surface for manual confirmation. Suggestions are never committed
automatically.

A (place, date) qualifies when any of:
    checkin_count >= 1
    hits_tier1 >= tier1_hits
    hits_tier2 >= tier2_hits
    hits_tier3 >= tier3_hits
    hits_total >= suggestion_max_hits
    hits_tier1 >= 1 and hits_tier2 >= 2
    hits_tier2 >= 1 and hits_tier3 >= 3
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Iterable

from services.visits.backfill.dedupe import VisitKeyIndex
from services.visits.backfill.models import (
    ReconciliationSettings,
    TierHits,
    TripContext,
    VisitSuggestion,
)

logger = logging.getLogger(__name__)


def qualifies(hits: TierHits, settings: ReconciliationSettings) -> bool:
    return (
        hits.checkin_count >= 1
        or hits.hits_tier1 >= settings.tier1_hits
        or hits.hits_tier2 >= settings.tier2_hits
        or hits.hits_tier3 >= settings.tier3_hits
        or hits.hits_total >= settings.suggestion_max_hits
        or (hits.hits_tier1 >= 1 and hits.hits_tier2 >= 2)
        or (hits.hits_tier2 >= 1 and hits.hits_tier3 >= 3)
    )


def _meters(radius: float) -> str:
    return f"{radius:g}m"


def suggestion_reason(hits: TierHits, settings: ReconciliationSettings) -> str:
    """Most specific evidence first: check-in, cross-tier, single tier, generic."""
    r1 = _meters(settings.tier1_radius_m)
    r2 = _meters(settings.tier2_radius_m)
    r3 = _meters(settings.tier3_radius_m)

    if hits.has_user_checkin:
        return "User checked in nearby"
    if hits.hits_tier1 >= 1 and hits.hits_tier2 >= 2:
        return f"Cross-tier: {hits.hits_tier1} within {r1} + {hits.hits_tier2} within {r2}"
    if hits.hits_tier2 >= 1 and hits.hits_tier3 >= 3:
        return f"Cross-tier: {hits.hits_tier2} within {r2} + {hits.hits_tier3} within {r3}"
    if hits.hits_tier1 >= 1:
        plural = "s" if hits.hits_tier1 > 1 else ""
        return f"{hits.hits_tier1} ping{plural} within {r1}"
    if hits.hits_tier2 >= 2:
        return f"{hits.hits_tier2} pings within {r2}"
    if hits.hits_tier3 >= 3:
        return f"{hits.hits_tier3} pings within {r3}"
    return f"{hits.hits_total} pings within extended range"


def evaluate_suggestions(
    rows: Iterable[TierHits],
    *,
    trip: TripContext,
    settings: ReconciliationSettings,
    strict_keys: set[tuple[str, date]],
    existing: VisitKeyIndex,
) -> list[VisitSuggestion]:
    """
    Turn tier rows into suggestions, skipping anything already a strict
    candidate or an existing visit for the same (place, date).
    """
    places_by_id = trip.places_by_id
    suggestions: list[VisitSuggestion] = []

    for row in rows:
        place = places_by_id.get(row.place_id)
        if place is None or not place.has_coordinates:
            continue

        day = row.first_seen.date()
        if (place.id, day) in strict_keys or existing.contains(place.id, place.name, day):
            continue

        if not qualifies(row, settings):
            continue

        region = trip.region_for(place)
        if region is None:
            logger.warning(
                "Region %s not found for place %s, skipping suggestion",
                place.region_id,
                place.id,
            )
            continue

        suggestions.append(
            VisitSuggestion(
                place=place,
                region_name=region.name,
                visit_date=row.visit_date,
                first_seen=row.first_seen,
                last_seen=row.last_seen,
                min_distance_m=round(row.min_distance_m, 1),
                hits_tier1=row.hits_tier1,
                hits_tier2=row.hits_tier2,
                hits_tier3=row.hits_tier3,
                hits_total=row.hits_total,
                has_user_checkin=row.has_user_checkin,
                reason=suggestion_reason(row, settings),
            )
        )

    return suggestions
