"""
Stale visit detection.

A committed visit is stale when its backing place is gone or has moved:

  place_id is NULL                       -> "Place was deleted"
  place_id not among the trip's places   -> "Place no longer exists"
  snapshot vs current location > max_radius_m
                                         -> "Place was moved" (+ distance)
  otherwise                              -> unchanged

Distances are computed in-process with haversine because both points are
in-memory snapshots, not rows in the spatial index.
"""

from __future__ import annotations

from typing import Iterable

from services.visits.backfill.geo import haversine_m
from services.visits.backfill.models import (
    PlaceRef,
    ReconciliationSettings,
    StaleVisit,
    VisitRecord,
)

REASON_DELETED = "Place was deleted"
REASON_MISSING = "Place no longer exists"
REASON_MOVED = "Place was moved"


def classify_visit(
    visit: VisitRecord,
    places_by_id: dict[str, PlaceRef],
    settings: ReconciliationSettings,
) -> StaleVisit | None:
    """Return a StaleVisit, or None when the visit is unchanged."""
    if visit.place_id is None:
        return StaleVisit(visit=visit, reason=REASON_DELETED)

    place = places_by_id.get(visit.place_id)
    if place is None:
        return StaleVisit(visit=visit, reason=REASON_MISSING)

    if visit.has_location_snapshot and place.has_coordinates:
        distance = haversine_m(
            visit.place_latitude_snapshot,
            visit.place_longitude_snapshot,
            place.latitude,
            place.longitude,
        )
        if distance > settings.max_radius_m:
            return StaleVisit(visit=visit, reason=REASON_MOVED, distance_m=round(distance, 1))

    return None


def detect_stale_visits(
    visits: Iterable[VisitRecord],
    current_places: Iterable[PlaceRef],
    settings: ReconciliationSettings,
) -> tuple[list[StaleVisit], list[VisitRecord]]:
    """
    Split visits into (stale, unchanged).

    ``current_places`` must be every place in the trip, not only those with
    coordinates, or visits to coordinate-less places would read as missing.
    """
    places_by_id = {p.id: p for p in current_places}
    stale: list[StaleVisit] = []
    unchanged: list[VisitRecord] = []
    for visit in visits:
        result = classify_visit(visit, places_by_id, settings)
        if result is None:
            unchanged.append(visit)
        else:
            stale.append(result)
    return stale, unchanged
