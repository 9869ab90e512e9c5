"""
VisitBackfillService: reconciles a trip's places against location history.

Preview flow (read-only):
  1. Load the trip (owner-scoped) and its committed visits. Visits are
     scoped by place membership OR trip snapshot.
  2. Places with coordinates go through the strict candidate finder
     (batched or per-place, chosen by place count) and are scored inline.
  3. Candidates matching an existing visit key are dropped.
  4. Tier statistics out to the suggestion ceiling produce "consider also"
     suggestions, excluding strict matches and existing visits.
  5. Existing visits are classified as stale or unchanged.

Apply commits approved items (see applier.py). Clear deletes every visit
whose trip snapshot is the trip. Info returns cheap size estimates so the
client can show progress before a long preview.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from services.visits.backfill.applier import ReconciliationApplier
from services.visits.backfill.candidates import (
    BATCH_CHUNK_SIZE,
    iter_chunks,
    select_candidate_finder,
)
from services.visits.backfill.dedupe import VisitKeyIndex
from services.visits.backfill.errors import TripNotFoundError
from services.visits.backfill.models import (
    ApplyRequest,
    ApplyResult,
    BackfillInfo,
    BackfillReport,
    DateRange,
    PlaceDateHits,
    PlaceRef,
    ReconciliationSettings,
    TierHits,
    TripContext,
    VisitCandidate,
)
from services.visits.backfill.scoring import score_confidence
from services.visits.backfill.spatial import PostgisLocationStore
from services.visits.backfill.stale import detect_stale_visits
from services.visits.backfill.store import SqlVisitStore, TripStore
from services.visits.backfill.suggestions import evaluate_suggestions

logger = logging.getLogger(__name__)


def estimate_seconds(place_count: int, location_count: int) -> int:
    """Rough preview duration: fixed overhead + per place + per 100 pings, in ms."""
    estimated_ms = 50 + 2 * place_count + location_count / 100
    return max(1, math.ceil(estimated_ms / 1000))


class VisitBackfillService:
    """
    Injected dependencies for testability:
      trips - TripStore-like (load_trip, trip_exists)
      visits - SqlVisitStore-like (visits_for_trip, atomic, add_visit, ...)
      locations - PostgisLocationStore-like (place_hits, batch_place_hits, ...)
    All three default to the SQL implementations over ``session``.
    """

    def __init__(
        self,
        session: AsyncSession | None,
        settings: ReconciliationSettings,
        *,
        trips=None,
        visits=None,
        locations=None,
    ) -> None:
        self._settings = settings
        self._trips = trips or TripStore(session)
        self._visits = visits or SqlVisitStore(session)
        self._locations = locations or PostgisLocationStore(session)

    async def _load_trip(self, user_id: str, trip_id: str) -> TripContext:
        trip = await self._trips.load_trip(user_id, trip_id)
        if trip is None:
            raise TripNotFoundError(trip_id)
        return trip

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    async def preview(
        self,
        *,
        user_id: str,
        trip_id: str,
        date_range: DateRange | None = None,
    ) -> BackfillReport:
        started = time.monotonic()
        trip = await self._load_trip(user_id, trip_id)

        existing = await self._visits.visits_for_trip(
            user_id, trip.id, [p.id for p in trip.places]
        )
        keys = VisitKeyIndex.from_visits(existing)
        report = BackfillReport(trip_id=trip.id, trip_name=trip.name)

        located = trip.places_with_coordinates
        report.places_analyzed = len(located)

        if located:
            finder = select_candidate_finder(self._locations, len(located))
            raw = await finder.find(
                user_id=user_id,
                places=located,
                radius_m=self._settings.max_radius_m,
                min_hits=self._settings.min_hits,
                date_range=date_range,
            )
            report.locations_scanned = sum(h.hit_count for h in raw)
            report.new_visits = self._build_candidates(trip, raw, keys)

            strict_keys = {(h.place_id, h.visit_date) for h in raw}
            tier_rows = await self._tier_hits(user_id, located, date_range)
            report.suggested_visits = evaluate_suggestions(
                tier_rows,
                trip=trip,
                settings=self._settings,
                strict_keys=strict_keys,
                existing=keys,
            )
        else:
            logger.info("Trip %s has no places with coordinates; stale check only", trip.id)

        stale, unchanged = detect_stale_visits(existing, trip.places, self._settings)
        report.stale_visits = _by_date_then_name(
            stale, lambda s: (s.visit.visit_date, s.visit.place_name_snapshot)
        )
        report.existing_visits = sorted(unchanged, key=lambda v: v.arrived_at, reverse=True)
        report.new_visits = _by_date_then_name(
            report.new_visits, lambda c: (c.visit_date, c.place_name)
        )
        report.suggested_visits = _by_date_then_name(
            report.suggested_visits, lambda s: (s.visit_date, s.place_name)
        )

        report.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Backfill preview: trip=%s places=%d scanned=%d new=%d suggested=%d stale=%d existing=%d in %dms",
            trip.id,
            report.places_analyzed,
            report.locations_scanned,
            len(report.new_visits),
            len(report.suggested_visits),
            len(report.stale_visits),
            len(report.existing_visits),
            report.duration_ms,
        )
        return report

    def _build_candidates(
        self,
        trip: TripContext,
        raw: Iterable[PlaceDateHits],
        keys: VisitKeyIndex,
    ) -> list[VisitCandidate]:
        places_by_id = trip.places_by_id
        candidates: list[VisitCandidate] = []
        for hit in raw:
            place = places_by_id.get(hit.place_id)
            if place is None:
                continue
            if keys.contains(place.id, place.name, hit.visit_date):
                continue
            region = trip.region_for(place)
            if region is None:
                logger.warning(
                    "Region %s not found for place %s, skipping candidate",
                    place.region_id,
                    place.id,
                )
                continue
            candidates.append(
                VisitCandidate(
                    place=place,
                    region_name=region.name,
                    visit_date=hit.visit_date,
                    first_seen=hit.first_seen,
                    last_seen=hit.last_seen,
                    location_count=hit.hit_count,
                    avg_distance_m=round(hit.avg_distance_m, 1),
                    confidence=score_confidence(hit.hit_count, hit.avg_distance_m, self._settings),
                )
            )
        return candidates

    async def _tier_hits(
        self,
        user_id: str,
        places: Sequence[PlaceRef],
        date_range: DateRange | None,
    ) -> list[TierHits]:
        # No fallback here: a failure fails the preview.
        rows: list[TierHits] = []
        for chunk in iter_chunks(places, BATCH_CHUNK_SIZE):
            rows.extend(
                await self._locations.tier_hits(
                    user_id=user_id,
                    places=chunk,
                    settings=self._settings,
                    date_range=date_range,
                )
            )
        return rows

    # ------------------------------------------------------------------
    # Apply / clear
    # ------------------------------------------------------------------

    async def apply(self, *, user_id: str, trip_id: str, request: ApplyRequest) -> ApplyResult:
        trip = await self._load_trip(user_id, trip_id)
        existing = await self._visits.visits_for_trip(
            user_id, trip.id, [p.id for p in trip.places]
        )
        applier = ReconciliationApplier(
            trip, VisitKeyIndex.from_visits(existing), self._settings, self._visits
        )
        return await applier.apply(
            request.create_visits,
            request.confirmed_suggestions,
            request.delete_visit_ids,
        )

    async def clear_visits(self, *, user_id: str, trip_id: str) -> int:
        if not await self._trips.trip_exists(user_id, trip_id):
            raise TripNotFoundError(trip_id)
        deleted = await self._visits.clear_trip_visits(user_id, trip_id)
        logger.info("Cleared %d visits for trip %s", deleted, trip_id)
        return deleted

    # ------------------------------------------------------------------
    # Info
    # ------------------------------------------------------------------

    async def info(
        self,
        *,
        user_id: str,
        trip_id: str,
        date_range: DateRange | None = None,
    ) -> BackfillInfo:
        trip = await self._load_trip(user_id, trip_id)
        located = len(trip.places_with_coordinates)
        locations = await self._locations.count_locations(user_id=user_id, date_range=date_range)
        existing = await self._visits.count_trip_visits(user_id, trip.id)
        return BackfillInfo(
            trip_id=trip.id,
            trip_name=trip.name,
            total_places=len(trip.places),
            places_with_coordinates=located,
            estimated_locations=locations,
            estimated_seconds=estimate_seconds(located, locations),
            existing_visits=existing,
        )


def _by_date_then_name(items, key):
    """Date descending, then name ascending."""
    by_name = sorted(items, key=lambda item: key(item)[1])
    return sorted(by_name, key=lambda item: key(item)[0], reverse=True)
