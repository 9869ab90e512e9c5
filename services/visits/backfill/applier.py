"""
Commit approved backfill items as visits.

Each approved item is checked against the trip's current places and the
dedupe index, then turned into a VisitRecord whose snapshot fields are
copied from the place, region and trip as they are right now. The key of
every accepted item goes into the index before the next item is looked at,
so the same (place, date) twice in one request produces one visit.

All inserts and deletes for one call share a single unit of work.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable, Sequence

from services.visits.backfill.dedupe import VisitKeyIndex
from services.visits.backfill.models import (
    SOURCE_BACKFILL,
    SOURCE_USER_CONFIRMED,
    ApplyOutcome,
    ApplyResult,
    CreateVisitItem,
    ReconciliationSettings,
    TripContext,
    VisitRecord,
)

logger = logging.getLogger(__name__)

ELLIPSIS = "…"


def truncate_notes(notes: str | None, max_chars: int) -> str | None:
    if notes is None or len(notes) <= max_chars:
        return notes
    return notes[: max_chars - 1] + ELLIPSIS


class ReconciliationApplier:
    """
    Turns approved items into visits for one trip.

    ``keys`` is built from the trip's committed visits and is mutated as
    items are accepted.
    """

    def __init__(
        self,
        trip: TripContext,
        keys: VisitKeyIndex,
        settings: ReconciliationSettings,
        store,
    ) -> None:
        self._trip = trip
        self._keys = keys
        self._settings = settings
        self._store = store
        self._places = trip.places_by_id

    def stage(
        self, item: CreateVisitItem, source: str
    ) -> tuple[ApplyOutcome, VisitRecord | None]:
        place = self._places.get(item.place_id)
        if place is None:
            return ApplyOutcome.PLACE_MISSING, None

        day = item.visit_date or item.first_seen.date()
        if self._keys.contains(place.id, place.name, day):
            return ApplyOutcome.DUPLICATE, None

        region = self._trip.region_for(place)
        visit = VisitRecord(
            id=str(uuid.uuid4()),
            user_id=self._trip.user_id,
            place_id=place.id,
            arrived_at=item.first_seen,
            last_seen_at=item.last_seen,
            ended_at=item.last_seen,
            trip_id_snapshot=self._trip.id,
            trip_name_snapshot=self._trip.name,
            region_name_snapshot=region.name if region else "",
            place_name_snapshot=place.name,
            place_latitude_snapshot=place.latitude,
            place_longitude_snapshot=place.longitude,
            notes_html=truncate_notes(place.notes, self._settings.notes_max_chars),
            icon_name_snapshot=place.icon_name,
            marker_color_snapshot=place.marker_color,
            source=source,
        )
        self._keys.add_place_key(place.id, day)
        return ApplyOutcome.CREATED, visit

    async def _create(self, items: Iterable[CreateVisitItem], source: str) -> tuple[int, int]:
        created = 0
        skipped = 0
        for item in items:
            outcome, visit = self.stage(item, source)
            if outcome is ApplyOutcome.PLACE_MISSING:
                logger.info("Place %s no longer in trip %s; skipping", item.place_id, self._trip.id)
                skipped += 1
                continue
            if outcome is ApplyOutcome.DUPLICATE:
                skipped += 1
                continue
            if await self._store.add_visit(visit):
                created += 1
            else:
                skipped += 1
        return created, skipped

    async def apply(
        self,
        create_items: Sequence[CreateVisitItem],
        confirmed_items: Sequence[CreateVisitItem],
        delete_ids: Sequence[str],
    ) -> ApplyResult:
        result = ApplyResult()
        async with self._store.atomic():
            created, skipped = await self._create(create_items, SOURCE_BACKFILL)
            confirmed, confirmed_skipped = await self._create(confirmed_items, SOURCE_USER_CONFIRMED)
            result.created = created
            result.suggestions_confirmed = confirmed
            result.skipped = skipped + confirmed_skipped

            if delete_ids:
                result.deleted = await self._store.delete_visits(
                    self._trip.user_id,
                    self._trip.id,
                    list(self._places),
                    list(dict.fromkeys(delete_ids)),
                )

        logger.info(
            "Backfill apply for trip %s: created=%d confirmed=%d deleted=%d skipped=%d",
            self._trip.id,
            result.created,
            result.suggestions_confirmed,
            result.deleted,
            result.skipped,
        )
        return result
