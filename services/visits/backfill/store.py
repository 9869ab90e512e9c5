"""
Trip and visit persistence for the backfill engine (SA async session).

TripStore is read-only: a trip with its regions and places, scoped to the
owning user. SqlVisitStore reads committed visits and performs the only
writes this service makes: inserting new visits and deleting approved ones.

Visit scope for a trip is (placeId in the trip's current places) OR
(tripIdSnapshot == trip). The second arm keeps visits visible after their
place was deleted or re-created with a new id.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Collection

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from services.visits.backfill.models import PlaceRef, RegionRef, TripContext, VisitRecord
from services.visits.db.models import PlaceVisitEvent, Region, Trip

logger = logging.getLogger(__name__)


def _to_trip_context(trip: Trip) -> TripContext:
    regions: dict[str, RegionRef] = {}
    places: list[PlaceRef] = []
    for region in trip.regions:
        regions[region.id] = RegionRef(id=region.id, name=region.name)
        for place in region.places:
            places.append(
                PlaceRef(
                    id=place.id,
                    name=place.name,
                    region_id=region.id,
                    latitude=place.latitude,
                    longitude=place.longitude,
                    icon_name=place.iconName,
                    marker_color=place.markerColor,
                    notes=place.notes,
                )
            )
    return TripContext(
        id=trip.id,
        user_id=trip.userId,
        name=trip.name or "",
        regions=regions,
        places=places,
    )


def _to_record(row: PlaceVisitEvent) -> VisitRecord:
    return VisitRecord(
        id=row.id,
        user_id=row.userId,
        place_id=row.placeId,
        arrived_at=row.arrivedAtUtc,
        last_seen_at=row.lastSeenAtUtc,
        ended_at=row.endedAtUtc,
        trip_id_snapshot=row.tripIdSnapshot,
        trip_name_snapshot=row.tripNameSnapshot,
        region_name_snapshot=row.regionNameSnapshot,
        place_name_snapshot=row.placeNameSnapshot,
        place_latitude_snapshot=row.placeLatitudeSnapshot,
        place_longitude_snapshot=row.placeLongitudeSnapshot,
        notes_html=row.notesHtml,
        icon_name_snapshot=row.iconNameSnapshot,
        marker_color_snapshot=row.markerColorSnapshot,
        source=row.source,
    )


def _to_row(visit: VisitRecord) -> PlaceVisitEvent:
    return PlaceVisitEvent(
        id=visit.id,
        userId=visit.user_id,
        placeId=visit.place_id,
        arrivedAtUtc=visit.arrived_at,
        lastSeenAtUtc=visit.last_seen_at,
        endedAtUtc=visit.ended_at,
        tripIdSnapshot=visit.trip_id_snapshot,
        tripNameSnapshot=visit.trip_name_snapshot,
        regionNameSnapshot=visit.region_name_snapshot,
        placeNameSnapshot=visit.place_name_snapshot,
        placeLatitudeSnapshot=visit.place_latitude_snapshot,
        placeLongitudeSnapshot=visit.place_longitude_snapshot,
        notesHtml=visit.notes_html,
        iconNameSnapshot=visit.icon_name_snapshot,
        markerColorSnapshot=visit.marker_color_snapshot,
        source=visit.source,
    )


def _trip_scope(user_id: str, trip_id: str, place_ids: Collection[str]):
    return and_(
        PlaceVisitEvent.userId == user_id,
        or_(
            PlaceVisitEvent.placeId.in_(list(place_ids)),
            PlaceVisitEvent.tripIdSnapshot == trip_id,
        ),
    )


class TripStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def load_trip(self, user_id: str, trip_id: str) -> TripContext | None:
        """Trip with regions and places, or None if missing / not owned."""
        stmt = (
            select(Trip)
            .where(Trip.id == trip_id, Trip.userId == user_id)
            .options(selectinload(Trip.regions).selectinload(Region.places))
        )
        result = await self._session.execute(stmt)
        trip = result.scalars().first()
        if trip is None:
            return None
        return _to_trip_context(trip)

    async def trip_exists(self, user_id: str, trip_id: str) -> bool:
        stmt = select(Trip.id).where(Trip.id == trip_id, Trip.userId == user_id)
        result = await self._session.execute(stmt)
        return result.scalar() is not None


class SqlVisitStore:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def visits_for_trip(
        self,
        user_id: str,
        trip_id: str,
        place_ids: Collection[str],
    ) -> list[VisitRecord]:
        stmt = select(PlaceVisitEvent).where(_trip_scope(user_id, trip_id, place_ids))
        result = await self._session.execute(stmt)
        return [_to_record(row) for row in result.scalars().all()]

    async def count_trip_visits(self, user_id: str, trip_id: str) -> int:
        stmt = select(func.count()).select_from(PlaceVisitEvent).where(
            PlaceVisitEvent.userId == user_id,
            PlaceVisitEvent.tripIdSnapshot == trip_id,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar() or 0)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["SqlVisitStore"]:
        """Commit everything written inside the block once, or nothing."""
        try:
            yield self
        except Exception:
            await self._session.rollback()
            raise
        await self._session.commit()

    async def add_visit(self, visit: VisitRecord) -> bool:
        """
        Insert a visit inside a savepoint.

        Returns False when the unique (user, place, day) index rejects it,
        which happens when a concurrent apply committed the same visit first.
        """
        try:
            async with self._session.begin_nested():
                self._session.add(_to_row(visit))
        except IntegrityError:
            logger.warning(
                "Visit for place %s on %s already committed elsewhere; skipping",
                visit.place_id,
                visit.visit_date,
            )
            return False
        return True

    async def delete_visits(
        self,
        user_id: str,
        trip_id: str,
        place_ids: Collection[str],
        visit_ids: Collection[str],
    ) -> int:
        """Delete the requested ids that fall inside the trip's visit scope."""
        if not visit_ids:
            return 0
        stmt = delete(PlaceVisitEvent).where(
            PlaceVisitEvent.id.in_(list(visit_ids)),
            _trip_scope(user_id, trip_id, place_ids),
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def clear_trip_visits(self, user_id: str, trip_id: str) -> int:
        stmt = delete(PlaceVisitEvent).where(
            PlaceVisitEvent.userId == user_id,
            PlaceVisitEvent.tripIdSnapshot == trip_id,
        )
        async with self.atomic():
            result = await self._session.execute(stmt)
        return result.rowcount or 0
