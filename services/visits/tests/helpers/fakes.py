"""
In-memory stand-ins for the backfill stores.

FakeLocationStore answers the same questions as PostgisLocationStore from a
list of pings, using haversine in place of ST_DWithin / ST_Distance. Both
per-place and batched queries share one computation, so a test can compare
the two strategies on identical fixtures.

FakeTripStore / FakeVisitStore keep trips and visits in lists and mirror the
SQL stores' scoping rules, including the (user, place, day) uniqueness the
database enforces.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Sequence

from services.visits.backfill.geo import haversine_m
from services.visits.backfill.models import (
    DateRange,
    PlaceDateHits,
    PlaceRef,
    ReconciliationSettings,
    TierHits,
    TripContext,
    VisitRecord,
)


@dataclass(frozen=True)
class Ping:
    latitude: float
    longitude: float
    local_timestamp: datetime
    is_user_invoked: bool = False
    user_id: str = "user-1"


class FakeLocationStore:
    def __init__(
        self,
        pings: Iterable[Ping] = (),
        *,
        fail_batch: bool = False,
        fail_batch_call: int | None = None,
        fail_places: Iterable[str] = (),
        fail_tiers: bool = False,
    ) -> None:
        self.pings = list(pings)
        self.fail_batch = fail_batch
        # 1-based index of the single batch call that fails
        self.fail_batch_call = fail_batch_call
        self.fail_places = set(fail_places)
        self.fail_tiers = fail_tiers
        self.place_calls: list[str] = []
        self.batch_calls: list[list[str]] = []
        self.tier_calls: list[list[str]] = []

    def _grouped(
        self,
        user_id: str,
        place: PlaceRef,
        radius_m: float,
        date_range: DateRange | None,
    ) -> dict[date, list[tuple[Ping, float]]]:
        groups: dict[date, list[tuple[Ping, float]]] = defaultdict(list)
        if not place.has_coordinates:
            return groups
        for ping in self.pings:
            if ping.user_id != user_id:
                continue
            day = ping.local_timestamp.date()
            if date_range is not None and not date_range.contains(day):
                continue
            distance = haversine_m(ping.latitude, ping.longitude, place.latitude, place.longitude)
            if distance <= radius_m:
                groups[day].append((ping, distance))
        return groups

    def _strict(self, user_id, place, radius_m, min_hits, date_range) -> list[PlaceDateHits]:
        rows = []
        for day, hits in sorted(self._grouped(user_id, place, radius_m, date_range).items(), reverse=True):
            if len(hits) < min_hits:
                continue
            stamps = [p.local_timestamp for p, _ in hits]
            rows.append(
                PlaceDateHits(
                    place_id=place.id,
                    visit_date=day,
                    first_seen=min(stamps),
                    last_seen=max(stamps),
                    hit_count=len(hits),
                    avg_distance_m=sum(d for _, d in hits) / len(hits),
                )
            )
        return rows

    async def place_hits(
        self,
        *,
        user_id: str,
        place: PlaceRef,
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
    ) -> list[PlaceDateHits]:
        self.place_calls.append(place.id)
        if place.id in self.fail_places:
            raise RuntimeError(f"spatial query failed for {place.id}")
        return self._strict(user_id, place, radius_m, min_hits, date_range)

    async def batch_place_hits(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
        timeout_s: float = 120.0,
    ) -> list[PlaceDateHits]:
        self.batch_calls.append([p.id for p in places])
        if self.fail_batch or len(self.batch_calls) == self.fail_batch_call:
            raise asyncio.TimeoutError()
        rows: list[PlaceDateHits] = []
        for place in places:
            rows.extend(self._strict(user_id, place, radius_m, min_hits, date_range))
        return rows

    async def tier_hits(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        settings: ReconciliationSettings,
        date_range: DateRange | None = None,
        timeout_s: float = 120.0,
    ) -> list[TierHits]:
        self.tier_calls.append([p.id for p in places])
        if self.fail_tiers:
            raise RuntimeError("tier query failed")
        rows: list[TierHits] = []
        for place in places:
            groups = self._grouped(user_id, place, settings.suggestion_max_radius_m, date_range)
            for day, hits in sorted(groups.items(), reverse=True):
                stamps = [p.local_timestamp for p, _ in hits]
                distances = [d for _, d in hits]
                rows.append(
                    TierHits(
                        place_id=place.id,
                        visit_date=day,
                        first_seen=min(stamps),
                        last_seen=max(stamps),
                        min_distance_m=min(distances),
                        hits_tier1=sum(1 for d in distances if d <= settings.tier1_radius_m),
                        hits_tier2=sum(1 for d in distances if d <= settings.tier2_radius_m),
                        hits_tier3=sum(1 for d in distances if d <= settings.tier3_radius_m),
                        hits_total=len(hits),
                        checkin_count=sum(1 for p, _ in hits if p.is_user_invoked),
                    )
                )
        return rows

    async def count_locations(self, *, user_id: str, date_range: DateRange | None = None) -> int:
        return sum(
            1
            for p in self.pings
            if p.user_id == user_id
            and (date_range is None or date_range.contains(p.local_timestamp.date()))
        )


class FakeTripStore:
    def __init__(self, *trips: TripContext) -> None:
        self.trips = list(trips)

    async def load_trip(self, user_id: str, trip_id: str) -> TripContext | None:
        for trip in self.trips:
            if trip.id == trip_id and trip.user_id == user_id:
                return trip
        return None

    async def trip_exists(self, user_id: str, trip_id: str) -> bool:
        return await self.load_trip(user_id, trip_id) is not None


class FakeVisitStore:
    """
    Visit persistence with unit-of-work semantics.

    ``reject_place_ids`` simulates a concurrent writer: add_visit for those
    places returns False as if the unique index had fired.
    """

    def __init__(self, visits: Iterable[VisitRecord] = (), *, reject_place_ids: Iterable[str] = ()) -> None:
        self.visits = list(visits)
        self.reject_place_ids = set(reject_place_ids)
        self.commits = 0
        self.rollbacks = 0
        self.fail_on_delete = False

    def _in_scope(self, visit: VisitRecord, user_id: str, trip_id: str, place_ids) -> bool:
        return visit.user_id == user_id and (
            visit.place_id in place_ids or visit.trip_id_snapshot == trip_id
        )

    async def visits_for_trip(self, user_id: str, trip_id: str, place_ids) -> list[VisitRecord]:
        place_ids = set(place_ids)
        return [v for v in self.visits if self._in_scope(v, user_id, trip_id, place_ids)]

    async def count_trip_visits(self, user_id: str, trip_id: str) -> int:
        return sum(1 for v in self.visits if v.user_id == user_id and v.trip_id_snapshot == trip_id)

    @asynccontextmanager
    async def atomic(self):
        snapshot = copy.copy(self.visits)
        try:
            yield self
        except Exception:
            self.visits = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1

    async def add_visit(self, visit: VisitRecord) -> bool:
        if visit.place_id in self.reject_place_ids:
            return False
        for existing in self.visits:
            if (
                existing.user_id == visit.user_id
                and existing.place_id is not None
                and existing.place_id == visit.place_id
                and existing.visit_date == visit.visit_date
            ):
                return False
        self.visits.append(visit)
        return True

    async def delete_visits(self, user_id: str, trip_id: str, place_ids, visit_ids) -> int:
        if self.fail_on_delete:
            raise RuntimeError("delete failed")
        place_ids = set(place_ids)
        ids = set(visit_ids)
        keep = [
            v for v in self.visits
            if not (v.id in ids and self._in_scope(v, user_id, trip_id, place_ids))
        ]
        deleted = len(self.visits) - len(keep)
        self.visits = keep
        return deleted

    async def clear_trip_visits(self, user_id: str, trip_id: str) -> int:
        keep = [v for v in self.visits if not (v.user_id == user_id and v.trip_id_snapshot == trip_id)]
        deleted = len(self.visits) - len(keep)
        self.visits = keep
        return deleted
