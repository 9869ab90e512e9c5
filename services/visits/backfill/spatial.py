"""
Spatial queries against location history.

Uses PostGIS on the fly: pings and places are stored as plain
latitude/longitude columns and turned into geography points inside the
query, so distances come back in meters.

PostGIS functions used:
  ST_MakePoint - construct a point from longitude, latitude
  ST_SetSRID - assign SRID 4326 before the geography cast
  ST_DWithin - radius containment (uses the GIST expression index)
  ST_Distance - geodesic distance in meters for avg/min statistics

All grouping is by DATE("localTimestamp"): the device-local day decides
which calendar date a ping belongs to, not the server ingestion time.

Query shapes:
  place_hits - one place, strict radius, HAVING COUNT(*) >= min_hits
  batch_place_hits - many places via a VALUES CTE + CROSS JOIN LATERAL
  tier_hits - many places out to the suggestion ceiling, with
      per-tier hit counts and user check-in counts

place_hits and batch_place_hits each run in their own savepoint. The
candidate finders skip or retry after a failure, and PostgreSQL rejects
every statement after an error until the transaction is rolled back.
"""

from __future__ import annotations

import asyncio
from typing import Any, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from services.visits.backfill.models import (
    DateRange,
    PlaceDateHits,
    PlaceRef,
    ReconciliationSettings,
    TierHits,
)
from services.visits.db.models import Location

# Generous budget for multi-place queries on large trips
BATCHED_QUERY_TIMEOUT_S = 120.0

_PING_GEOG = 'CAST(ST_SetSRID(ST_MakePoint(l.longitude, l.latitude), 4326) AS geography)'
_PLACE_GEOG = "CAST(ST_SetSRID(ST_MakePoint({lon}, {lat}), 4326) AS geography)"
_LOCATIONS = Location.__tablename__


def _date_filters(date_range: DateRange | None) -> tuple[str, dict[str, Any]]:
    """SQL fragment + params restricting pings to a local-date range."""
    sql = ""
    params: dict[str, Any] = {}
    if date_range is None:
        return sql, params
    if date_range.start is not None:
        sql += ' AND DATE(l."localTimestamp") >= :from_date'
        params["from_date"] = date_range.start
    if date_range.end is not None:
        sql += ' AND DATE(l."localTimestamp") <= :to_date'
        params["to_date"] = date_range.end
    return sql, params


def _place_values(places: Sequence[PlaceRef], prefix: str) -> tuple[str, dict[str, Any]]:
    """
    Build the VALUES rows for the place_coords CTE.

    Three bind params per place (id, lon, lat); callers chunk the place list
    so the statement stays under PostgreSQL's bind parameter limit.
    """
    rows: list[str] = []
    params: dict[str, Any] = {}
    for i, place in enumerate(places):
        if not place.has_coordinates:
            continue
        rows.append(
            f"(CAST(:{prefix}{i}_id AS text), "
            f"CAST(:{prefix}{i}_lon AS double precision), "
            f"CAST(:{prefix}{i}_lat AS double precision))"
        )
        params[f"{prefix}{i}_id"] = place.id
        params[f"{prefix}{i}_lon"] = place.longitude
        params[f"{prefix}{i}_lat"] = place.latitude
    return ",\n                ".join(rows), params


class PostgisLocationStore:
    """
    Read-only access to a user's location pings.

    Injected dependencies for testability:
      session - SA AsyncSession bound to the asyncpg driver
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def _isolated_rows(self, sql: str, params: dict) -> list:
        """Run one read in a savepoint; a failure leaves the outer transaction usable."""
        async with self._session.begin_nested():
            result = await self._session.execute(text(sql), params)
            return result.mappings().all()

    async def place_hits(
        self,
        *,
        user_id: str,
        place: PlaceRef,
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
    ) -> list[PlaceDateHits]:
        """Pings within ``radius_m`` of one place, grouped by local date."""
        if not place.has_coordinates:
            return []

        date_sql, params = _date_filters(date_range)
        place_geog = _PLACE_GEOG.format(
            lon="CAST(:lon AS double precision)", lat="CAST(:lat AS double precision)"
        )
        sql = f"""
            SELECT
                DATE(l."localTimestamp") AS visit_date,
                MIN(l."localTimestamp") AS first_seen,
                MAX(l."localTimestamp") AS last_seen,
                COUNT(*) AS location_count,
                AVG(ST_Distance({_PING_GEOG}, {place_geog})) AS avg_distance
            FROM {_LOCATIONS} l
            WHERE l."userId" = :user_id
              AND ST_DWithin({_PING_GEOG}, {place_geog}, :radius){date_sql}
            GROUP BY DATE(l."localTimestamp")
            HAVING COUNT(*) >= :min_hits
            ORDER BY visit_date DESC
        """
        params.update(
            user_id=user_id,
            lon=place.longitude,
            lat=place.latitude,
            radius=float(radius_m),
            min_hits=min_hits,
        )

        rows = await self._isolated_rows(sql, params)
        return [
            PlaceDateHits(
                place_id=place.id,
                visit_date=row["visit_date"],
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
                hit_count=int(row["location_count"]),
                avg_distance_m=float(row["avg_distance"]),
            )
            for row in rows
        ]

    async def batch_place_hits(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
        timeout_s: float = BATCHED_QUERY_TIMEOUT_S,
    ) -> list[PlaceDateHits]:
        """Same statistics as place_hits for many places in one round trip."""
        values_sql, params = _place_values(places, "p")
        if not values_sql:
            return []

        date_sql, date_params = _date_filters(date_range)
        params.update(date_params)
        place_geog = _PLACE_GEOG.format(lon="pc.lon", lat="pc.lat")
        sql = f"""
            WITH place_coords AS (
                SELECT * FROM (VALUES
                {values_sql}
                ) AS t(place_id, lon, lat)
            )
            SELECT
                pc.place_id,
                DATE(l."localTimestamp") AS visit_date,
                MIN(l."localTimestamp") AS first_seen,
                MAX(l."localTimestamp") AS last_seen,
                COUNT(*) AS location_count,
                AVG(ST_Distance(l.geog, {place_geog})) AS avg_distance
            FROM place_coords pc
            CROSS JOIN LATERAL (
                SELECT l."localTimestamp", {_PING_GEOG} AS geog
                FROM {_LOCATIONS} l
                WHERE l."userId" = :user_id
                  AND ST_DWithin({_PING_GEOG}, {place_geog}, :radius){date_sql}
            ) l
            GROUP BY pc.place_id, DATE(l."localTimestamp")
            HAVING COUNT(*) >= :min_hits
            ORDER BY pc.place_id, visit_date DESC
        """
        params.update(user_id=user_id, radius=float(radius_m), min_hits=min_hits)

        rows = await asyncio.wait_for(self._isolated_rows(sql, params), timeout=timeout_s)
        return [
            PlaceDateHits(
                place_id=row["place_id"],
                visit_date=row["visit_date"],
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
                hit_count=int(row["location_count"]),
                avg_distance_m=float(row["avg_distance"]),
            )
            for row in rows
        ]

    async def tier_hits(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        settings: ReconciliationSettings,
        date_range: DateRange | None = None,
        timeout_s: float = BATCHED_QUERY_TIMEOUT_S,
    ) -> list[TierHits]:
        """
        Per (place, date) tier breakdown out to the suggestion ceiling.

        Returns every group that has at least one ping in range; the
        cross-tier evidence rules are applied by the suggestions module.
        """
        values_sql, params = _place_values(places, "s")
        if not values_sql:
            return []

        date_sql, date_params = _date_filters(date_range)
        params.update(date_params)
        place_geog = _PLACE_GEOG.format(lon="pc.lon", lat="pc.lat")
        sql = f"""
            WITH place_coords AS (
                SELECT * FROM (VALUES
                {values_sql}
                ) AS t(place_id, lon, lat)
            )
            SELECT
                pc.place_id,
                DATE(l."localTimestamp") AS visit_date,
                MIN(l."localTimestamp") AS first_seen,
                MAX(l."localTimestamp") AS last_seen,
                MIN(ST_Distance(l.geog, {place_geog})) AS min_distance,
                COUNT(*) FILTER (WHERE ST_DWithin(l.geog, {place_geog}, :tier1_radius)) AS hits_tier1,
                COUNT(*) FILTER (WHERE ST_DWithin(l.geog, {place_geog}, :tier2_radius)) AS hits_tier2,
                COUNT(*) FILTER (WHERE ST_DWithin(l.geog, {place_geog}, :tier3_radius)) AS hits_tier3,
                COUNT(*) AS hits_total,
                COUNT(*) FILTER (WHERE l."isUserInvoked" = true) AS checkin_count
            FROM place_coords pc
            CROSS JOIN LATERAL (
                SELECT l."localTimestamp", l."isUserInvoked", {_PING_GEOG} AS geog
                FROM {_LOCATIONS} l
                WHERE l."userId" = :user_id
                  AND ST_DWithin({_PING_GEOG}, {place_geog}, :max_radius){date_sql}
            ) l
            GROUP BY pc.place_id, DATE(l."localTimestamp")
            ORDER BY pc.place_id, visit_date DESC
        """
        params.update(
            user_id=user_id,
            tier1_radius=float(settings.tier1_radius_m),
            tier2_radius=float(settings.tier2_radius_m),
            tier3_radius=float(settings.tier3_radius_m),
            max_radius=float(settings.suggestion_max_radius_m),
        )

        result = await asyncio.wait_for(
            self._session.execute(text(sql), params), timeout=timeout_s
        )
        return [
            TierHits(
                place_id=row["place_id"],
                visit_date=row["visit_date"],
                first_seen=row["first_seen"],
                last_seen=row["last_seen"],
                min_distance_m=float(row["min_distance"]),
                hits_tier1=int(row["hits_tier1"]),
                hits_tier2=int(row["hits_tier2"]),
                hits_tier3=int(row["hits_tier3"]),
                hits_total=int(row["hits_total"]),
                checkin_count=int(row["checkin_count"]),
            )
            for row in result.mappings().all()
        ]

    async def count_locations(self, *, user_id: str, date_range: DateRange | None = None) -> int:
        """Fast count of pings in range, for progress estimates."""
        date_sql, params = _date_filters(date_range)
        params["user_id"] = user_id
        result = await self._session.execute(
            text(f'SELECT COUNT(*) FROM {_LOCATIONS} l WHERE l."userId" = :user_id{date_sql}'),
            params,
        )
        return int(result.scalar() or 0)
