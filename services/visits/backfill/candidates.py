"""
Strict visit candidate discovery: two query strategies behind one interface.

  IndividualCandidateFinder - one spatial query per place. Used for small
      trips and as the fallback path. A failure for one place is logged and
      that place is skipped; it never aborts the analysis.
  BatchedCandidateFinder - one query per chunk of places (VALUES + LATERAL
      join). Any failure, including a timeout, re-runs the whole place set
      through the individual finder; the caller never sees the batched error.

select_candidate_finder() picks the strategy from the place count.

Cancellation: asyncio.CancelledError is never caught here, so a cancelled
preview stops between chunks or between per-place queries and nothing
partial is returned.
"""

from __future__ import annotations

import logging
import time
from typing import Iterator, Protocol, Sequence, TypeVar

from services.visits.backfill.models import DateRange, PlaceDateHits, PlaceRef

logger = logging.getLogger(__name__)

# At or above this many places, a single batched query beats N round trips
BATCHED_QUERY_THRESHOLD = 10

# 3 bind params per place; 10k places stays under PostgreSQL's ~32k limit
BATCH_CHUNK_SIZE = 10_000

T = TypeVar("T")


def iter_chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


class CandidateFinder(Protocol):
    async def find(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
    ) -> list[PlaceDateHits]: ...


class IndividualCandidateFinder:
    """Per-place queries; tolerant of single-place failures."""

    def __init__(self, store) -> None:
        self._store = store

    async def find(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
    ) -> list[PlaceDateHits]:
        hits: list[PlaceDateHits] = []
        for place in places:
            if not place.has_coordinates:
                continue
            try:
                place_rows = await self._store.place_hits(
                    user_id=user_id,
                    place=place,
                    radius_m=radius_m,
                    min_hits=min_hits,
                    date_range=date_range,
                )
            except Exception:
                logger.exception(
                    "Spatial query failed for place %s (%s) at (%f, %f); skipping",
                    place.id,
                    place.name,
                    place.latitude,
                    place.longitude,
                )
                continue
            hits.extend(place_rows)
        return hits


class BatchedCandidateFinder:
    """Chunked multi-place queries with transparent per-place fallback."""

    def __init__(
        self,
        store,
        fallback: CandidateFinder,
        chunk_size: int = BATCH_CHUNK_SIZE,
    ) -> None:
        self._store = store
        self._fallback = fallback
        self._chunk_size = chunk_size

    async def find(
        self,
        *,
        user_id: str,
        places: Sequence[PlaceRef],
        radius_m: float,
        min_hits: int,
        date_range: DateRange | None = None,
    ) -> list[PlaceDateHits]:
        if not places:
            return []

        started = time.monotonic()
        if len(places) > self._chunk_size:
            logger.info(
                "Chunking batched query: %d places into %d chunks of %d",
                len(places),
                (len(places) + self._chunk_size - 1) // self._chunk_size,
                self._chunk_size,
            )

        hits: list[PlaceDateHits] = []
        try:
            for chunk in iter_chunks(places, self._chunk_size):
                hits.extend(
                    await self._store.batch_place_hits(
                        user_id=user_id,
                        places=chunk,
                        radius_m=radius_m,
                        min_hits=min_hits,
                        date_range=date_range,
                    )
                )
        except Exception:
            logger.exception(
                "Batched spatial query failed for %d places; falling back to individual queries",
                len(places),
            )
            return await self._fallback.find(
                user_id=user_id,
                places=places,
                radius_m=radius_m,
                min_hits=min_hits,
                date_range=date_range,
            )

        logger.info(
            "Batched spatial query: places=%d matches=%d latency=%dms",
            len(places),
            len(hits),
            int((time.monotonic() - started) * 1000),
        )
        return hits


def select_candidate_finder(
    store,
    place_count: int,
    *,
    threshold: int = BATCHED_QUERY_THRESHOLD,
    chunk_size: int = BATCH_CHUNK_SIZE,
) -> CandidateFinder:
    """Batched for large trips, per-place below ``threshold``."""
    individual = IndividualCandidateFinder(store)
    if place_count >= threshold:
        return BatchedCandidateFinder(store, fallback=individual, chunk_size=chunk_size)
    return individual
