"""
Unit tests: strict candidate finders.

Covers:
- Per-place and batched strategies return the same candidate set
- Strategy selection by place count
- Batched failure (including timeout) falls back to per-place queries
- Per-place failure skips only that place
- Chunking keeps each batched query under the chunk size
- Cancellation propagates
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from services.visits.backfill.candidates import (
    BATCHED_QUERY_THRESHOLD,
    BatchedCandidateFinder,
    IndividualCandidateFinder,
    iter_chunks,
    select_candidate_finder,
)
from services.visits.tests.conftest import USER_ID, make_place
from services.visits.tests.helpers.fakes import FakeLocationStore, Ping


def _places(count: int):
    return [
        make_place(id=f"p{i:02d}", name=f"Place {i}", latitude=38.70 + i * 0.01, longitude=-9.14)
        for i in range(count)
    ]


def _pings_near(place, day: datetime, count: int, offset: float = 0.0001):
    return [
        Ping(place.latitude + offset, place.longitude, day + timedelta(minutes=10 * n))
        for n in range(count)
    ]


def _fixture(count: int = 12) -> tuple[list, FakeLocationStore]:
    places = _places(count)
    pings = []
    for i, place in enumerate(places):
        # every other place: 3 pings on June 1 and 1 ping on June 2 (below min_hits)
        if i % 2 == 0:
            pings += _pings_near(place, datetime(2024, 6, 1, 9), 3)
            pings += _pings_near(place, datetime(2024, 6, 2, 9), 1)
    return places, FakeLocationStore(pings)


def _key_set(hits):
    return {(h.place_id, h.visit_date, h.hit_count) for h in hits}


async def _find(finder, places):
    return await finder.find(user_id=USER_ID, places=places, radius_m=150, min_hits=2)


class TestStrategyEquivalence:
    @pytest.mark.asyncio
    async def test_batched_matches_individual(self):
        places, store = _fixture()
        individual = await _find(IndividualCandidateFinder(store), places)
        batched = await _find(
            BatchedCandidateFinder(store, fallback=IndividualCandidateFinder(store)), places
        )

        assert _key_set(individual) == _key_set(batched)
        assert len(individual) == 6
        assert all(h.hit_count == 3 for h in batched)

    @pytest.mark.asyncio
    async def test_selection_by_threshold(self):
        store = FakeLocationStore()
        below = select_candidate_finder(store, BATCHED_QUERY_THRESHOLD - 1)
        at = select_candidate_finder(store, BATCHED_QUERY_THRESHOLD)
        assert isinstance(below, IndividualCandidateFinder)
        assert isinstance(at, BatchedCandidateFinder)


class TestFallback:
    @pytest.mark.asyncio
    async def test_batched_timeout_falls_back(self):
        places, store = _fixture()
        store.fail_batch = True
        finder = select_candidate_finder(store, len(places))

        hits = await _find(finder, places)

        assert len(store.batch_calls) == 1
        assert store.place_calls == [p.id for p in places]
        assert len(hits) == 6

    @pytest.mark.asyncio
    async def test_individual_failure_skips_one_place(self):
        places, store = _fixture(4)
        store.fail_places = {"p00"}

        hits = await _find(IndividualCandidateFinder(store), places)

        assert {h.place_id for h in hits} == {"p02"}

    @pytest.mark.asyncio
    async def test_places_without_coordinates_not_queried(self):
        store = FakeLocationStore()
        await _find(IndividualCandidateFinder(store), [make_place(id="x", latitude=None)])
        assert store.place_calls == []


class TestChunking:
    def test_iter_chunks(self):
        assert [list(c) for c in iter_chunks([1, 2, 3, 4, 5], 2)] == [[1, 2], [3, 4], [5]]
        assert list(iter_chunks([], 3)) == []

    @pytest.mark.asyncio
    async def test_chunks_respect_size(self):
        places, store = _fixture(25)
        finder = BatchedCandidateFinder(store, IndividualCandidateFinder(store), chunk_size=10)

        hits = await _find(finder, places)

        assert [len(c) for c in store.batch_calls] == [10, 10, 5]
        assert len(hits) == 13

    @pytest.mark.asyncio
    async def test_later_chunk_failure_discards_earlier_chunks(self):
        places, store = _fixture(25)
        store.fail_batch_call = 2
        finder = BatchedCandidateFinder(store, IndividualCandidateFinder(store), chunk_size=10)

        hits = await _find(finder, places)

        assert [len(c) for c in store.batch_calls] == [10, 10]
        assert store.place_calls == [p.id for p in places]
        expected = await _find(IndividualCandidateFinder(FakeLocationStore(store.pings)), places)
        assert sorted(_key_set(hits)) == sorted(_key_set(expected))
        assert len(hits) == len(expected) == 13

    @pytest.mark.asyncio
    async def test_empty_place_list(self):
        store = FakeLocationStore()
        finder = BatchedCandidateFinder(store, IndividualCandidateFinder(store))
        assert await _find(finder, []) == []
        assert store.batch_calls == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_error_not_swallowed(self):
        places, store = _fixture()

        async def _cancelled(**kwargs):
            raise asyncio.CancelledError()

        store.batch_place_hits = _cancelled
        store.place_hits = _cancelled
        finder = select_candidate_finder(store, len(places))

        with pytest.raises(asyncio.CancelledError):
            await _find(finder, places)
