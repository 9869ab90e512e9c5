"""
Duplicate detection keys for visits.

Two key spaces, never mixed:
  - (place_id, date)   for visits whose place still exists
  - (place_name, date) only for visits whose place was deleted (place_id NULL)

Keeping the name space restricted to reference-less visits means two
different places sharing a name can both be visited on the same day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable

from services.visits.backfill.models import VisitRecord


@dataclass
class VisitKeyIndex:
    by_place: set[tuple[str, date]] = field(default_factory=set)
    by_name: set[tuple[str, date]] = field(default_factory=set)

    @classmethod
    def from_visits(cls, visits: Iterable[VisitRecord]) -> "VisitKeyIndex":
        index = cls()
        for visit in visits:
            if visit.place_id is not None:
                index.by_place.add((visit.place_id, visit.visit_date))
            else:
                index.by_name.add((visit.place_name_snapshot, visit.visit_date))
        return index

    def contains(self, place_id: str, place_name: str, day: date) -> bool:
        return (place_id, day) in self.by_place or (place_name, day) in self.by_name

    def add_place_key(self, place_id: str, day: date) -> None:
        """Record a freshly accepted visit so later items in the same batch see it."""
        self.by_place.add((place_id, day))
