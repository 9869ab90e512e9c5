"""
Value types for the visit backfill engine.

Trip/region/place references are read-only views loaded once per request.
VisitRecord is the only entity the engine creates; it is frozen because its
snapshot fields (trip/region/place names, location, notes, icon, color) are
captured at commit time and never change afterwards.

The report types serialize to the camelCase wire shape via ``to_dict()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

SOURCE_BACKFILL = "backfill"
SOURCE_USER_CONFIRMED = "backfill-user-confirmed"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReconciliationSettings:
    """Matching parameters. Radii in meters, hits are ping counts."""

    min_radius_m: float
    max_radius_m: float
    min_hits: int
    notes_max_chars: int
    tier1_radius_m: float
    tier1_hits: int
    tier2_radius_m: float
    tier2_hits: int
    tier3_radius_m: float
    tier3_hits: int
    suggestion_max_radius_m: float
    suggestion_max_hits: int


@dataclass(frozen=True)
class DateRange:
    """Inclusive local-date filter. Either bound may be open."""

    start: date | None = None
    end: date | None = None

    def contains(self, day: date) -> bool:
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True


# ---------------------------------------------------------------------------
# Trip structure (read-only)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RegionRef:
    id: str
    name: str


@dataclass(frozen=True)
class PlaceRef:
    id: str
    name: str
    region_id: str
    latitude: float | None = None
    longitude: float | None = None
    icon_name: str | None = None
    marker_color: str | None = None
    notes: str | None = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class TripContext:
    """A trip with its regions and places, as owned by ``user_id``."""

    id: str
    user_id: str
    name: str
    regions: dict[str, RegionRef] = field(default_factory=dict)
    places: list[PlaceRef] = field(default_factory=list)

    @property
    def places_by_id(self) -> dict[str, PlaceRef]:
        return {p.id: p for p in self.places}

    @property
    def places_with_coordinates(self) -> list[PlaceRef]:
        return [p for p in self.places if p.has_coordinates]

    def region_for(self, place: PlaceRef) -> RegionRef | None:
        return self.regions.get(place.region_id)


# ---------------------------------------------------------------------------
# Visits
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VisitRecord:
    """A committed visit with its creation-time snapshots."""

    id: str
    user_id: str
    place_id: str | None
    arrived_at: datetime
    last_seen_at: datetime
    ended_at: datetime | None
    trip_id_snapshot: str
    trip_name_snapshot: str
    region_name_snapshot: str
    place_name_snapshot: str
    place_latitude_snapshot: float | None = None
    place_longitude_snapshot: float | None = None
    notes_html: str | None = None
    icon_name_snapshot: str | None = None
    marker_color_snapshot: str | None = None
    source: str | None = None

    @property
    def visit_date(self) -> date:
        return self.arrived_at.date()

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def has_location_snapshot(self) -> bool:
        return self.place_latitude_snapshot is not None and self.place_longitude_snapshot is not None


# ---------------------------------------------------------------------------
# Spatial store rows
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PlaceDateHits:
    """Pings within the strict radius of one place on one local date."""

    place_id: str
    visit_date: date
    first_seen: datetime
    last_seen: datetime
    hit_count: int
    avg_distance_m: float


@dataclass(frozen=True)
class TierHits:
    """Per-tier ping breakdown for one place on one local date."""

    place_id: str
    visit_date: date
    first_seen: datetime
    last_seen: datetime
    min_distance_m: float
    hits_tier1: int
    hits_tier2: int
    hits_tier3: int
    hits_total: int
    checkin_count: int = 0

    @property
    def has_user_checkin(self) -> bool:
        return self.checkin_count >= 1


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _place_display(place: PlaceRef) -> dict[str, Any]:
    out: dict[str, Any] = {}
    if place.latitude is not None:
        out["latitude"] = place.latitude
    if place.longitude is not None:
        out["longitude"] = place.longitude
    if place.icon_name is not None:
        out["iconName"] = place.icon_name
    if place.marker_color is not None:
        out["markerColor"] = place.marker_color
    return out


@dataclass
class VisitCandidate:
    """A strict match, eligible for automatic visit creation."""

    place: PlaceRef
    region_name: str
    visit_date: date
    first_seen: datetime
    last_seen: datetime
    location_count: int
    avg_distance_m: float
    confidence: int

    @property
    def place_id(self) -> str:
        return self.place.id

    @property
    def place_name(self) -> str:
        return self.place.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "placeId": self.place.id,
            "placeName": self.place.name,
            "regionName": self.region_name,
            "visitDate": _iso(self.visit_date),
            "firstSeenUtc": _iso(self.first_seen),
            "lastSeenUtc": _iso(self.last_seen),
            "locationCount": self.location_count,
            "avgDistanceMeters": self.avg_distance_m,
            "confidence": self.confidence,
            **_place_display(self.place),
        }


@dataclass
class VisitSuggestion:
    """A weak-evidence match surfaced for manual confirmation."""

    place: PlaceRef
    region_name: str
    visit_date: date
    first_seen: datetime
    last_seen: datetime
    min_distance_m: float
    hits_tier1: int
    hits_tier2: int
    hits_tier3: int
    hits_total: int
    has_user_checkin: bool
    reason: str

    @property
    def place_id(self) -> str:
        return self.place.id

    @property
    def place_name(self) -> str:
        return self.place.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "placeId": self.place.id,
            "placeName": self.place.name,
            "regionName": self.region_name,
            "visitDate": _iso(self.visit_date),
            "minDistanceMeters": self.min_distance_m,
            "hitsTier1": self.hits_tier1,
            "hitsTier2": self.hits_tier2,
            "hitsTier3": self.hits_tier3,
            "hitsTotal": self.hits_total,
            "hasUserCheckin": self.has_user_checkin,
            "suggestionReason": self.reason,
            "firstSeenUtc": _iso(self.first_seen),
            "lastSeenUtc": _iso(self.last_seen),
            **_place_display(self.place),
        }


@dataclass
class StaleVisit:
    visit: VisitRecord
    reason: str
    distance_m: float | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "visitId": self.visit.id,
            "placeName": self.visit.place_name_snapshot,
            "regionName": self.visit.region_name_snapshot,
            "visitDate": _iso(self.visit.visit_date),
            "reason": self.reason,
        }
        if self.visit.place_id is not None:
            out["placeId"] = self.visit.place_id
        if self.distance_m is not None:
            out["distanceMeters"] = self.distance_m
        return out


def existing_visit_dict(visit: VisitRecord) -> dict[str, Any]:
    out: dict[str, Any] = {
        "visitId": visit.id,
        "placeName": visit.place_name_snapshot,
        "regionName": visit.region_name_snapshot,
        "visitDate": _iso(visit.visit_date),
        "arrivedAtUtc": _iso(visit.arrived_at),
        "isOpen": visit.is_open,
    }
    if visit.place_id is not None:
        out["placeId"] = visit.place_id
    return out


@dataclass
class BackfillReport:
    trip_id: str
    trip_name: str
    locations_scanned: int = 0
    places_analyzed: int = 0
    duration_ms: int = 0
    new_visits: list[VisitCandidate] = field(default_factory=list)
    suggested_visits: list[VisitSuggestion] = field(default_factory=list)
    stale_visits: list[StaleVisit] = field(default_factory=list)
    existing_visits: list[VisitRecord] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "tripName": self.trip_name,
            "locationsScanned": self.locations_scanned,
            "placesAnalyzed": self.places_analyzed,
            "analysisDurationMs": self.duration_ms,
            "newVisits": [c.to_dict() for c in self.new_visits],
            "suggestedVisits": [s.to_dict() for s in self.suggested_visits],
            "staleVisits": [s.to_dict() for s in self.stale_visits],
            "existingVisits": [existing_visit_dict(v) for v in self.existing_visits],
        }


@dataclass(frozen=True)
class BackfillInfo:
    trip_id: str
    trip_name: str
    total_places: int
    places_with_coordinates: int
    estimated_locations: int
    estimated_seconds: int
    existing_visits: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tripId": self.trip_id,
            "tripName": self.trip_name,
            "totalPlaces": self.total_places,
            "placesWithCoordinates": self.places_with_coordinates,
            "estimatedLocations": self.estimated_locations,
            "estimatedSeconds": self.estimated_seconds,
            "existingVisits": self.existing_visits,
        }


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateVisitItem:
    """An approved candidate or suggestion, identified by place + timestamps."""

    place_id: str
    first_seen: datetime
    last_seen: datetime
    visit_date: date | None = None


@dataclass
class ApplyRequest:
    create_visits: list[CreateVisitItem] = field(default_factory=list)
    confirmed_suggestions: list[CreateVisitItem] = field(default_factory=list)
    delete_visit_ids: list[str] = field(default_factory=list)


class ApplyOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    PLACE_MISSING = "place_missing"


@dataclass
class ApplyResult:
    created: int = 0
    suggestions_confirmed: int = 0
    deleted: int = 0
    skipped: int = 0

    @property
    def message(self) -> str:
        total = self.created + self.suggestions_confirmed
        return (
            f"Created {total} visits ({self.created} matched, "
            f"{self.suggestions_confirmed} confirmed), deleted {self.deleted} stale visits."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "visitsCreated": self.created,
            "suggestionsConfirmed": self.suggestions_confirmed,
            "visitsDeleted": self.deleted,
            "skipped": self.skipped,
            "message": self.message,
        }
