"""
SQLAlchemy DeclarativeBase models -- mirrors of the schema subset the visits
service touches.

Column names use camelCase to match the actual PostgreSQL column names.
SA does NOT convert them, so Python attributes are camelCase too.

IMPORTANT: These models are NOT used for migrations. The web app owns the
DDL; these are mirrors. Coordinates are plain latitude/longitude columns;
spatial queries build geography points on the fly with ST_MakePoint and rely
on the GIST expression index over (longitude, latitude).
"""

import uuid as _uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String, Text, func, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Trip(Base):
    __tablename__ = "trips"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String)
    createdAt: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updatedAt: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    regions: Mapped[list["Region"]] = relationship(back_populates="trip", lazy="raise")


class Region(Base):
    __tablename__ = "regions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    tripId: Mapped[str] = mapped_column(String, ForeignKey("trips.id"))
    name: Mapped[str] = mapped_column(String)

    trip: Mapped[Trip] = relationship(back_populates="regions", lazy="raise")
    places: Mapped[list["Place"]] = relationship(back_populates="region", lazy="raise")


class Place(Base):
    __tablename__ = "places"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    regionId: Mapped[str] = mapped_column(String, ForeignKey("regions.id"))
    name: Mapped[str] = mapped_column(String)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    iconName: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    markerColor: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    region: Mapped[Region] = relationship(back_populates="places", lazy="raise")


class Location(Base):
    """A single location ping. Read-only to this service."""

    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    # Server ingestion time
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    # Device-local time; authoritative for "which day"
    localTimestamp: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    isUserInvoked: Mapped[bool] = mapped_column(Boolean, default=False)


class PlaceVisitEvent(Base):
    """
    A committed visit. Snapshot columns are written once at creation and
    never updated; placeId becomes NULL when the place is deleted.
    """

    __tablename__ = "place_visit_events"
    __table_args__ = (
        # Store-level guard against two concurrent applies committing the
        # same (place, day); the engine treats a violation as a skip.
        Index(
            "IX_PlaceVisitEvents_UserId_PlaceId_VisitDate",
            "userId",
            "placeId",
            text('(DATE("arrivedAtUtc"))'),
            unique=True,
            postgresql_where=text('"placeId" IS NOT NULL'),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(_uuid.uuid4()))
    userId: Mapped[str] = mapped_column(String)
    placeId: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("places.id", ondelete="SET NULL"), nullable=True
    )
    arrivedAtUtc: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    lastSeenAtUtc: Mapped[datetime] = mapped_column(DateTime(timezone=False))
    endedAtUtc: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    tripIdSnapshot: Mapped[str] = mapped_column(String)
    tripNameSnapshot: Mapped[str] = mapped_column(String)
    regionNameSnapshot: Mapped[str] = mapped_column(String)
    placeNameSnapshot: Mapped[str] = mapped_column(String)
    placeLatitudeSnapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    placeLongitudeSnapshot: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notesHtml: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    iconNameSnapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    markerColorSnapshot: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String, nullable=True)
