"""
SQLAlchemy async database module.

Re-exports engine, session, and model utilities for the FastAPI service.
"""

from services.visits.db.engine import create_engine, standalone_session
from services.visits.db.session import get_db
from services.visits.db.models import (
    Base,
    Trip,
    Region,
    Place,
    Location,
    PlaceVisitEvent,
)

__all__ = [
    "create_engine",
    "standalone_session",
    "get_db",
    "Base",
    "Trip",
    "Region",
    "Place",
    "Location",
    "PlaceVisitEvent",
]
