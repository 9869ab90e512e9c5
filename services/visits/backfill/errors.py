"""Domain errors raised by the backfill engine and mapped to HTTP by the router."""


class BackfillError(Exception):
    """Base class for backfill failures surfaced to the caller."""


class TripNotFoundError(BackfillError):
    """Trip does not exist or is not owned by the requesting user."""

    def __init__(self, trip_id: str) -> None:
        super().__init__("Trip not found or access denied.")
        self.trip_id = trip_id
