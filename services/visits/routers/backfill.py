"""
Visit backfill endpoints: reconcile a trip's places against location history.

GET    /backfill/info/{trip_id} - size estimates before a long preview
GET    /backfill/preview/{trip_id} - new, suggested, stale and existing visits
POST   /backfill/apply/{trip_id} - commit approved creations and deletions
DELETE /backfill/clear/{trip_id} - delete every visit snapshotted to the trip

Auth model: X-User-Id header carries the authenticated user's id (set by the
BFF proxy). Trips are always looked up scoped to that user; a trip owned by
someone else is indistinguishable from a missing one (404).

Preview and info accept optional fromDate / toDate (inclusive, local dates).
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from services.visits.backfill.errors import TripNotFoundError
from services.visits.backfill.models import ApplyRequest, CreateVisitItem, DateRange
from services.visits.backfill.service import VisitBackfillService
from services.visits.config import settings
from services.visits.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/backfill", tags=["backfill"])

MAX_APPLY_ITEMS = 5_000


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateVisitPayload(BaseModel):
    """One approved candidate or suggestion."""

    placeId: str = Field(min_length=1)
    visitDate: date | None = None
    firstSeenUtc: datetime
    lastSeenUtc: datetime

    @field_validator("firstSeenUtc", "lastSeenUtc")
    @classmethod
    def as_naive_utc(cls, value: datetime) -> datetime:
        # Visit timestamp columns are naive UTC
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @model_validator(mode="after")
    def last_seen_not_before_first(self) -> "CreateVisitPayload":
        if self.lastSeenUtc < self.firstSeenUtc:
            raise ValueError("lastSeenUtc must not be before firstSeenUtc")
        return self

    def to_item(self) -> CreateVisitItem:
        return CreateVisitItem(
            place_id=self.placeId,
            first_seen=self.firstSeenUtc,
            last_seen=self.lastSeenUtc,
            visit_date=self.visitDate,
        )


class ApplyPayload(BaseModel):
    createVisits: list[CreateVisitPayload] = Field(default_factory=list, max_length=MAX_APPLY_ITEMS)
    confirmedSuggestions: list[CreateVisitPayload] = Field(
        default_factory=list, max_length=MAX_APPLY_ITEMS
    )
    deleteVisitIds: list[str] = Field(default_factory=list, max_length=MAX_APPLY_ITEMS)

    def to_request(self) -> ApplyRequest:
        return ApplyRequest(
            create_visits=[v.to_item() for v in self.createVisits],
            confirmed_suggestions=[v.to_item() for v in self.confirmedSuggestions],
            delete_visit_ids=list(self.deleteVisitIds),
        )


# ---------------------------------------------------------------------------
# Dependencies / helpers
# ---------------------------------------------------------------------------


def _require_user_id(request: Request) -> str:
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "MISSING_USER_ID",
                "message": "X-User-Id header is required.",
            },
        )
    return user_id


async def get_backfill_service(db: AsyncSession = Depends(get_db)) -> VisitBackfillService:
    return VisitBackfillService(db, settings.reconciliation())


def _date_range(from_date: date | None, to_date: date | None) -> DateRange | None:
    if from_date is None and to_date is None:
        return None
    if from_date is not None and to_date is not None and from_date > to_date:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "INVALID_DATE_RANGE",
                "message": "fromDate must be on or before toDate.",
            },
        )
    return DateRange(start=from_date, end=to_date)


def _not_found(exc: TripNotFoundError) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"code": "NOT_FOUND", "message": str(exc)},
    )


def _ok(request: Request, data: dict) -> dict:
    return {
        "success": True,
        "data": data,
        "requestId": request.state.request_id,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/info/{trip_id}")
async def backfill_info(
    trip_id: str,
    request: Request,
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    user_id = _require_user_id(request)
    date_range = _date_range(from_date, to_date)
    try:
        info = await service.info(user_id=user_id, trip_id=trip_id, date_range=date_range)
    except TripNotFoundError as exc:
        raise _not_found(exc)
    return _ok(request, info.to_dict())


@router.get("/preview/{trip_id}")
async def backfill_preview(
    trip_id: str,
    request: Request,
    from_date: date | None = Query(default=None, alias="fromDate"),
    to_date: date | None = Query(default=None, alias="toDate"),
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    """
    Read-only analysis. Nothing is written; the client picks which items to
    send back to /apply.
    """
    user_id = _require_user_id(request)
    date_range = _date_range(from_date, to_date)
    try:
        report = await service.preview(user_id=user_id, trip_id=trip_id, date_range=date_range)
    except TripNotFoundError as exc:
        raise _not_found(exc)
    return _ok(request, report.to_dict())


@router.post("/apply/{trip_id}")
async def backfill_apply(
    trip_id: str,
    body: ApplyPayload,
    request: Request,
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    user_id = _require_user_id(request)
    try:
        result = await service.apply(user_id=user_id, trip_id=trip_id, request=body.to_request())
    except TripNotFoundError as exc:
        raise _not_found(exc)
    logger.info("backfill/apply: user=%s trip=%s %s", user_id, trip_id, result.message)
    return _ok(request, result.to_dict())


@router.delete("/clear/{trip_id}")
async def backfill_clear(
    trip_id: str,
    request: Request,
    service: VisitBackfillService = Depends(get_backfill_service),
) -> dict:
    user_id = _require_user_id(request)
    try:
        deleted = await service.clear_visits(user_id=user_id, trip_id=trip_id)
    except TripNotFoundError as exc:
        raise _not_found(exc)
    return _ok(request, {"visitsDeleted": deleted})
