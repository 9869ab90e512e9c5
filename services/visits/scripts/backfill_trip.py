"""
Run a visit backfill for one trip from the command line.

Usage:
    python -m services.visits.scripts.backfill_trip --user USER_ID --trip TRIP_ID
    python -m services.visits.scripts.backfill_trip --user U --trip T --from 2024-06-01 --to 2024-06-30
    python -m services.visits.scripts.backfill_trip --user U --trip T --apply

Without --apply this prints the preview report as JSON. With --apply every
strict candidate is committed (suggestions and stale deletions are left for
the user to review in the app).
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date

from services.visits.backfill.errors import TripNotFoundError
from services.visits.backfill.models import ApplyRequest, CreateVisitItem, DateRange
from services.visits.backfill.service import VisitBackfillService
from services.visits.config import settings
from services.visits.db.engine import standalone_session

logger = logging.getLogger(__name__)


async def run(user_id: str, trip_id: str, date_range: DateRange | None, apply: bool) -> dict:
    async with standalone_session() as session:
        service = VisitBackfillService(session, settings.reconciliation())
        report = await service.preview(user_id=user_id, trip_id=trip_id, date_range=date_range)
        if not apply:
            return report.to_dict()

        request = ApplyRequest(
            create_visits=[
                CreateVisitItem(
                    place_id=c.place_id,
                    first_seen=c.first_seen,
                    last_seen=c.last_seen,
                    visit_date=c.visit_date,
                )
                for c in report.new_visits
            ]
        )
        result = await service.apply(user_id=user_id, trip_id=trip_id, request=request)
        return result.to_dict()


def main() -> int:
    parser = argparse.ArgumentParser(description="Backfill trip visits from location history")
    parser.add_argument("--user", required=True, help="Owner user id")
    parser.add_argument("--trip", required=True, help="Trip id")
    parser.add_argument("--from", dest="from_date", type=date.fromisoformat, help="First local date (inclusive)")
    parser.add_argument("--to", dest="to_date", type=date.fromisoformat, help="Last local date (inclusive)")
    parser.add_argument("--apply", action="store_true", help="Commit all strict candidates")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    date_range = None
    if args.from_date or args.to_date:
        date_range = DateRange(start=args.from_date, end=args.to_date)

    try:
        output = asyncio.run(run(args.user, args.trip, date_range, args.apply))
    except TripNotFoundError as exc:
        logger.error("%s (trip=%s user=%s)", exc, args.trip, args.user)
        return 1

    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
