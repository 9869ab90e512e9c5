"""
Visit backfill subsystem: reconciles location history against trip places.

Preview analyzes a trip without writing: strict visit candidates, weaker
"consider also" suggestions, and stale visits whose place was deleted or
moved. Apply commits the user-approved subset in one transaction.

Public API:
    from services.visits.backfill.service import VisitBackfillService
    from services.visits.backfill.scoring import score_confidence
    from services.visits.backfill.errors import TripNotFoundError
"""
