from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.models.dropship import FinancialSummary, LotsSummaryResponse, StuckLot
from app.models_sqlalchemy import get_db
from app.services import dropship_lots
from app.services.recovery.runs import latest_runs
from app.services.recovery.stuck_lots import WATCHED_STATUSES
from app.config import settings


router = APIRouter(prefix="/api/dropship/lots", tags=["dropship"])


@router.get("/summary", response_model=LotsSummaryResponse)
def lots_summary(db: Session = Depends(get_db)) -> LotsSummaryResponse:
    """Read-only dashboard: financials, lots past the escalation threshold, last scheduler run."""

    now = datetime.now(timezone.utc)
    stuck = []
    for status in WATCHED_STATUSES:
        for lot in dropship_lots.stale_lots(db, status=status, older_than_minutes=settings.STUCK_ALERT_MINUTES, now=now):
            stuck.append(
                StuckLot(
                    id=lot.id,
                    basta_item_id=lot.basta_item_id,
                    status=lot.status,
                    status_changed_at=dropship_lots.as_utc(lot.status_changed_at),
                    error_message=lot.error_message,
                )
            )

    runs = latest_runs(db, limit=1)
    last_run = None
    if runs:
        run = runs[0]
        last_run = {
            "id": run.id,
            "status": run.status,
            "halted_by": run.halted_by,
            "triggered_by": run.triggered_by,
            "started_at": dropship_lots.as_utc(run.started_at),
            "finished_at": dropship_lots.as_utc(run.finished_at),
        }

    return LotsSummaryResponse(
        financials=FinancialSummary(**dropship_lots.financial_summary(db)),
        stuck_lots=stuck,
        last_run=last_run,
    )
