from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.config import settings
from app.models.dropship import CronRunResponse
from app.models_sqlalchemy import get_db
from app.services.recovery import run_recovery_cycle
from app.utils.logger import logger


router = APIRouter(prefix="/api/cron", tags=["cron"])


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = settings.CRON_SECRET
    if not secret:
        logger.error("[recovery] CRON_SECRET is not configured; refusing scheduled run")
        raise HTTPException(status_code=401, detail="Unauthorized")
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.api_route("/process", methods=["GET", "POST"], response_model=CronRunResponse)
def process(db: Session = Depends(get_db), _: None = Depends(require_cron_secret)) -> CronRunResponse:
    """One Recovery Scheduler run.

    Always 200 once authenticated: step failures and circuit-breaker halts
    are reported in the body.
    """

    try:
        report = run_recovery_cycle(db, triggered_by="cron")
    except Exception as exc:  # noqa: BLE001
        logger.error("[recovery] scheduled run crashed", exc_info=True)
        return CronRunResponse(ok=False, failed_steps=["run"], results={"error": str(exc)})
    return CronRunResponse(**report)
