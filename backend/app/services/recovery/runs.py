from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import RecoveryRun
from app.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_active_run(db: Session, *, now: Optional[datetime] = None) -> Optional[RecoveryRun]:
    """Return the newest ``running`` run younger than RECOVERY_RUN_STALE_MINUTES.

    Older ``running`` rows belong to a pass that crashed without reaching
    finish_run/fail_run and no longer block new runs.
    """

    cutoff = (now or _now_utc()) - timedelta(minutes=settings.RECOVERY_RUN_STALE_MINUTES)
    return (
        db.query(RecoveryRun)
        .filter(RecoveryRun.status == "running", RecoveryRun.started_at >= cutoff)
        .order_by(RecoveryRun.started_at.desc())
        .first()
    )


def start_run(db: Session, *, triggered_by: str) -> Optional[RecoveryRun]:
    """Start a new run if there is no fresh active run.

    Returns None when another pass is still in progress.
    """

    active = get_active_run(db)
    if active is not None:
        logger.info(
            "[recovery] run id=%s (triggered_by=%s) still running; not starting another",
            active.id,
            active.triggered_by,
        )
        return None

    run = RecoveryRun(triggered_by=triggered_by, status="running", started_at=_now_utc())
    db.add(run)
    db.commit()
    db.refresh(run)
    logger.info("[recovery] started run id=%s triggered_by=%s", run.id, triggered_by)
    return run


def finish_run(
    db: Session,
    run: RecoveryRun,
    *,
    summary: dict,
    halted_by: Optional[str] = None,
) -> None:
    run.status = "halted" if halted_by else "completed"
    run.halted_by = halted_by
    run.finished_at = _now_utc()
    run.summary_json = summary
    db.commit()
    logger.info("[recovery] finished run id=%s status=%s", run.id, run.status)


def fail_run(db: Session, run: RecoveryRun, *, error_message: str) -> None:
    try:
        db.rollback()
        run.status = "error"
        run.finished_at = _now_utc()
        run.summary_json = {"error": error_message}
        db.commit()
    except Exception:  # pragma: no cover - defensive
        logger.error("[recovery] could not mark run id=%s as failed", run.id, exc_info=True)
        db.rollback()
    logger.error("[recovery] run id=%s failed: %s", run.id, error_message)


def latest_runs(db: Session, *, limit: int = 10):
    return db.query(RecoveryRun).order_by(RecoveryRun.started_at.desc()).limit(limit).all()
