"""In-process Recovery Scheduler loop.

Alternative to the cron endpoint for single-instance deployments: when
``RECOVERY_LOOP_ENABLED`` is set, the FastAPI app starts
:func:`run_recovery_loop` on startup. Each pass runs in a worker thread with
its own session, so a slow external call never blocks the event loop.

A heartbeat is kept in the ``background_workers`` row named
``recovery_loop`` (last start/finish, status, consecutive ok/error runs).
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from app.config import settings
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import BackgroundWorker
from app.services.recovery import run_recovery_cycle
from app.utils.logger import logger


WORKER_NAME = "recovery_loop"


def _get_or_create_worker_row(db) -> Optional[BackgroundWorker]:
    try:
        worker = db.query(BackgroundWorker).filter(BackgroundWorker.worker_name == WORKER_NAME).one_or_none()
        if worker is None:
            worker = BackgroundWorker(worker_name=WORKER_NAME)
            db.add(worker)
            db.commit()
            db.refresh(worker)
        return worker
    except Exception as exc:  # pragma: no cover - defensive
        logger.error("Failed to load/create BackgroundWorker row for %s: %s", WORKER_NAME, exc)
        db.rollback()
        return None


def run_recovery_once(interval_seconds: Optional[int] = None) -> dict:
    """One scheduler pass plus heartbeat bookkeeping (blocking)."""

    db = SessionLocal()
    try:
        worker = _get_or_create_worker_row(db)
        if worker is not None:
            worker.interval_seconds = interval_seconds
            worker.last_started_at = datetime.now(timezone.utc)
            worker.last_status = "running"
            db.commit()

        try:
            report = run_recovery_cycle(db, triggered_by="loop")
        except Exception as exc:
            if worker is not None:
                db.rollback()
                worker.last_finished_at = datetime.now(timezone.utc)
                worker.last_status = "error"
                worker.last_error_message = str(exc)
                worker.runs_ok_in_row = 0
                worker.runs_error_in_row = (worker.runs_error_in_row or 0) + 1
                db.commit()
            raise

        if worker is not None:
            worker.last_finished_at = datetime.now(timezone.utc)
            if report.get("skipped"):
                worker.last_status = "skipped"
            else:
                worker.last_status = "halted" if report.get("halted") else "ok"
            worker.last_error_message = None
            worker.runs_ok_in_row = (worker.runs_ok_in_row or 0) + 1
            worker.runs_error_in_row = 0
            db.commit()
        return report
    finally:
        db.close()


async def run_recovery_loop(interval_seconds: Optional[int] = None) -> None:
    interval = interval_seconds or settings.RECOVERY_INTERVAL_SECONDS
    logger.info("[recovery] loop started (interval=%s seconds)", interval)

    while True:
        try:
            report = await asyncio.to_thread(run_recovery_once, interval)
            logger.info(
                "[recovery] loop pass done halted=%s failed_steps=%s",
                report.get("halted"),
                report.get("failed_steps"),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("[recovery] loop pass failed: %s", exc, exc_info=True)

        await asyncio.sleep(interval)


if __name__ == "__main__":
    asyncio.run(run_recovery_loop())
