from __future__ import annotations

from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.models import WebhookEvent
from app.utils.logger import logger


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Idempotency ledger does not support dialect {dialect!r}")


def mark_processed(
    provider: str,
    key: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    event_type: Optional[str] = None,
    db: Optional[Session] = None,
) -> bool:
    """Record ``(provider, key)`` and report whether this is the first time.

    Implemented as one ``INSERT ... ON CONFLICT (provider, idempotency_key)
    DO NOTHING``; the affected row count is the answer. There is no SELECT
    before the insert, so two concurrent deliveries of the same key cannot
    both see "not processed yet". The raw payload is kept for audit/replay.

    Args:
        provider: Source system ("basta", "stripe").
        key: Provider-assigned idempotency key / event id.
        payload: Parsed notification body.
        event_type: Optional event type for easier querying.
        db: Optional existing session; if omitted a short-lived one is used.
    """

    if not key:
        raise ValueError("Idempotency key is required")

    owns_session = False
    session: Session

    if db is None:
        session = SessionLocal()
        owns_session = True
    else:
        session = db

    try:
        insert = _insert_for(session)
        stmt = (
            insert(WebhookEvent)
            .values(
                provider=provider,
                idempotency_key=key,
                event_type=event_type,
                payload=payload or {},
            )
            .on_conflict_do_nothing(index_elements=["provider", "idempotency_key"])
        )
        result = session.execute(stmt)
        session.commit()
        first_time = result.rowcount == 1
        if not first_time:
            logger.info("[webhook] duplicate delivery ignored provider=%s key=%s", provider, key)
        return first_time

    except Exception:
        logger.error("Failed to record webhook event (provider=%s, key=%s)", provider, key, exc_info=True)
        session.rollback()
        raise

    finally:
        if owns_session:
            session.close()
