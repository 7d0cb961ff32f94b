from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Dict, Optional, Tuple

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.config import settings
from app.models.dropship import WebhookAck
from app.models_sqlalchemy import get_db
from app.services.errors import ConfigurationError
from app.services.invoice_paid import handle_invoice_paid, handle_invoice_payment_failed
from app.services.sale_closed_processor import process_closed_sale
from app.services.stripe_gateway import get_stripe_gateway
from app.services.webhook_ledger import mark_processed
from app.utils.logger import logger, redact


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

BASTA_TOKEN_HEADER = "x-fastbid-webhook-token"
BASTA_SIGNATURE_HEADER = "x-basta-signature"


def _parse_signature_header(header: str) -> Tuple[Optional[str], list]:
    timestamp: Optional[str] = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def verify_basta_signature(raw_body: bytes, header: str, secret: str, *, now: Optional[float] = None) -> Tuple[bool, str]:
    """Check ``t=<ts>,v1=<hex>`` = HMAC-SHA256(secret, "<ts>.<body>") within the tolerance window."""

    timestamp, signatures = _parse_signature_header(header)
    if not timestamp or not signatures:
        return False, "Malformed signature header"
    try:
        ts = int(timestamp)
    except ValueError:
        return False, "Malformed signature timestamp"

    current = time.time() if now is None else now
    if abs(current - ts) > settings.BASTA_WEBHOOK_TOLERANCE_SECONDS:
        return False, "Signature timestamp outside tolerance"

    signed = timestamp.encode("utf-8") + b"." + raw_body
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    if any(hmac.compare_digest(expected, sig) for sig in signatures):
        return True, "ok"
    return False, "Invalid signature"


def _authenticate_basta(request: Request, raw_body: bytes) -> None:
    secret = settings.BASTA_WEBHOOK_SECRET
    if not secret:
        raise HTTPException(status_code=400, detail="Webhook not configured")

    token = (request.headers.get(BASTA_TOKEN_HEADER) or "").strip()
    if token and hmac.compare_digest(token.encode("utf-8"), secret.strip().encode("utf-8")):
        return

    signature = (request.headers.get(BASTA_SIGNATURE_HEADER) or "").strip()
    if not signature:
        reason = "Missing signature"
    else:
        valid, reason = verify_basta_signature(raw_body, signature, settings.basta_webhook_key or "")
        if valid:
            return
    logger.warning("[webhook] rejected basta delivery: %s headers=%s", reason, redact(dict(request.headers)))
    raise HTTPException(status_code=401, detail=reason)


@router.post("/basta", response_model=WebhookAck)
async def basta_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    """Auction platform action hook.

    Every delivery is recorded in the idempotency ledger first; a repeated
    ``idempotencyKey`` is acknowledged as ``ignored`` and not processed.
    ``SaleStatusChanged`` with ``saleStatus == CLOSED`` runs the sale-closed
    processor.

    Only the body read runs on the event loop; the ledger write and the
    processing are blocking and go to the threadpool.
    """

    raw_body = await request.body()
    _authenticate_basta(request, raw_body)

    try:
        payload: Dict[str, Any] = json.loads(raw_body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict) or not payload.get("idempotencyKey"):
        raise HTTPException(status_code=400, detail="Missing idempotencyKey")

    return await run_in_threadpool(_handle_basta_delivery, db, payload)


def _handle_basta_delivery(db: Session, payload: Dict[str, Any]) -> WebhookAck:
    action = payload.get("actionType")
    if not mark_processed("basta", str(payload["idempotencyKey"]), payload, event_type=action, db=db):
        return WebhookAck(status="ignored")

    data = payload.get("data") or {}
    if action == "SaleStatusChanged" and data.get("saleStatus") == "CLOSED" and data.get("saleId"):
        sale_id = data["saleId"]
        try:
            result = process_closed_sale(db, sale_id)
        except Exception as exc:
            # The delivery is already in the ledger; the scheduler's poll step picks the sale up again.
            logger.error("[webhook] processing closed sale=%s failed", sale_id, exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to process sale {sale_id}") from exc
        logger.info("[webhook] sale=%s processed: %s", sale_id, result.as_dict())

    return WebhookAck(status="ok")


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> WebhookAck:
    raw_body = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = get_stripe_gateway().construct_event(raw_body, signature)
    except ConfigurationError as exc:
        logger.error("[webhook] stripe webhook not configured: %s", exc)
        raise HTTPException(status_code=400, detail="Webhook not configured")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    if not event.get("id"):
        raise HTTPException(status_code=400, detail="Missing event id")

    return await run_in_threadpool(_handle_stripe_event, db, event)


def _handle_stripe_event(db: Session, event: Dict[str, Any]) -> WebhookAck:
    event_id = event.get("id")
    event_type = event.get("type")
    if not mark_processed("stripe", event_id, event, event_type=event_type, db=db):
        return WebhookAck(status="ignored")

    invoice = ((event.get("data") or {}).get("object")) or {}
    try:
        if event_type in ("invoice.paid", "invoice.payment_succeeded"):
            report = handle_invoice_paid(db, invoice)
            logger.info("[webhook] invoice=%s paid: %s", invoice.get("id"), report)
        elif event_type == "invoice.payment_failed":
            handle_invoice_payment_failed(db, invoice)
    except Exception as exc:
        logger.error("[webhook] stripe event %s (%s) failed", event_id, event_type, exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to process {event_type}") from exc

    return WebhookAck(status="ok")
