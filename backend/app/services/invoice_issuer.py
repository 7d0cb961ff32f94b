from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import PaymentOrder
from app.services.alerts import Alerter, get_alerter
from app.services.basta_client import AccountFee, BastaClient, calculate_fees_for_amount, get_basta_client
from app.services.errors import InvoiceIssueError, MissingPaymentProfileError
from app.services.payment_orders import get_payment_profile, mark_invoiced, pending_items, record_invoice_id
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.utils.logger import logger


def _due_date(invoice: dict) -> datetime:
    epoch = invoice.get("due_date") or invoice.get("created")
    if not epoch:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(epoch), tz=timezone.utc)


def issue_invoice(
    db: Session,
    order: PaymentOrder,
    *,
    basta: Optional[BastaClient] = None,
    payments: Optional[StripeGateway] = None,
    fees: Optional[List[AccountFee]] = None,
    alerter: Optional[Alerter] = None,
) -> PaymentOrder:
    """Create, fill and finalize the one invoice ``order`` is allowed to have.

    Lines come from the order's PENDING_INVOICE items (plus buyer fees, when
    the platform account defines any). The invoice id is written to the order
    as soon as the draft exists, so no later failure (line items, finalize,
    missing hosted URL, platform registration) can lead to a second invoice;
    such an order is left for manual review with a critical alert.

    Raises:
        MissingPaymentProfileError: buyer has no customer or no default
            payment method. No invoice is created.
        InvoiceIssueError: finalized invoice has no hosted URL.
    """

    if order.stripe_invoice_id:
        logger.info("[invoice] order id=%s already invoiced (%s), skipping", order.id, order.stripe_invoice_id)
        return order

    profile = get_payment_profile(db, order.user_id)
    if profile is None or not profile.stripe_customer_id:
        raise MissingPaymentProfileError(order.user_id, "no payment customer on file")
    if not profile.default_payment_method_id:
        raise MissingPaymentProfileError(order.user_id, "no default payment method")

    lines = pending_items(order)
    if not lines:
        logger.info("[invoice] order id=%s has no pending items to invoice", order.id)
        return order

    payments = payments or get_stripe_gateway()
    basta = basta or get_basta_client()
    alerter = alerter or get_alerter()
    fees = fees or []
    currency = (order.currency or settings.INVOICE_CURRENCY).lower()
    basta_order_id = order.basta_order_id or ""

    invoice = payments.create_invoice(
        customer_id=profile.stripe_customer_id,
        payment_method_id=profile.default_payment_method_id,
        metadata={
            "saleId": order.sale_id,
            "userId": order.user_id,
            "bastaOrderId": basta_order_id,
            "orderId": order.id,
        },
    )
    invoice_id = invoice["id"]
    order = record_invoice_id(db, order, invoice_id)
    logger.info("[invoice] draft invoice=%s for order id=%s (%d lines)", invoice_id, order.id, len(lines))

    try:
        for line in lines:
            description = line.description or "Winning bid"
            payments.add_invoice_item(
                customer_id=profile.stripe_customer_id,
                invoice_id=invoice_id,
                amount_cents=line.amount_cents,
                currency=currency,
                description=description,
                metadata={"itemId": line.item_id, "bastaOrderId": basta_order_id},
            )
            for fee in calculate_fees_for_amount(line.amount_cents, fees):
                payments.add_invoice_item(
                    customer_id=profile.stripe_customer_id,
                    invoice_id=invoice_id,
                    amount_cents=fee["amount"],
                    currency=currency,
                    description=f"{fee['description']} - {description}",
                    metadata={"itemId": line.item_id, "bastaOrderId": basta_order_id, "feeType": "buyer_premium"},
                )

        finalized = payments.finalize_invoice(invoice_id)
    except Exception:
        logger.error("[invoice] failed while building invoice=%s for order id=%s", invoice_id, order.id, exc_info=True)
        alerter.send(
            f"Invoice {invoice_id} for order {order.basta_order_id or order.id} could not be completed; "
            "it stays attached to the order and needs manual review",
            "critical",
        )
        raise

    hosted_url = finalized.get("hosted_invoice_url")
    if not hosted_url:
        alerter.send(
            f"Invoice {invoice_id} for order {order.basta_order_id or order.id} was finalized without a hosted URL; "
            "buyer cannot be sent a payment link",
            "critical",
        )
        raise InvoiceIssueError(f"Finalized invoice {invoice_id} for order {order.id} has no hosted URL")

    due_at = _due_date(finalized)
    order = mark_invoiced(
        db,
        order,
        stripe_invoice_id=finalized.get("id") or invoice_id,
        invoice_url=hosted_url,
        due_at=due_at,
        item_ids=[line.item_id for line in lines],
    )

    if order.basta_order_id:
        try:
            basta.register_invoice(
                order_id=order.basta_order_id,
                external_id=order.stripe_invoice_id,
                url=hosted_url,
                due_date=due_at.isoformat(),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "[invoice] failed to register invoice=%s with platform order=%s",
                order.stripe_invoice_id,
                order.basta_order_id,
                exc_info=True,
            )
            alerter.send(
                f"Invoice {order.stripe_invoice_id} for order {order.basta_order_id} was issued but could not be "
                f"registered with the auction platform: {exc}"
            )

    logger.info("[invoice] issued invoice=%s for order id=%s url=%s", order.stripe_invoice_id, order.id, hosted_url)
    return order
