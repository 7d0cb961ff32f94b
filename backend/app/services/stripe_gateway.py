"""Payment processor (Stripe) gateway.

The only module that touches the ``stripe`` SDK. Callers get plain dicts
back so the pipeline code (and its tests) never depend on SDK object types.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import stripe

from app.config import settings
from app.services.errors import ConfigurationError
from app.utils.logger import logger


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    return obj.to_dict()


def expandable_id(value: Any) -> Optional[str]:
    """Return the id of an expandable field (either ``"pi_..."`` or ``{"id": ...}``)."""

    if not value:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class StripeGateway:
    def __init__(self, stripe_client=stripe, *, api_key: Optional[str] = None) -> None:
        self._stripe = stripe_client
        self._api_key = api_key or settings.STRIPE_SECRET_KEY

    def _key(self) -> str:
        if not self._api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY must be configured")
        return self._api_key

    # -- invoices ------------------------------------------------------

    def create_invoice(
        self,
        *,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        invoice = self._stripe.Invoice.create(
            api_key=self._key(),
            customer=customer_id,
            collection_method="charge_automatically",
            auto_advance=True,
            default_payment_method=payment_method_id,
            metadata=metadata,
        )
        return _as_dict(invoice)

    def add_invoice_item(
        self,
        *,
        customer_id: str,
        invoice_id: str,
        amount_cents: int,
        currency: str,
        description: str,
        metadata: Dict[str, str],
    ) -> Dict[str, Any]:
        item = self._stripe.InvoiceItem.create(
            api_key=self._key(),
            customer=customer_id,
            invoice=invoice_id,
            amount=amount_cents,
            currency=currency.lower(),
            description=description,
            metadata=metadata,
        )
        return _as_dict(item)

    def finalize_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return _as_dict(self._stripe.Invoice.finalize_invoice(invoice_id, api_key=self._key()))

    def retrieve_invoice(self, invoice_id: str, *, expand_lines: bool = False) -> Dict[str, Any]:
        expand = ["lines.data"] if expand_lines else None
        kwargs: Dict[str, Any] = {"api_key": self._key()}
        if expand:
            kwargs["expand"] = expand
        return _as_dict(self._stripe.Invoice.retrieve(invoice_id, **kwargs))

    def void_invoice(self, invoice_id: str) -> Dict[str, Any]:
        return _as_dict(self._stripe.Invoice.void_invoice(invoice_id, api_key=self._key()))

    # -- refunds -------------------------------------------------------

    def refund(
        self,
        *,
        payment_intent: Optional[str] = None,
        charge: Optional[str] = None,
        amount_cents: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Refund a payment; the whole payment unless ``amount_cents`` is given."""

        params: Dict[str, Any] = {"reason": "requested_by_customer", "metadata": metadata or {}}
        if amount_cents is not None:
            params["amount"] = amount_cents
        if payment_intent:
            params["payment_intent"] = payment_intent
        elif charge:
            params["charge"] = charge
        else:
            raise ValueError("refund requires a payment_intent or a charge")
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        refund = _as_dict(self._stripe.Refund.create(api_key=self._key(), **params))
        logger.info("[stripe] created refund %s", refund.get("id"))
        return refund

    # -- webhooks ------------------------------------------------------

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the Stripe-Signature header and return the event.

        Raises ``stripe.SignatureVerificationError`` on a bad signature and
        ConfigurationError when no webhook secret is configured.
        """

        secret = settings.STRIPE_WEBHOOK_SECRET
        if not secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET must be configured")
        event = self._stripe.Webhook.construct_event(payload, signature or "", secret)
        return _as_dict(event)


_default_gateway: Optional[StripeGateway] = None


def get_stripe_gateway() -> StripeGateway:
    global _default_gateway
    if _default_gateway is None:
        _default_gateway = StripeGateway()
    return _default_gateway
