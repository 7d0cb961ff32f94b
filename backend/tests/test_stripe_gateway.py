from types import SimpleNamespace

import pytest

from app.config import settings
from app.services.errors import ConfigurationError
from app.services.stripe_gateway import StripeGateway, expandable_id


class _Recorder:
    def __init__(self, result):
        self.result = result
        self.calls = []

    def __call__(self, *args, **kwargs):
        self.calls.append((args, kwargs))
        return self.result


def _fake_stripe(**resources):
    return SimpleNamespace(**resources)


def test_refund_passes_amount_and_idempotency_key():
    create = _Recorder({"id": "re_1", "status": "succeeded"})
    gateway = StripeGateway(_fake_stripe(Refund=SimpleNamespace(create=create)), api_key="sk_test")

    refund = gateway.refund(payment_intent="pi_1", amount_cents=1500, metadata={"lotId": "lot_1"}, idempotency_key="k1")

    assert refund["id"] == "re_1"
    _, kwargs = create.calls[0]
    assert kwargs["api_key"] == "sk_test"
    assert kwargs["payment_intent"] == "pi_1"
    assert kwargs["amount"] == 1500
    assert kwargs["idempotency_key"] == "k1"
    assert kwargs["metadata"] == {"lotId": "lot_1"}


def test_full_refund_by_charge_omits_amount():
    create = _Recorder({"id": "re_2"})
    gateway = StripeGateway(_fake_stripe(Refund=SimpleNamespace(create=create)), api_key="sk_test")

    gateway.refund(charge="ch_1")

    _, kwargs = create.calls[0]
    assert kwargs["charge"] == "ch_1"
    assert "amount" not in kwargs
    assert "payment_intent" not in kwargs


def test_refund_needs_a_payment_reference():
    gateway = StripeGateway(_fake_stripe(Refund=SimpleNamespace(create=_Recorder({}))), api_key="sk_test")

    with pytest.raises(ValueError):
        gateway.refund(amount_cents=100)


def test_invoice_creation_charges_the_default_method():
    create = _Recorder({"id": "in_1", "status": "draft"})
    gateway = StripeGateway(_fake_stripe(Invoice=SimpleNamespace(create=create)), api_key="sk_test")

    invoice = gateway.create_invoice(customer_id="cus_1", payment_method_id="pm_1", metadata={"orderId": "o1"})

    assert invoice["id"] == "in_1"
    _, kwargs = create.calls[0]
    assert kwargs["collection_method"] == "charge_automatically"
    assert kwargs["default_payment_method"] == "pm_1"


def test_missing_secret_key_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    gateway = StripeGateway(_fake_stripe(Invoice=SimpleNamespace(retrieve=_Recorder({}))))

    with pytest.raises(ConfigurationError):
        gateway.retrieve_invoice("in_1")


def test_construct_event_requires_webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    gateway = StripeGateway(_fake_stripe(), api_key="sk_test")

    with pytest.raises(ConfigurationError):
        gateway.construct_event(b"{}", "sig")


def test_construct_event_verifies_with_the_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_1")
    construct = _Recorder({"id": "evt_1", "type": "invoice.paid"})
    gateway = StripeGateway(_fake_stripe(Webhook=SimpleNamespace(construct_event=construct)), api_key="sk_test")

    event = gateway.construct_event(b"{}", "t=1,v1=x")

    assert event["id"] == "evt_1"
    assert construct.calls[0][0] == (b"{}", "t=1,v1=x", "whsec_1")


def test_expandable_id_accepts_ids_and_objects():
    assert expandable_id("pi_1") == "pi_1"
    assert expandable_id({"id": "pi_2"}) == "pi_2"
    assert expandable_id(SimpleNamespace(id="pi_3")) == "pi_3"
    assert expandable_id(None) is None
