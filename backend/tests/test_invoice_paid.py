from app.models_sqlalchemy.models import LotStatus, OrderItemStatus, OrderStatus
from app.services import payment_orders
from app.services.invoice_paid import (
    basta_address_to_shipping,
    handle_invoice_paid,
    handle_invoice_payment_failed,
    invoice_shipping_address,
)

from conftest import BASTA_ADDRESS, make_invoiced_order, make_lot


def _closed_lot(db, **overrides):
    fields = {
        "status": LotStatus.AUCTION_CLOSED,
        "winner_user_id": "user_1",
        "winning_bid_cents": 10000,
        "basta_sale_id": "sale_1",
        "basta_order_id": "bo_1",
    }
    fields.update(overrides)
    return make_lot(db, **fields)


def _invoice(invoice_id="in_1", item_ids=("item_1",), **extra):
    invoice = {"id": invoice_id, "lines": {"data": [{"metadata": {"itemId": i}} for i in item_ids]}}
    invoice.update(extra)
    return invoice


def _handle(db, invoice, basta, payments, cj, alerter):
    return handle_invoice_paid(db, invoice, basta=basta, payments=payments, cj=cj, alerter=alerter)


def test_paid_invoice_fulfills_the_lot(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    order = make_invoiced_order(db)
    basta.addresses["user_1"] = BASTA_ADDRESS

    report = _handle(db, _invoice(), basta, payments, cj, alerter)

    assert report["fulfilled"] == [{"lot_id": lot.id, "cj_order_id": "cj_1"}]
    assert report["failed"] == []
    db.refresh(lot)
    assert lot.status == LotStatus.CJ_PAID.value
    assert lot.stripe_invoice_id == "in_1"
    assert lot.shipping_address["postal_code"] == "62701"
    assert cj.create_calls[0]["address"]["city"] == "Springfield"
    db.refresh(order)
    assert order.status == OrderStatus.PAID.value
    assert basta.registered_payments == ["bo_1"]


def test_invoice_shipping_is_the_fallback_address(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    make_invoiced_order(db)
    invoice = _invoice(
        customer_shipping={
            "name": "Grace Buyer",
            "phone": None,
            "address": {
                "line1": "9 Side Rd",
                "line2": None,
                "city": "Portland",
                "state": "OR",
                "postal_code": "97201",
                "country": "US",
            },
        }
    )

    report = _handle(db, invoice, basta, payments, cj, alerter)

    assert len(report["fulfilled"]) == 1
    db.refresh(lot)
    assert lot.shipping_name == "Grace Buyer"
    assert lot.shipping_address["city"] == "Portland"


def test_no_address_leaves_lot_paid_with_alert(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    make_invoiced_order(db)

    report = _handle(db, _invoice(), basta, payments, cj, alerter)

    db.refresh(lot)
    assert lot.status == LotStatus.PAID.value
    assert lot.error_message.startswith("No shipping address found")
    assert report["failed"][0]["lot_id"] == lot.id
    assert alerter.sent[-1][0] == "critical"
    assert cj.create_calls == []


def test_lots_are_found_through_the_order_when_lines_lack_metadata(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    make_invoiced_order(db)
    basta.addresses["user_1"] = BASTA_ADDRESS
    payments.invoices["in_1"] = {"id": "in_1", "lines": {"data": [{"metadata": {}}]}}

    report = _handle(db, {"id": "in_1"}, basta, payments, cj, alerter)

    assert [f["lot_id"] for f in report["fulfilled"]] == [lot.id]


def test_redelivered_paid_event_skips_fulfilled_lot(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    make_invoiced_order(db)
    basta.addresses["user_1"] = BASTA_ADDRESS

    _handle(db, _invoice(), basta, payments, cj, alerter)
    again = _handle(db, _invoice(), basta, payments, cj, alerter)

    assert again["skipped"] == [lot.id]
    assert len(cj.create_calls) == 1


def test_order_with_items_awaiting_next_invoice_is_not_marked_paid(db, basta, payments, cj, alerter):
    _closed_lot(db)
    order = make_invoiced_order(db)
    payment_orders.add_order_item(
        db, order, item_id="item_late", amount_cents=700, status=OrderItemStatus.AWAITING_NEXT_INVOICE
    )
    basta.addresses["user_1"] = BASTA_ADDRESS

    _handle(db, _invoice(), basta, payments, cj, alerter)

    db.refresh(order)
    assert order.status == OrderStatus.INVOICE_ISSUED.value


def test_payment_failed_then_paid(db, basta, payments, cj, alerter):
    lot = _closed_lot(db)
    order = make_invoiced_order(db)
    basta.addresses["user_1"] = BASTA_ADDRESS

    failed = handle_invoice_payment_failed(db, _invoice(), payments=payments, alerter=alerter)

    assert failed["payment_failed_lots"] == [lot.id]
    db.refresh(lot)
    db.refresh(order)
    assert lot.status == LotStatus.PAYMENT_FAILED.value
    assert order.status == OrderStatus.PAYMENT_FAILED.value
    assert "Payment failed for invoice in_1" in alerter.sent[-1][1]

    report = _handle(db, _invoice(), basta, payments, cj, alerter)

    assert len(report["fulfilled"]) == 1
    db.refresh(lot)
    db.refresh(order)
    assert lot.status == LotStatus.CJ_PAID.value
    assert order.status == OrderStatus.PAID.value


def test_invoice_without_dropship_lots(db, basta, payments, cj, alerter):
    payments.invoices["in_7"] = {"id": "in_7", "lines": {"data": []}}

    report = _handle(db, {"id": "in_7"}, basta, payments, cj, alerter)

    assert report["lots"] == 0
    assert cj.create_calls == []


def test_address_mapping_helpers():
    assert basta_address_to_shipping(BASTA_ADDRESS)["postal_code"] == "62701"
    assert basta_address_to_shipping(BASTA_ADDRESS)["line2"] is None
    assert invoice_shipping_address({"customer_shipping": {"address": {"line1": ""}}}) is None
    assert invoice_shipping_address({"customer_name": "Ada", "customer_shipping": {"address": {"line1": "x"}}})["name"] == "Ada"
