from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.models_sqlalchemy.models import LotStatus
from app.services import dropship_lots
from app.services.cj_client import CJOrderResult
from app.services.dropship_fulfillment import (
    fulfill_dropship_lot,
    missing_address_fields,
    price_drift_exceeded,
    resume_supplier_payment,
)

from conftest import ADDRESS, make_lot, supplier_error


def _paid_lot(db, **overrides):
    fields = {"status": LotStatus.PAID, "winning_bid_cents": 10000, "winner_user_id": "user_1"}
    fields.update(overrides)
    return make_lot(db, **fields)


def test_end_to_end_profit(db, cj, alerter):
    lot = _paid_lot(db)

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert result.success
    assert result.cj_order_id == "cj_1"
    assert lot.status == "CJ_PAID"
    assert lot.cj_order_id == "cj_1"
    assert lot.cj_order_number.startswith("PLACER-item_1-")
    assert lot.total_cost_cents == 5000
    assert lot.profit_cents == 10000 - 5000
    assert lot.cj_paid_at is not None
    assert lot.shipping_address["postal_code"] == "62701"
    assert lot.shipping_name == "Ada Buyer"
    assert cj.pay_calls == ["cj_1"]
    assert cj.confirm_calls == ["cj_1"]
    assert alerter.sent == []


def test_out_of_stock_blocks_the_order(db, cj, alerter):
    lot = _paid_lot(db)
    cj.stock["vid_1"] = 0

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.status == "CJ_OUT_OF_STOCK"
    assert cj.create_calls == []
    assert len(alerter.sent) == 1
    assert "out of stock" in alerter.sent[0][1]


def test_stock_lookup_failure_is_not_blocking(db, cj, alerter):
    lot = _paid_lot(db)

    def broken(vid):
        raise supplier_error("timeout")

    cj.get_variant_stock = broken

    assert fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter).success


def test_price_increase_of_exactly_twenty_percent_is_allowed(db, cj, alerter):
    lot = _paid_lot(db, cj_cost_cents=10000, cj_shipping_cents=0, winning_bid_cents=20000)
    cj.prices["vid_1"] = 12000

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert result.success
    assert lot.status == "CJ_PAID"


def test_price_increase_above_twenty_percent_blocks(db, cj, alerter):
    lot = _paid_lot(db, cj_cost_cents=10000, cj_shipping_cents=0, winning_bid_cents=20000)
    cj.prices["vid_1"] = 12001

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.status == "CJ_PRICE_CHANGED"
    assert lot.error_message == "CJ price increased from 10000 to 12001 cents"
    assert cj.create_calls == []
    assert "needs refund" in alerter.sent[0][1]


def test_price_drift_boundary():
    assert not price_drift_exceeded(10000, 12000, 20)
    assert price_drift_exceeded(10000, 12001, 20)
    assert not price_drift_exceeded(10000, 9000, 20)


def test_malformed_order_response_is_a_failure(db, cj, alerter):
    lot = _paid_lot(db)
    cj.create_result = CJOrderResult(
        order_id=None, order_number=None, order_status=None, order_amount=None, raw={"message": "ok"}
    )

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.status == "PAID"
    assert lot.cj_order_id is None
    assert lot.error_message.startswith("CJ order creation returned no order ID. Response:")
    assert cj.pay_calls == []
    assert alerter.sent[0][0] == "critical"


def test_order_creation_error_is_recorded(db, cj, alerter):
    lot = _paid_lot(db)
    cj.create_error = supplier_error("logistics unavailable")

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.status == "PAID"
    assert lot.error_message == "CJ order failed: logistics unavailable"
    assert alerter.sent[0][0] == "critical"


def test_payment_failure_keeps_order_and_resume_pays_the_same_order(db, cj, alerter):
    lot = _paid_lot(db)
    cj.pay_error = supplier_error("insufficient balance")

    first = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not first.success
    assert lot.status == "CJ_ORDERED"
    assert lot.cj_order_id == "cj_1"
    assert lot.cj_paid_at is None
    assert lot.error_message == "CJ payment failed: insufficient balance"

    cj.pay_error = None
    second = resume_supplier_payment(db, lot, cj=cj)

    assert second.success
    assert lot.status == "CJ_PAID"
    assert lot.cj_order_id == "cj_1"
    assert lot.error_message is None
    assert len(cj.create_calls) == 1
    assert cj.pay_calls == ["cj_1", "cj_1"]


def test_resume_skips_payment_when_supplier_already_paid(db, cj):
    lot = _paid_lot(db, status=LotStatus.CJ_ORDERED, cj_order_id="cj_9", total_cost_cents=5000)
    cj.order_status["cj_9"] = "UNSHIPPED"

    result = resume_supplier_payment(db, lot, cj=cj)

    assert result.success
    assert lot.status == "CJ_PAID"
    assert lot.profit_cents == 5000
    assert cj.pay_calls == []


def test_resume_requires_an_existing_supplier_order(db, cj):
    lot = _paid_lot(db)

    result = resume_supplier_payment(db, lot, cj=cj)

    assert not result.success
    assert cj.pay_calls == []


def test_spending_cap_blocks_before_any_supplier_call(db, cj, alerter, monkeypatch):
    monkeypatch.setattr(settings, "DAILY_SPENDING_CAP_CENTS", 0)
    lot = _paid_lot(db)

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert "spending cap" in result.reason
    assert cj.stock_calls == []
    assert cj.create_calls == []
    assert lot.status == "PAID"
    assert lot.shipping_address["line1"] == "1 Main St"


def test_auction_closed_lot_is_moved_to_paid_first(db, cj, alerter):
    lot = _paid_lot(db, status=LotStatus.AUCTION_CLOSED)

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert result.success
    assert lot.status == "CJ_PAID"


def test_wrong_status_is_rejected_without_side_effects(db, cj, alerter):
    lot = make_lot(db)

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.status == "PUBLISHED"
    assert cj.stock_calls == []


def test_lot_with_supplier_order_is_never_ordered_twice(db, cj, alerter):
    lot = _paid_lot(db, cj_order_id="cj_existing")

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not result.success
    assert cj.create_calls == []


def test_incomplete_address_is_rejected(db, cj, alerter):
    lot = _paid_lot(db)
    address = dict(ADDRESS, postal_code="", city=None)

    result = fulfill_dropship_lot(db, lot, address, cj=cj, alerter=alerter)

    assert not result.success
    assert lot.error_message == "Shipping address missing fields: city, postal_code"
    assert cj.stock_calls == []


def test_missing_address_fields():
    assert missing_address_fields(None) == ["name", "line1", "city", "state", "postal_code", "country"]
    assert missing_address_fields(dict(ADDRESS, state="  ")) == ["state"]
    assert missing_address_fields(ADDRESS) == []


def _second_session(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)()


def test_overlapping_fulfillment_places_one_supplier_order(engine, db, cj, alerter):
    lot = _paid_lot(db)
    other = _second_session(engine)
    overlapping = []
    real_stock = cj.get_variant_stock

    def stock_while_another_worker_starts(vid):
        if not overlapping:
            twin = dropship_lots.get_lot(other, lot.id)
            overlapping.append(fulfill_dropship_lot(other, twin, ADDRESS, cj=cj, alerter=alerter))
        return real_stock(vid)

    cj.get_variant_stock = stock_while_another_worker_starts
    try:
        result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)
    finally:
        other.close()

    assert result.success
    assert not overlapping[0].success
    assert "already being fulfilled" in overlapping[0].reason
    assert len(cj.create_calls) == 1
    assert cj.pay_calls == ["cj_1"]
    assert lot.status == "CJ_PAID"
    assert lot.fulfillment_claimed_at is None


def test_claim_is_released_when_the_order_is_deferred(db, cj, alerter):
    lot = _paid_lot(db)
    cj.create_error = supplier_error("gateway timeout")

    first = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert not first.success
    assert lot.status == "PAID"
    assert lot.fulfillment_claimed_at is None

    cj.create_error = None
    second = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter)

    assert second.success
    assert len(cj.create_calls) == 2


def test_live_claim_blocks_and_abandoned_claim_is_taken_over(db, cj, alerter):
    lot = _paid_lot(db)
    now = datetime.now(timezone.utc)
    assert dropship_lots.claim_lot(db, lot, LotStatus.PAID, now=now - timedelta(minutes=5))
    assert not dropship_lots.claim_lot(db, lot, LotStatus.PAID, now=now)

    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter, now=now)

    assert not result.success
    assert cj.create_calls == []
    assert lot.fulfillment_claimed_at is not None

    dropship_lots.release_claim(db, lot)
    stale = now - timedelta(minutes=settings.FULFILLMENT_CLAIM_TTL_MINUTES + 1)
    assert dropship_lots.claim_lot(db, lot, LotStatus.PAID, now=stale)
    result = fulfill_dropship_lot(db, lot, ADDRESS, cj=cj, alerter=alerter, now=now)

    assert result.success
    assert len(cj.create_calls) == 1


def test_overlapping_payment_retry_pays_once(engine, db, cj):
    lot = _paid_lot(db, status=LotStatus.CJ_ORDERED, cj_order_id="cj_9", total_cost_cents=5000)
    other = _second_session(engine)
    overlapping = []
    real_detail = cj.get_order_detail

    def detail_while_another_worker_starts(order_id):
        if not overlapping:
            twin = dropship_lots.get_lot(other, lot.id)
            overlapping.append(resume_supplier_payment(other, twin, cj=cj))
        return real_detail(order_id)

    cj.get_order_detail = detail_while_another_worker_starts
    try:
        result = resume_supplier_payment(db, lot, cj=cj)
    finally:
        other.close()

    assert result.success
    assert not overlapping[0].success
    assert "already being paid" in overlapping[0].reason
    assert cj.pay_calls == ["cj_9"]
    assert lot.status == "CJ_PAID"
