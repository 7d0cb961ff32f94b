import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Never point the test run at a real database.
os.environ["DATABASE_URL"] = "sqlite://"

# Add backend directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models_sqlalchemy import Base
from app.models_sqlalchemy import models  # noqa: F401  registers tables
from app.models_sqlalchemy.models import DropshipLot, LotStatus, PaymentProfile
from app.services import dropship_lots, payment_orders
from app.services.alerts import RecordingAlerter
from app.services.basta_client import SaleItem, SaleItems, SaleSummary
from app.services.cj_client import CJOrderDetail, CJOrderResult
from app.services.errors import CJApiError


ADDRESS = {
    "name": "Ada Buyer",
    "line1": "1 Main St",
    "line2": None,
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
    "phone": "5550100",
}

BASTA_ADDRESS = {
    "name": "Ada Buyer",
    "line1": "1 Main St",
    "line2": "",
    "city": "Springfield",
    "state": "IL",
    "postalCode": "62701",
    "country": "US",
    "phone": "5550100",
}


class FakeBasta:
    """In-memory auction platform."""

    def __init__(self) -> None:
        self.sales: Dict[str, SaleItems] = {}
        self.closed_sale_ids: List[str] = []
        self.fees: list = []
        self.addresses: Dict[str, Dict[str, Any]] = {}
        self.created_orders: List[Dict[str, Any]] = []
        self.added_lines: List[Any] = []
        self.registered_invoices: List[Dict[str, Any]] = []
        self.registered_payments: List[str] = []
        self.cancelled_orders: List[str] = []
        self.sale_item_calls: List[str] = []
        self.list_error: Optional[Exception] = None
        self.register_invoice_error: Optional[Exception] = None

    def add_sale(self, sale_id: str, items: List[SaleItem], currency: str = "USD") -> None:
        self.sales[sale_id] = SaleItems(currency=currency, items=list(items))
        if sale_id not in self.closed_sale_ids:
            self.closed_sale_ids.append(sale_id)

    def list_closed_sales(self) -> List[SaleSummary]:
        if self.list_error is not None:
            raise self.list_error
        return [SaleSummary(id=sale_id, status="CLOSED") for sale_id in self.closed_sale_ids]

    def get_sale_items(self, sale_id: str) -> SaleItems:
        self.sale_item_calls.append(sale_id)
        return self.sales.get(sale_id) or SaleItems(currency="USD", items=[])

    def get_account_fees(self):
        return self.fees

    def get_user_shipping_address(self, user_id: str):
        return self.addresses.get(user_id)

    def create_order(self, *, sale_id, user_id, currency, lines):
        order_id = f"bo_{len(self.created_orders) + 1}"
        self.created_orders.append({"id": order_id, "sale_id": sale_id, "user_id": user_id, "lines": list(lines)})
        return order_id

    def add_order_line(self, order_id, line):
        self.added_lines.append((order_id, line))
        return f"line_{len(self.added_lines)}"

    def register_invoice(self, *, order_id, external_id, url, due_date):
        if self.register_invoice_error is not None:
            raise self.register_invoice_error
        self.registered_invoices.append({"order_id": order_id, "external_id": external_id, "url": url})

    def register_payment(self, order_id):
        self.registered_payments.append(order_id)
        return f"pay_{order_id}"

    def cancel_payment_order(self, order_id):
        self.cancelled_orders.append(order_id)
        return True


class FakePayments:
    """In-memory payment processor with the StripeGateway surface."""

    def __init__(self) -> None:
        self.invoices: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.voided: List[str] = []
        self.create_calls = 0
        self.hosted_url = True

    def create_invoice(self, *, customer_id, payment_method_id, metadata):
        self.create_calls += 1
        invoice_id = f"in_{self.create_calls}"
        self.invoices[invoice_id] = {
            "id": invoice_id,
            "status": "draft",
            "customer": customer_id,
            "metadata": dict(metadata),
            "lines": {"data": []},
        }
        return dict(self.invoices[invoice_id])

    def add_invoice_item(self, *, customer_id, invoice_id, amount_cents, currency, description, metadata):
        line = {"amount": amount_cents, "currency": currency, "description": description, "metadata": dict(metadata)}
        self.invoices[invoice_id]["lines"]["data"].append(line)
        return line

    def finalize_invoice(self, invoice_id):
        invoice = self.invoices[invoice_id]
        invoice["status"] = "open"
        invoice["due_date"] = int(datetime(2026, 3, 8, tzinfo=timezone.utc).timestamp())
        if self.hosted_url:
            invoice["hosted_invoice_url"] = f"https://pay.test/{invoice_id}"
        return dict(invoice)

    def retrieve_invoice(self, invoice_id, *, expand_lines=False):
        return dict(self.invoices[invoice_id])

    def void_invoice(self, invoice_id):
        self.invoices[invoice_id]["status"] = "void"
        self.voided.append(invoice_id)
        return dict(self.invoices[invoice_id])

    def refund(self, *, payment_intent=None, charge=None, amount_cents=None, metadata=None, idempotency_key=None):
        refund = {
            "id": f"re_{len(self.refunds) + 1}",
            "payment_intent": payment_intent,
            "charge": charge,
            "amount": amount_cents,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        self.refunds.append(refund)
        return refund


class FakeCJ:
    """In-memory supplier."""

    def __init__(self) -> None:
        self.stock: Dict[str, int] = {}
        self.prices: Dict[str, int] = {}
        self.order_status: Dict[str, str] = {}
        self.tracking: Dict[str, str] = {}
        self.settings_payload: Dict[str, Any] = {}
        self.stock_calls: List[str] = []
        self.create_calls: List[Dict[str, Any]] = []
        self.pay_calls: List[str] = []
        self.confirm_calls: List[str] = []
        self.create_error: Optional[Exception] = None
        self.create_result: Optional[CJOrderResult] = None
        self.pay_error: Optional[Exception] = None

    def get_variant_stock(self, vid):
        self.stock_calls.append(vid)
        return self.stock.get(vid, 100)

    def get_variant_price_cents(self, pid, vid):
        return self.prices.get(vid)

    def create_order(self, *, order_number, vid, address, logistic_name, from_country, quantity=1):
        self.create_calls.append({"order_number": order_number, "vid": vid, "address": dict(address)})
        if self.create_error is not None:
            raise self.create_error
        if self.create_result is not None:
            return self.create_result
        order_id = f"cj_{len(self.create_calls)}"
        return CJOrderResult(
            order_id=order_id,
            order_number=order_number,
            order_status="CREATED",
            order_amount=50.0,
            raw={"orderId": order_id},
        )

    def pay_order(self, order_id):
        self.pay_calls.append(order_id)
        if self.pay_error is not None:
            raise self.pay_error

    def confirm_order(self, order_id):
        self.confirm_calls.append(order_id)

    def get_order_detail(self, order_id):
        return CJOrderDetail(
            order_id=order_id,
            order_status=self.order_status.get(order_id, "CREATED"),
            track_number=self.tracking.get(order_id),
            logistic_name="CJPacket",
        )

    def get_settings(self):
        return self.settings_payload


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def basta():
    return FakeBasta()


@pytest.fixture
def payments():
    return FakePayments()


@pytest.fixture
def cj():
    return FakeCJ()


@pytest.fixture
def alerter():
    return RecordingAlerter()


def make_lot(db, **overrides) -> DropshipLot:
    fields = {
        "basta_item_id": "item_1",
        "cj_product_id": "pid_1",
        "cj_variant_id": "vid_1",
        "cj_cost_cents": 4000,
        "cj_shipping_cents": 1000,
        "title": "Desk lamp",
        "status": LotStatus.PUBLISHED,
    }
    fields.update(overrides)
    return dropship_lots.register_lot(db, **fields)


def make_profile(db, user_id="user_1", payment_method="pm_1") -> PaymentProfile:
    profile = PaymentProfile(user_id=user_id, stripe_customer_id=f"cus_{user_id}", default_payment_method_id=payment_method)
    db.add(profile)
    db.commit()
    return profile


def make_invoiced_order(db, *, invoice_id="in_1", basta_order_id="bo_1", items=(("item_1", 10000),), sale_id="sale_1", user_id="user_1"):
    order = payment_orders.create_order(
        db, sale_id=sale_id, user_id=user_id, basta_order_id=basta_order_id, currency="USD"
    )
    for item_id, amount in items:
        payment_orders.add_order_item(db, order, item_id=item_id, amount_cents=amount)
    return payment_orders.mark_invoiced(
        db,
        order,
        stripe_invoice_id=invoice_id,
        invoice_url=f"https://pay.test/{invoice_id}",
        item_ids=[item_id for item_id, _ in items],
    )


def age_lot(db, lot: DropshipLot, *, minutes: int) -> DropshipLot:
    """Pretend ``lot`` entered its current status ``minutes`` ago."""

    past = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    db.query(DropshipLot).filter(DropshipLot.id == lot.id).update(
        {DropshipLot.status_changed_at: past, DropshipLot.updated_at: past}, synchronize_session=False
    )
    db.commit()
    db.refresh(lot)
    return lot


def supplier_error(message="insufficient balance") -> CJApiError:
    return CJApiError(message, code=1600100)
