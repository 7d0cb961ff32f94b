"""Auction platform (Basta) management API client.

Thin synchronous wrapper over the GraphQL endpoint. Every call carries the
configured timeout; transport errors, non-2xx responses and GraphQL
``errors`` arrays all surface as :class:`BastaApiError` so callers can treat
them as transient and leave the work for the next scheduler run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.services.errors import BastaApiError, ConfigurationError
from app.utils.logger import logger


PAGE_SIZE = 50


@dataclass
class SaleSummary:
    id: str
    status: str
    title: Optional[str] = None


@dataclass
class SaleItem:
    """Normalized subset of a sale item node."""

    id: str
    status: str
    leader_id: Optional[str] = None
    current_bid: Optional[int] = None
    title: Optional[str] = None
    reserve_met: Optional[bool] = None


@dataclass
class SaleItems:
    currency: str
    items: List[SaleItem] = field(default_factory=list)


@dataclass
class AccountFee:
    id: str
    name: str
    type: str  # PERCENTAGE (basis points), AMOUNT (minor units), NOT_SET
    value: int
    lower_limit: int = 0
    upper_lte_limit: Optional[int] = None


@dataclass
class OrderLine:
    item_id: str
    amount_cents: int
    description: str
    fees: List[Dict[str, Any]] = field(default_factory=list)


SALES_QUERY = """
query ClosedSales($accountId: String!, $first: Int!, $after: String) {
  sales(accountId: $accountId, first: $first, after: $after) {
    edges { node { id status title } }
    pageInfo { hasNextPage endCursor }
  }
}
"""

SALE_ITEMS_QUERY = """
query SaleItems($accountId: String!, $saleId: String!, $first: Int!, $after: String) {
  sale(accountId: $accountId, id: $saleId) {
    id
    status
    currency
    items(first: $first, after: $after) {
      edges { node { id status leaderId currentBid title reserveMet } }
      pageInfo { hasNextPage endCursor }
    }
  }
}
"""

ACCOUNT_FEES_QUERY = """
query AccountFees($accountId: String!) {
  account(accountId: $accountId) {
    paymentDetails {
      accountFees { id name type value lowerLimit upperLteLimit }
    }
  }
}
"""

CREATE_ORDER_MUTATION = """
mutation CreateOrder($accountId: String!, $input: CreateOrderInput!) {
  createOrder(accountId: $accountId, input: $input) { id status }
}
"""

PUBLISH_ORDER_MUTATION = """
mutation PublishPaymentOrder($accountId: String!, $input: PublishPaymentOrderInput!) {
  publishPaymentOrder(accountId: $accountId, input: $input) { id status }
}
"""

CREATE_ORDER_LINE_MUTATION = """
mutation CreateOrderLine($accountId: String!, $input: CreateOrderLineInput!) {
  createOrderLine(accountId: $accountId, input: $input) { orderLineId }
}
"""

CREATE_INVOICE_MUTATION = """
mutation CreateInvoice($accountId: String!, $input: CreateInvoiceInput!) {
  createInvoice(accountId: $accountId, input: $input) { invoiceId url }
}
"""

CREATE_PAYMENT_MUTATION = """
mutation CreatePayment($accountId: String!, $input: CreatePaymentInput!) {
  createPayment(accountId: $accountId, input: $input) { paymentId }
}
"""

CANCEL_ORDER_MUTATION = """
mutation CancelPaymentOrder($accountId: String!, $input: CancelPaymentOrderInput!) {
  cancelPaymentOrder(accountId: $accountId, input: $input) { id status }
}
"""

# updateUser with no address payload returns the current UserInfo without
# modifying it; the plain user query returns a null profile for most users.
READ_USER_ADDRESS_MUTATION = """
mutation ReadUserAddress($accountId: String!, $input: UpdateUserInput!) {
  updateUser(accountId: $accountId, input: $input) {
    userId
    shippingAddress { id name company phone line1 line2 city state postalCode country isPrimary addressType }
    addressesV2 { id name company phone line1 line2 city state postalCode country isPrimary addressType }
  }
}
"""


def calculate_fees_for_amount(amount_cents: int, fees: List[AccountFee]) -> List[Dict[str, Any]]:
    """Buyer fees applicable to a hammer price.

    PERCENTAGE values are basis points (1500 == 15.00%), AMOUNT values are
    fixed minor units. A fee applies when ``lower_limit <= amount`` and, if
    set, ``amount <= upper_lte_limit``.
    """

    out: List[Dict[str, Any]] = []
    for fee in fees:
        if fee.type == "NOT_SET":
            continue
        if amount_cents < fee.lower_limit:
            continue
        if fee.upper_lte_limit is not None and amount_cents > fee.upper_lte_limit:
            continue
        if fee.type == "PERCENTAGE":
            value = int(round(amount_cents * fee.value / 10000))
        else:
            value = int(fee.value)
        if value > 0:
            out.append({"description": fee.name, "amount": value})
    return out


class BastaClient:
    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        account_id: Optional[str] = None,
        url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key or settings.BASTA_API_KEY
        self.account_id = account_id or settings.BASTA_ACCOUNT_ID
        self.url = url or settings.BASTA_MANAGEMENT_API_URL
        self._http = http_client
        self._timeout = httpx.Timeout(timeout or settings.HTTP_TIMEOUT_SECONDS, connect=5.0)
        self._fees_cache: Optional[List[AccountFee]] = None

    # -- transport -----------------------------------------------------

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=self._timeout)
        return self._http

    def _gql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.account_id:
            raise ConfigurationError("BASTA_API_KEY and BASTA_ACCOUNT_ID must be configured")

        headers = {
            "Content-Type": "application/json",
            "x-account-id": self.account_id,
            "x-api-key": self.api_key,
        }
        try:
            resp = self._client().post(self.url, json={"query": query, "variables": variables}, headers=headers)
        except httpx.RequestError as exc:
            raise BastaApiError(f"Basta request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise BastaApiError(
                f"Basta HTTP {resp.status_code}",
                status_code=resp.status_code,
                payload=resp.text[:500],
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise BastaApiError("Basta returned a non-JSON body", status_code=resp.status_code) from exc

        errors = body.get("errors") or []
        if errors:
            message = ", ".join(str(e.get("message", e)) for e in errors)
            raise BastaApiError(f"Basta GraphQL: {message}", payload=errors)
        return body.get("data") or {}

    # -- queries -------------------------------------------------------

    def list_closed_sales(self) -> List[SaleSummary]:
        sales: List[SaleSummary] = []
        after: Optional[str] = None
        while True:
            data = self._gql(SALES_QUERY, {"accountId": self.account_id, "first": PAGE_SIZE, "after": after})
            connection = data.get("sales") or {}
            edges = connection.get("edges") or []
            if not edges:
                break
            for edge in edges:
                node = (edge or {}).get("node")
                if node and node.get("status") == "CLOSED":
                    sales.append(SaleSummary(id=node["id"], status=node["status"], title=node.get("title")))
            page = connection.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            after = page.get("endCursor")
        return sales

    def get_sale_items(self, sale_id: str) -> SaleItems:
        """Every item of ``sale_id``, following the cursor until exhausted."""

        currency: Optional[str] = None
        items: List[SaleItem] = []
        after: Optional[str] = None
        while True:
            data = self._gql(
                SALE_ITEMS_QUERY,
                {"accountId": self.account_id, "saleId": sale_id, "first": PAGE_SIZE, "after": after},
            )
            sale = data.get("sale")
            if not sale:
                break
            currency = currency or sale.get("currency")
            connection = sale.get("items") or {}
            for edge in connection.get("edges") or []:
                node = (edge or {}).get("node")
                if not node:
                    continue
                bid = node.get("currentBid")
                items.append(
                    SaleItem(
                        id=node["id"],
                        status=node.get("status") or "",
                        leader_id=node.get("leaderId"),
                        current_bid=int(bid) if bid is not None else None,
                        title=node.get("title"),
                        reserve_met=node.get("reserveMet"),
                    )
                )
            page = connection.get("pageInfo") or {}
            if not page.get("hasNextPage"):
                break
            after = page.get("endCursor")
        return SaleItems(currency=currency or "USD", items=items)

    def get_account_fees(self) -> List[AccountFee]:
        if self._fees_cache is not None:
            return self._fees_cache
        data = self._gql(ACCOUNT_FEES_QUERY, {"accountId": self.account_id})
        raw = ((data.get("account") or {}).get("paymentDetails") or {}).get("accountFees") or []
        self._fees_cache = [
            AccountFee(
                id=f.get("id", ""),
                name=f.get("name", ""),
                type=f.get("type", "NOT_SET"),
                value=int(f.get("value") or 0),
                lower_limit=int(f.get("lowerLimit") or 0),
                upper_lte_limit=f.get("upperLteLimit"),
            )
            for f in raw
        ]
        return self._fees_cache

    def get_user_shipping_address(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Primary shipping address, else the first SHIPPING entry of addressesV2."""

        data = self._gql(
            READ_USER_ADDRESS_MUTATION,
            {"accountId": self.account_id, "input": {"userId": user_id, "idType": "IDENTITY_PROVIDER_ID"}},
        )
        info = data.get("updateUser")
        if not info:
            return None
        primary = info.get("shippingAddress") or {}
        if primary.get("line1"):
            return primary
        for addr in info.get("addressesV2") or []:
            if addr.get("addressType") == "SHIPPING":
                return addr
        return None

    # -- mutations -----------------------------------------------------

    def create_order(self, *, sale_id: str, user_id: str, currency: str, lines: List[OrderLine]) -> str:
        """Create and publish a payment order; returns the platform order id."""

        payload = {
            "saleId": sale_id,
            "userId": user_id,
            "title": f"Order for sale {sale_id}",
            "currency": currency,
            "orderLines": [
                {
                    "itemId": line.item_id,
                    "amount": line.amount_cents,
                    "description": line.description,
                    "fees": line.fees,
                }
                for line in lines
            ],
        }
        data = self._gql(CREATE_ORDER_MUTATION, {"accountId": self.account_id, "input": payload})
        order_id = (data.get("createOrder") or {}).get("id")
        if not order_id:
            raise BastaApiError(f"Basta createOrder returned no id for sale {sale_id} user {user_id}")

        self._gql(PUBLISH_ORDER_MUTATION, {"accountId": self.account_id, "input": {"orderId": order_id}})
        logger.info("[basta] created+published order=%s sale=%s user=%s", order_id, sale_id, user_id)
        return order_id

    def add_order_line(self, order_id: str, line: OrderLine) -> Optional[str]:
        data = self._gql(
            CREATE_ORDER_LINE_MUTATION,
            {
                "accountId": self.account_id,
                "input": {
                    "orderId": order_id,
                    "itemId": line.item_id,
                    "amount": line.amount_cents,
                    "description": line.description,
                    "fees": line.fees,
                },
            },
        )
        return (data.get("createOrderLine") or {}).get("orderLineId")

    def register_invoice(self, *, order_id: str, external_id: str, url: str, due_date: str) -> None:
        self._gql(
            CREATE_INVOICE_MUTATION,
            {
                "accountId": self.account_id,
                "input": {"orderId": order_id, "externalID": external_id, "url": url, "dueDate": due_date},
            },
        )
        logger.info("[basta] registered invoice=%s on order=%s", external_id, order_id)

    def register_payment(self, order_id: str) -> Optional[str]:
        """Tell the platform the order has been paid."""

        data = self._gql(CREATE_PAYMENT_MUTATION, {"accountId": self.account_id, "input": {"orderId": order_id}})
        payment_id = (data.get("createPayment") or {}).get("paymentId")
        logger.info("[basta] registered payment=%s on order=%s", payment_id, order_id)
        return payment_id

    def cancel_payment_order(self, order_id: str) -> bool:
        """Best effort; returns False instead of raising."""

        try:
            data = self._gql(CANCEL_ORDER_MUTATION, {"accountId": self.account_id, "input": {"orderId": order_id}})
        except Exception as exc:  # noqa: BLE001
            logger.error("[refund] Failed to cancel Basta payment order %s: %s", order_id, exc)
            return False
        if (data.get("cancelPaymentOrder") or {}).get("id"):
            logger.info("[refund] Cancelled Basta payment order %s", order_id)
            return True
        logger.warning("[refund] cancelPaymentOrder returned no id for order %s", order_id)
        return False


_client_instance: Optional[BastaClient] = None


def get_basta_client() -> BastaClient:
    global _client_instance
    if _client_instance is None:
        _client_instance = BastaClient()
    return _client_instance
