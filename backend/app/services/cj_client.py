"""Supplier (CJ Dropshipping) API client.

Covers the calls the fulfillment pipeline needs: variant inventory, variant
price, order create/pay/confirm, order detail, and the account settings the
quota monitor reads. Every response is a ``{code, result, message, data}``
envelope; ``code != 200`` is raised as :class:`CJApiError` even when the HTTP
status was 200.

The access token is kept on the client instance and refreshed on demand;
``getAccessToken`` is rate limited by the supplier, so a process-wide client
from :func:`get_cj_client` is reused across calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from app.config import settings
from app.services.errors import CJApiError, ConfigurationError
from app.utils.logger import logger


TOKEN_REFRESH_MARGIN = timedelta(hours=1)


@dataclass
class CJOrderResult:
    order_id: Optional[str]
    order_number: Optional[str]
    order_status: Optional[str]
    order_amount: Optional[float]
    raw: Dict[str, Any]


@dataclass
class CJOrderDetail:
    order_id: str
    order_status: str
    track_number: Optional[str] = None
    logistic_name: Optional[str] = None


def _parse_expiry(value: Any) -> Optional[datetime]:
    if not value:
        return None
    s = str(value).strip()
    try:
        if s.endswith("Z"):
            s = s.replace("Z", "+00:00")
        dt = datetime.fromisoformat(s)
    except ValueError:
        logger.warning("[cj] could not parse token expiry '%s'", value)
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def price_to_cents(value: Any) -> int:
    """Supplier prices are decimal dollars (8.7); convert to integer cents."""

    return int(round(float(value) * 100))


class CJClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.api_key = api_key or settings.CJ_API_KEY
        self.base_url = (base_url or settings.CJ_API_BASE_URL).rstrip("/")
        self._http = http_client
        self._timeout = httpx.Timeout(timeout or settings.HTTP_TIMEOUT_SECONDS, connect=5.0)

        self._access_token: Optional[str] = None
        self._token_expiry: Optional[datetime] = None
        self._refresh_token: Optional[str] = None
        self._refresh_expiry: Optional[datetime] = None

    def _client(self) -> httpx.Client:
        if self._http is None:
            self._http = httpx.Client(timeout=self._timeout)
        return self._http

    # -- transport -----------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        skip_auth: bool = False,
    ) -> Any:
        headers = {"Content-Type": "application/json"}
        if not skip_auth:
            self._ensure_authenticated()
            headers["CJ-Access-Token"] = self._access_token or ""

        clean_params = {k: v for k, v in (params or {}).items() if v is not None}
        url = f"{self.base_url}{path}"
        try:
            resp = self._client().request(method, url, params=clean_params or None, json=body, headers=headers)
        except httpx.RequestError as exc:
            raise CJApiError(f"CJ request {method} {path} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise CJApiError(f"CJ API error: HTTP {resp.status_code} on {path}", status_code=resp.status_code)

        try:
            envelope = resp.json()
        except ValueError as exc:
            raise CJApiError(f"CJ API returned non-JSON body on {path}", status_code=resp.status_code) from exc

        code = envelope.get("code") if isinstance(envelope, dict) else None
        if code != 200:
            message = envelope.get("message") if isinstance(envelope, dict) else None
            raise CJApiError(f"CJ API error {code}: {message}", code=code, payload=envelope)
        return envelope.get("data")

    # -- auth ----------------------------------------------------------

    def _store_token(self, data: Dict[str, Any]) -> None:
        self._access_token = data.get("accessToken")
        self._refresh_token = data.get("refreshToken")
        self._token_expiry = _parse_expiry(data.get("accessTokenExpiryDate"))
        self._refresh_expiry = _parse_expiry(data.get("refreshTokenExpiryDate"))

    def authenticate(self) -> None:
        if not self.api_key:
            raise ConfigurationError("CJ_API_KEY must be configured")
        data = self._request("POST", "/authentication/getAccessToken", body={"apiKey": self.api_key}, skip_auth=True)
        self._store_token(data or {})
        logger.info("[cj] obtained access token (expires %s)", self._token_expiry)

    def _refresh(self) -> None:
        data = self._request(
            "POST",
            "/authentication/refreshAccessToken",
            body={"refreshToken": self._refresh_token},
            skip_auth=True,
        )
        self._store_token(data or {})
        logger.info("[cj] refreshed access token (expires %s)", self._token_expiry)

    def _ensure_authenticated(self) -> None:
        now = datetime.now(timezone.utc)
        if self._access_token and (self._token_expiry is None or self._token_expiry > now + TOKEN_REFRESH_MARGIN):
            return
        if self._refresh_token and (self._refresh_expiry is None or self._refresh_expiry > now):
            try:
                self._refresh()
                return
            except CJApiError as exc:
                logger.warning("[cj] token refresh failed, re-authenticating: %s", exc)
        self.authenticate()

    # -- catalog / inventory --------------------------------------------

    def get_product(self, pid: str) -> Dict[str, Any]:
        return self._request("GET", "/product/query", params={"pid": pid}) or {}

    def get_variant_price_cents(self, pid: str, vid: str) -> Optional[int]:
        """Current sell price of ``vid`` in cents, or None if the variant is gone."""

        product = self.get_product(pid)
        for variant in product.get("variants") or []:
            if variant.get("vid") == vid and variant.get("variantSellPrice") is not None:
                return price_to_cents(variant["variantSellPrice"])
        return None

    def get_variant_stock(self, vid: str) -> int:
        rows = self._request("GET", "/product/stock/queryByVid", params={"vid": vid}) or []
        return sum(int(row.get("totalInventoryNum") or 0) for row in rows)

    # -- orders --------------------------------------------------------

    def create_order(
        self,
        *,
        order_number: str,
        vid: str,
        address: Dict[str, Any],
        logistic_name: str,
        from_country: str,
        quantity: int = 1,
    ) -> CJOrderResult:
        line = ", ".join(part for part in (address.get("line1"), address.get("line2")) if part)
        body = {
            "orderNumber": order_number,
            "shippingCountryCode": address.get("country"),
            "shippingCustomerName": address.get("name"),
            "shippingAddress": line,
            "shippingCity": address.get("city"),
            "shippingProvince": address.get("state"),
            "shippingZip": address.get("postal_code"),
            "shippingPhone": address.get("phone"),
            "logisticName": logistic_name,
            "fromCountryCode": from_country,
            "payType": 2,  # pay from CJ balance
            "products": [{"vid": vid, "quantity": quantity}],
        }
        data = self._request("POST", "/shopping/order/createOrderV2", body=body)
        raw = data if isinstance(data, dict) else {"data": data}
        return CJOrderResult(
            order_id=raw.get("orderId"),
            order_number=raw.get("orderNumber"),
            order_status=raw.get("orderStatus"),
            order_amount=raw.get("orderAmount"),
            raw=raw,
        )

    def pay_order(self, order_id: str) -> None:
        self._request("POST", "/shopping/pay/payBalance", body={"orderId": order_id})

    def confirm_order(self, order_id: str) -> None:
        self._request("PATCH", "/shopping/order/confirmOrder", params={"orderId": order_id})

    def get_order_detail(self, order_id: str) -> CJOrderDetail:
        data = self._request("GET", "/shopping/order/getOrderDetail", params={"orderId": order_id}) or {}
        return CJOrderDetail(
            order_id=data.get("orderId") or order_id,
            order_status=str(data.get("orderStatus") or "UNKNOWN"),
            track_number=data.get("trackNumber"),
            logistic_name=data.get("logisticName"),
        )

    def get_settings(self) -> Dict[str, Any]:
        return self._request("GET", "/setting/get") or {}


_client_instance: Optional[CJClient] = None


def get_cj_client() -> CJClient:
    global _client_instance
    if _client_instance is None:
        _client_instance = CJClient()
    return _client_instance
