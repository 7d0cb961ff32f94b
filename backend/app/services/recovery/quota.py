from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from app.config import settings
from app.services.cj_client import CJClient
from app.utils.logger import logger


# Endpoints the pipeline cannot run without.
CRITICAL_CJ_ENDPOINTS = (
    "/product/query",
    "/product/stock/queryByVid",
    "/logistic/freightCalculate",
    "/shopping/order/createOrderV2",
    "/shopping/pay/payBalance",
)

GLOBAL_ENDPOINT = "(global)"
UNKNOWN = -1


@dataclass
class QuotaInfo:
    endpoint: str
    used: int
    total: int
    remaining: int


def _int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_quota(supplier_settings: Dict[str, Any]) -> List[QuotaInfo]:
    """Read per-endpoint call budgets out of the supplier settings payload.

    The payload shape varies between accounts: a per-endpoint list under
    ``apiCallLimits`` / ``quotaList`` / ``apiLimits``, a single global
    ``requestLimit`` / ``requestCount`` pair, or nothing. With nothing to go
    on, the critical endpoints are reported with remaining = -1 (unknown).
    """

    entries = None
    for key in ("apiCallLimits", "quotaList", "apiLimits"):
        if isinstance(supplier_settings.get(key), list):
            entries = supplier_settings[key]
            break

    if entries is not None:
        quotas = []
        for entry in entries:
            endpoint = str(entry.get("endpoint") or entry.get("apiPath") or entry.get("path") or "")
            total = _int(entry.get("total", entry.get("limit", entry.get("maxCount"))), 1000)
            used = _int(entry.get("used", entry.get("usedCount", entry.get("count"))), 0)
            quotas.append(QuotaInfo(endpoint=endpoint, used=used, total=total, remaining=total - used))
        tracked = [q for q in quotas if any(ep in q.endpoint for ep in CRITICAL_CJ_ENDPOINTS)]
        return tracked or quotas

    limit = _int(supplier_settings.get("requestLimit", supplier_settings.get("apiLimit")), 0)
    used = _int(supplier_settings.get("requestCount", supplier_settings.get("apiUsed")), 0)
    if limit > 0:
        return [QuotaInfo(endpoint=GLOBAL_ENDPOINT, used=used, total=limit, remaining=limit - used)]

    logger.warning("[quota] supplier settings carried no recognizable quota data; reporting unknown usage")
    return [QuotaInfo(endpoint=ep, used=UNKNOWN, total=1000, remaining=UNKNOWN) for ep in CRITICAL_CJ_ENDPOINTS]


def check_cj_quota(cj: CJClient, *, low_water: Optional[int] = None) -> Dict[str, Any]:
    threshold = settings.CJ_QUOTA_LOW_WATER if low_water is None else low_water
    quotas = parse_quota(cj.get_settings())
    low = [q for q in quotas if 0 <= q.remaining < threshold]
    for q in low:
        logger.warning("[quota] %s: %s of %s calls remaining", q.endpoint, q.remaining, q.total)
    return {
        "healthy": not low,
        "low_water": threshold,
        "quotas": [asdict(q) for q in quotas],
        "critically_low": [asdict(q) for q in low],
    }
