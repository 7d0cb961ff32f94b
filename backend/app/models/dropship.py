from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime


class WebhookAck(BaseModel):
    status: str
    detail: Optional[str] = None


class CronRunResponse(BaseModel):
    ok: bool
    run_id: Optional[str] = None
    skipped: Optional[str] = None
    halted: Optional[str] = None
    failed_steps: List[str] = []
    results: Dict[str, Any] = {}


class StuckLot(BaseModel):
    id: str
    basta_item_id: str
    status: str
    status_changed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class FinancialSummary(BaseModel):
    fulfilled_lots: int
    revenue_cents: int
    cost_cents: int
    profit_cents: int
    margin_bps: Optional[int] = None
    refunded_lots: int
    by_status: Dict[str, int]


class LotsSummaryResponse(BaseModel):
    financials: FinancialSummary
    stuck_lots: List[StuckLot]
    last_run: Optional[Dict[str, Any]] = None
