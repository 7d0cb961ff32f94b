"""Recovery Scheduler: one periodic pass over the whole pipeline.

Step order matters. The spending cap is checked before anything that can
spend; the margin floor after refunds so it sees the latest corrections.
Either breaker halts the rest of the run. Every other step is isolated: an
exception is logged, alerted, written into the report and the next step
runs anyway.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import LotStatus
from app.services import dropship_lots
from app.services.alerts import Alerter, get_alerter
from app.services.basta_client import BastaClient, get_basta_client
from app.services.circuit_breakers import check_margin_floor, check_spending_cap
from app.services.cj_client import CJClient, get_cj_client
from app.services.dropship_fulfillment import fulfill_dropship_lot, resume_supplier_payment
from app.services.dropship_refund import refund_failed_lots
from app.services.recovery.quota import check_cj_quota
from app.services.recovery.runs import fail_run, finish_run, start_run
from app.services.recovery.stuck_lots import handle_stuck_lots
from app.services.sale_closed_processor import process_closed_sale
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.utils.logger import logger


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


class _Run:
    """Collects per-step results and failures for one scheduler pass."""

    def __init__(self, alerter: Alerter) -> None:
        self.alerter = alerter
        self.results: Dict[str, Any] = {}
        self.failed_steps: List[str] = []
        self.halted_by: Optional[str] = None

    def step(self, name: str, fn: Callable[[], Any], *, alert_on_error: bool = True) -> Any:
        try:
            value = fn()
        except Exception as exc:  # noqa: BLE001
            logger.error("[recovery] step %s failed", name, exc_info=True)
            self.results[name] = {"error": str(exc)}
            self.failed_steps.append(name)
            if alert_on_error:
                self.alerter.send(f"Recovery step {name} failed: {exc}")
            return None
        self.results[name] = value
        if isinstance(value, dict) and (value.get("errors") or value.get("failed")):
            self.failed_steps.append(name)
        return value


def _poll_closed_sales(db: Session, *, basta: BastaClient, payments: StripeGateway, alerter: Alerter) -> Dict[str, Any]:
    sales = basta.list_closed_sales()
    processed: List[Dict[str, Any]] = []
    errors: List[str] = []
    for sale in sales:
        try:
            processed.append(process_closed_sale(db, sale.id, basta=basta, payments=payments, alerter=alerter).as_dict())
        except Exception as exc:  # noqa: BLE001
            logger.error("[recovery] processing closed sale=%s failed", sale.id, exc_info=True)
            errors.append(f"sale {sale.id}: {exc}")
    return {"sales": len(sales), "processed": processed, "errors": errors}


def _retry_fulfillments(
    db: Session, *, cj: CJClient, alerter: Alerter, now: datetime, attempted: set
) -> Dict[str, Any]:
    """PAID lots without a supplier order, and CJ_ORDERED lots whose payment failed.

    PAID lots without a stored address cannot be retried; they are reported
    as errors so the run summary names them.
    """

    results: List[Dict[str, Any]] = []
    errors: List[str] = []
    deferred = 0

    candidates = []
    for lot in dropship_lots.list_lots(db, statuses=[LotStatus.PAID, LotStatus.CJ_ORDERED]):
        if lot.status == LotStatus.PAID.value and not lot.cj_order_id:
            if lot.shipping_address:
                candidates.append(lot)
            else:
                attempted.add(lot.id)
                logger.warning("[recovery] lot id=%s is PAID but has no shipping address", lot.id)
                errors.append(f"lot {lot.id}: is PAID but has no shipping address - cannot fulfill")
        elif lot.status == LotStatus.CJ_ORDERED.value and lot.cj_order_id and lot.cj_paid_at is None:
            candidates.append(lot)

    retry_errors: List[str] = []
    for lot in candidates:
        if check_spending_cap(db, now=now).tripped:
            deferred = len(candidates) - len(results) - len(retry_errors)
            logger.warning("[recovery] spending cap reached mid-run; %d retries deferred", deferred)
            break
        attempted.add(lot.id)
        try:
            if lot.status == LotStatus.PAID.value:
                outcome = fulfill_dropship_lot(db, lot, lot.shipping_address, cj=cj, alerter=alerter, now=now)
            else:
                outcome = resume_supplier_payment(db, lot, cj=cj, now=now)
            results.append(outcome.as_dict())
        except Exception as exc:  # noqa: BLE001
            logger.error("[recovery] fulfillment retry for lot id=%s failed", lot.id, exc_info=True)
            retry_errors.append(f"lot {lot.id}: {exc}")

    errors.extend(retry_errors)
    return {
        "attempted": len(results) + len(retry_errors),
        "succeeded": sum(1 for r in results if r["success"]),
        "deferred": deferred,
        "results": results,
        "errors": errors,
    }


def run_recovery_cycle(
    db: Session,
    *,
    basta: Optional[BastaClient] = None,
    cj: Optional[CJClient] = None,
    payments: Optional[StripeGateway] = None,
    alerter: Optional[Alerter] = None,
    now: Optional[datetime] = None,
    triggered_by: str = "cron",
) -> Dict[str, Any]:
    """Run every recovery step once and return ``{"ok", "halted", "results", ...}``.

    The run and its report are stored in ``recovery_runs``.
    """

    basta = basta or get_basta_client()
    cj = cj or get_cj_client()
    payments = payments or get_stripe_gateway()
    alerter = alerter or get_alerter()
    now = now or datetime.now(timezone.utc)

    record = start_run(db, triggered_by=triggered_by)
    if record is None:
        return {
            "ok": True,
            "run_id": None,
            "skipped": "another recovery run is still in progress",
            "halted": None,
            "failed_steps": [],
            "results": {},
        }

    run = _Run(alerter)
    try:
        _run_steps(db, run, basta=basta, cj=cj, payments=payments, alerter=alerter, now=now)
    except Exception as exc:
        fail_run(db, record, error_message=str(exc))
        raise

    report = {
        "ok": True,
        "run_id": record.id,
        "halted": run.halted_by,
        "failed_steps": list(run.failed_steps),
        "results": run.results,
    }
    finish_run(db, record, summary=report, halted_by=run.halted_by)
    return report


def _run_steps(
    db: Session,
    run: _Run,
    *,
    basta: BastaClient,
    cj: CJClient,
    payments: StripeGateway,
    alerter: Alerter,
    now: datetime,
) -> None:
    attempted: set = set()
    spend = run.step("spending_cap", lambda: check_spending_cap(db, now=now).as_dict())
    if spend is None:
        # Nothing may spend while the cap cannot be read.
        run.halted_by = "spending_cap"
        alerter.send("Daily spending cap could not be checked. Halting pipeline.", "critical")
    elif spend["tripped"]:
        run.halted_by = "spending_cap"
        alerter.send(
            f"Daily spending cap reached: {_dollars(spend['spent_cents'])} spent of "
            f"{_dollars(spend['cap_cents'])} cap. Halting pipeline.",
            "critical",
        )

    if run.halted_by is None:
        run.step("poll", lambda: _poll_closed_sales(db, basta=basta, payments=payments, alerter=alerter))
        run.step("fulfillment", lambda: _retry_fulfillments(db, cj=cj, alerter=alerter, now=now, attempted=attempted))
        run.step("refund", lambda: refund_failed_lots(db, payments=payments, basta=basta, alerter=alerter))

        margin = run.step("margin_floor", lambda: check_margin_floor(db, now=now).as_dict())
        if margin and margin["tripped"]:
            run.halted_by = "margin_floor"
            alerter.send(
                f"Margin floor breached: realized margin {margin['margin_bps'] / 100:.2f}% over "
                f"{margin['lots']} lot(s) is below {margin['floor_bps'] / 100:.2f}%. Halting pipeline.",
                "critical",
            )

    if run.halted_by is None:
        quota = run.step("quota", lambda: check_cj_quota(cj), alert_on_error=False)
        if quota and not quota["healthy"]:
            low = ", ".join(f"{q['endpoint']} ({q['remaining']} remaining)" for q in quota["critically_low"])
            alerter.send(f"CJ API quota critically low: {low}", "critical")

        run.step(
            "stuck_lots",
            lambda: handle_stuck_lots(
                db, basta=basta, cj=cj, payments=payments, alerter=alerter, now=now, skip_lot_ids=attempted
            ),
        )

    run.step("financials", lambda: dropship_lots.financial_summary(db), alert_on_error=False)

    if run.failed_steps:
        alerter.send(
            f"Recovery run finished with failures in: {', '.join(run.failed_steps)}"
            + (f" (halted by {run.halted_by})" if run.halted_by else "")
        )
    logger.info("[recovery] run done halted=%s failed_steps=%s", run.halted_by, run.failed_steps)
