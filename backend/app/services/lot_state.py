from __future__ import annotations

from typing import Dict, FrozenSet, Union

from app.models_sqlalchemy.models import LotStatus
from app.services.errors import InvalidTransitionError


StatusLike = Union[str, LotStatus]


ALLOWED_TRANSITIONS: Dict[LotStatus, FrozenSet[LotStatus]] = {
    LotStatus.SOURCED: frozenset({LotStatus.LISTED, LotStatus.CANCELLED}),
    LotStatus.LISTED: frozenset({LotStatus.PUBLISHED, LotStatus.CANCELLED}),
    LotStatus.PUBLISHED: frozenset(
        {LotStatus.AUCTION_CLOSED, LotStatus.RESERVE_NOT_MET, LotStatus.CANCELLED}
    ),
    LotStatus.AUCTION_CLOSED: frozenset(
        {LotStatus.PAID, LotStatus.PAYMENT_FAILED, LotStatus.CANCELLED}
    ),
    LotStatus.PAID: frozenset(
        {
            LotStatus.CJ_ORDERED,
            LotStatus.CJ_OUT_OF_STOCK,
            LotStatus.CJ_PRICE_CHANGED,
            LotStatus.CANCELLED,
        }
    ),
    LotStatus.CJ_ORDERED: frozenset({LotStatus.CJ_PAID, LotStatus.CANCELLED}),
    LotStatus.CJ_PAID: frozenset({LotStatus.SHIPPED, LotStatus.CANCELLED}),
    LotStatus.SHIPPED: frozenset({LotStatus.DELIVERED, LotStatus.CANCELLED}),
    LotStatus.DELIVERED: frozenset(),
    LotStatus.RESERVE_NOT_MET: frozenset(),
    LotStatus.PAYMENT_FAILED: frozenset({LotStatus.PAID, LotStatus.CANCELLED}),
    LotStatus.CJ_OUT_OF_STOCK: frozenset({LotStatus.CANCELLED}),
    LotStatus.CJ_PRICE_CHANGED: frozenset({LotStatus.CANCELLED}),
    LotStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: FrozenSet[LotStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses the scheduler routes to the refund step rather than to retries.
REFUNDABLE_STATUSES: FrozenSet[LotStatus] = frozenset(
    {LotStatus.CJ_OUT_OF_STOCK, LotStatus.CJ_PRICE_CHANGED}
)

# Supplier money has been committed once a lot reaches any of these.
SPEND_STATUSES: FrozenSet[LotStatus] = frozenset(
    {LotStatus.CJ_ORDERED, LotStatus.CJ_PAID, LotStatus.SHIPPED, LotStatus.DELIVERED}
)


def normalize_status(value: StatusLike) -> LotStatus:
    """Coerce a stored string into a LotStatus (ValueError for unknown)."""

    if isinstance(value, LotStatus):
        return value
    return LotStatus(str(value))


def can_transition(current: StatusLike, target: StatusLike) -> bool:
    return normalize_status(target) in ALLOWED_TRANSITIONS[normalize_status(current)]


def ensure_transition(lot_id: str, current: StatusLike, target: StatusLike) -> LotStatus:
    """Validate ``current -> target`` and return the target status.

    Raises InvalidTransitionError for moves the lifecycle does not allow,
    including a self-transition.
    """

    current_status = normalize_status(current)
    target_status = normalize_status(target)
    if target_status not in ALLOWED_TRANSITIONS[current_status]:
        raise InvalidTransitionError(lot_id, current_status.value, target_status.value)
    return target_status


def is_terminal(status: StatusLike) -> bool:
    return normalize_status(status) in TERMINAL_STATUSES
