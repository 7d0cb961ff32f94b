"""Exception types shared by the drop-ship pipeline.

Guard failures (out of stock, price drift, circuit breakers) are *not*
exceptions: they are lot statuses and ``FulfillmentResult`` values. The
classes here cover the three remaining buckets: configuration problems,
transient/unsuccessful calls to external systems, and contract violations
that must stop the current unit of work.
"""

from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PipelineError):
    """A required setting (API key, secret) is missing."""


class ExternalApiError(PipelineError):
    """An external API call failed or returned an unsuccessful envelope."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Any = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.payload = payload


class BastaApiError(ExternalApiError):
    """Auction platform GraphQL error."""


class CJApiError(ExternalApiError):
    """Supplier API error (HTTP failure or envelope code != 200)."""


class InvalidTransitionError(PipelineError):
    """A lot status write that the lifecycle does not allow."""

    def __init__(self, lot_id: str, current: str, target: str) -> None:
        super().__init__(f"Invalid lot transition for {lot_id}: {current} -> {target}")
        self.lot_id = lot_id
        self.current = current
        self.target = target


class MissingPaymentProfileError(PipelineError):
    """Buyer has no payment customer or no default payment method."""

    def __init__(self, user_id: str, reason: str) -> None:
        super().__init__(f"Cannot invoice user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class InvoiceIssueError(PipelineError):
    """The payment processor produced an invoice we cannot use."""
