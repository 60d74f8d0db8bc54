"""Exception hierarchy for the metering and billing engine.

Expected business states (no plan, invoice already exists, nothing due) are
returned as typed results and never raised.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing engine failures."""

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


class LedgerInvariantError(BillingError):
    """A write would violate a ledger invariant and was refused."""


class InvoiceStateError(BillingError):
    """Requested invoice status transition is not allowed."""


class PlanNotFoundError(BillingError, LookupError):
    """Pricing plan does not exist."""


class InvoiceNotFoundError(BillingError, LookupError):
    """Invoice does not exist."""


class SubscriptionNotFoundError(BillingError, LookupError):
    """Company subscription does not exist."""


class ConcurrentModificationError(BillingError):
    """A compare-and-set write lost against a concurrent writer."""


class GatewayError(BillingError):
    """Payment gateway call failed."""


class GatewayTimeoutError(GatewayError):
    """Transient gateway failure (timeout, connection reset, 5xx); safe to retry."""


class GatewayDeclinedError(GatewayError):
    """Gateway refused the request or the charge was not paid."""


class GatewayNotConfiguredError(GatewayError):
    """No payment gateway is configured for this deployment."""


__all__ = [
    "BillingError",
    "ConcurrentModificationError",
    "GatewayDeclinedError",
    "GatewayError",
    "GatewayNotConfiguredError",
    "GatewayTimeoutError",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "LedgerInvariantError",
    "PlanNotFoundError",
    "SubscriptionNotFoundError",
]
