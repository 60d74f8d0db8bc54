"""Domain models for gateway-billed company subscriptions."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionStatus(str, Enum):
    """Local lifecycle status of a company subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


# Remote statuses reported by the payment gateway, mapped onto local ones.
REMOTE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIAL,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "incomplete": SubscriptionStatus.SUSPENDED,
    "paused": SubscriptionStatus.SUSPENDED,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def local_status_for_remote(remote_status: str) -> SubscriptionStatus:
    """Map a gateway status onto the local lifecycle; unknown statuses suspend."""

    return REMOTE_STATUS_MAP.get(remote_status.strip().lower(), SubscriptionStatus.SUSPENDED)


class CompanySubscription(BaseModel):
    """Recurring subscription whose charges are collected through the gateway."""

    id: int
    company_id: int
    plan_id: int
    status: SubscriptionStatus
    current_period_start: date
    current_period_end: date
    billing_anchor_day: Optional[int] = Field(default=None, ge=1, le=31)
    gateway_subscription_ref: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_period(self) -> "CompanySubscription":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end must not precede current_period_start")
        return self

    @property
    def anchor_day(self) -> int:
        """Day of month periods renew on; falls back to the current period start."""

        return self.billing_anchor_day or self.current_period_start.day

    @property
    def charge_idempotency_key(self) -> str:
        return f"charge-{self.id}-{self.current_period_end.isoformat()}"


class GatewaySubscription(BaseModel):
    """Subscription state as reported by the payment gateway."""

    ref: str
    status: str
    customer_ref: Optional[str] = None
    current_period_start: Optional[date] = None
    current_period_end: Optional[date] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class GatewayInvoice(BaseModel):
    """Gateway-side invoice created for a subscription charge."""

    ref: str
    status: str
    amount_due: Optional[int] = None
    currency: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def paid(self) -> bool:
        return self.status == "paid"


class ChargeBatchResult(BaseModel):
    """Aggregate outcome of one subscription charge run."""

    run_date: date
    processed: int = 0
    charged: int = 0
    failed: int = 0
    failed_subscription_ids: List[int] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LifecycleSweepResult(BaseModel):
    """Aggregate outcome of a past-due check or cancellation sweep."""

    run_date: date
    examined: int = 0
    transitioned: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "ChargeBatchResult",
    "CompanySubscription",
    "GatewayInvoice",
    "GatewaySubscription",
    "LifecycleSweepResult",
    "REMOTE_STATUS_MAP",
    "SubscriptionStatus",
    "local_status_for_remote",
]
