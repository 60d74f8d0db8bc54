"""Domain models for the pricing catalog."""
from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BillingCycle(str, Enum):
    """Length of the recurring window a plan bills for."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return {"monthly": 1, "quarterly": 3, "yearly": 12}[self.value]


class ResourceDimension(str, Enum):
    """Metered resource dimensions that carry an allowance and an overage rate."""

    CPU = "cpu"
    MEMORY = "memory"
    STORAGE = "storage"


# Changing any of these on a plan that already backs an invoice creates a new plan version.
PRICING_FIELDS = frozenset(
    {
        "base_price",
        "currency",
        "included_cpu_cores",
        "included_memory_gb",
        "included_storage_gb",
        "overage_cpu_core_price",
        "overage_memory_gb_price",
        "overage_storage_gb_price",
        "billing_cycle",
    }
)


def add_months(value: date, months: int, anchor_day: Optional[int] = None) -> date:
    """Shift ``value`` by ``months`` calendar months, clamping the day of month.

    ``anchor_day`` replaces ``value.day`` as the target day, so a series that
    was clamped in a short month returns to its anchor afterwards.
    """

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(anchor_day or value.day, last_day))


def add_billing_cycle(value: date, cycle: BillingCycle, count: int = 1, anchor_day: Optional[int] = None) -> date:
    return add_months(value, cycle.months * count, anchor_day)


class PricingPlan(BaseModel):
    """Named plan with included allowances and per-unit overage prices."""

    id: Optional[int] = None
    name: str = Field(min_length=1, max_length=120)
    description: Optional[str] = None
    base_price: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    included_cpu_cores: Decimal = Field(default=Decimal("0"), ge=0)
    included_memory_gb: Decimal = Field(default=Decimal("0"), ge=0)
    included_storage_gb: Decimal = Field(default=Decimal("0"), ge=0)
    overage_cpu_core_price: Decimal = Field(default=Decimal("0"), ge=0)
    overage_memory_gb_price: Decimal = Field(default=Decimal("0"), ge=0)
    overage_storage_gb_price: Decimal = Field(default=Decimal("0"), ge=0)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    is_active: bool = True
    is_default: bool = False
    display_order: int = 0
    supersedes_plan_id: Optional[int] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    def included(self, dimension: ResourceDimension) -> Decimal:
        if dimension == ResourceDimension.CPU:
            return self.included_cpu_cores
        if dimension == ResourceDimension.MEMORY:
            return self.included_memory_gb
        return self.included_storage_gb

    def overage_rate(self, dimension: ResourceDimension) -> Decimal:
        if dimension == ResourceDimension.CPU:
            return self.overage_cpu_core_price
        if dimension == ResourceDimension.MEMORY:
            return self.overage_memory_gb_price
        return self.overage_storage_gb_price


class CompanyBilling(BaseModel):
    """Per-company billing settings; no plan means the company is not billable."""

    company_id: int
    current_pricing_plan_id: Optional[int] = None
    gateway_customer_ref: Optional[str] = None
    billing_email: Optional[str] = None
    next_billing_date: Optional[date] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_billable(self) -> bool:
        return self.current_pricing_plan_id is not None


__all__ = [
    "BillingCycle",
    "CompanyBilling",
    "PRICING_FIELDS",
    "PricingPlan",
    "ResourceDimension",
    "add_billing_cycle",
    "add_months",
]
