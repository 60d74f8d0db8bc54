"""Pricing catalog package: plans, allowances and company plan assignment."""

from .models import (
    PRICING_FIELDS,
    BillingCycle,
    CompanyBilling,
    PricingPlan,
    ResourceDimension,
    add_billing_cycle,
    add_months,
)
from .catalog import PricingCatalog, PricingRepository

__all__ = [
    "BillingCycle",
    "CompanyBilling",
    "PRICING_FIELDS",
    "PricingCatalog",
    "PricingPlan",
    "PricingRepository",
    "ResourceDimension",
    "add_billing_cycle",
    "add_months",
]
