"""Unit tests for the pricing catalog."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from vmconsole.app.billing import BillingPeriod, PlanNotFoundError
from vmconsole.app.pricing import BillingCycle, PricingCatalog, PricingPlan
from vmconsole.app.pricing.models import CompanyBilling, ResourceDimension, add_billing_cycle, add_months


@pytest.fixture
def catalog(pricing_repository, clock):
    return PricingCatalog(repository=pricing_repository, clock=clock)


def test_add_months_clamps_day_of_month():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 3, 31), -1) == date(2024, 2, 29)
    assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
    assert add_billing_cycle(date(2024, 1, 1), BillingCycle.YEARLY) == date(2025, 1, 1)
    assert add_billing_cycle(date(2024, 1, 1), BillingCycle.QUARTERLY, 2) == date(2024, 7, 1)


def test_anchor_day_restores_day_after_short_month():
    assert add_months(date(2024, 2, 29), 1, anchor_day=31) == date(2024, 3, 31)
    assert add_months(date(2024, 3, 31), 1, anchor_day=31) == date(2024, 4, 30)
    assert add_billing_cycle(date(2024, 6, 30), BillingCycle.QUARTERLY, anchor_day=31) == date(2024, 9, 30)
    assert add_billing_cycle(date(2024, 9, 30), BillingCycle.QUARTERLY, anchor_day=31) == date(2024, 12, 31)


@pytest.mark.parametrize(
    "day, cycle, anchor, expected",
    [
        (date(2024, 3, 20), BillingCycle.MONTHLY, None, (date(2024, 3, 1), date(2024, 4, 1))),
        (date(2024, 1, 15), BillingCycle.QUARTERLY, date(2024, 4, 1), (date(2024, 1, 1), date(2024, 4, 1))),
        (date(2024, 5, 2), BillingCycle.QUARTERLY, None, (date(2024, 4, 1), date(2024, 7, 1))),
        (date(2024, 3, 1), BillingCycle.QUARTERLY, date(2024, 2, 15), (date(2024, 2, 15), date(2024, 5, 15))),
        (date(2024, 8, 9), BillingCycle.YEARLY, None, (date(2024, 1, 1), date(2025, 1, 1))),
        (date(2024, 3, 5), BillingCycle.MONTHLY, date(2024, 3, 31), (date(2024, 2, 29), date(2024, 3, 31))),
    ],
)
def test_billing_period_for_cycle_aligns_to_anchor(day, cycle, anchor, expected):
    period = BillingPeriod.for_cycle(day, cycle, anchor)

    assert (period.start, period.end) == expected


def test_plan_exposes_allowances_by_dimension(standard_plan):
    assert standard_plan.included(ResourceDimension.CPU) == Decimal("4")
    assert standard_plan.included(ResourceDimension.STORAGE) == Decimal("100")
    assert standard_plan.overage_rate(ResourceDimension.MEMORY) == Decimal("2.00")
    assert PricingPlan(name="Lower", currency="eur").currency == "EUR"


def test_resolve_company_plan_returns_none_without_plan(catalog, pricing_repository, standard_plan):
    plan = catalog.create_plan(standard_plan)
    pricing_repository.upsert_company_billing(CompanyBilling(company_id=1))

    assert catalog.resolve_company_plan(1) is None
    assert catalog.resolve_company_plan(99) is None

    catalog.assign_plan(1, plan.id)
    assert catalog.resolve_company_plan(1) == plan


def test_assign_plan_rejects_inactive_and_missing_plans(catalog, standard_plan):
    inactive = catalog.create_plan(standard_plan.model_copy(update={"is_active": False}))

    with pytest.raises(ValueError):
        catalog.assign_plan(1, inactive.id)
    with pytest.raises(PlanNotFoundError):
        catalog.assign_plan(1, 404)


def test_assign_plan_none_makes_company_not_billable(catalog, standard_plan):
    plan = catalog.create_plan(standard_plan)
    catalog.assign_plan(7, plan.id)

    billing = catalog.assign_plan(7, None)

    assert billing.is_billable is False
    assert catalog.resolve_company_plan(7) is None
    assert [b.company_id for b in catalog.list_billable_companies()] == []


def test_create_default_plan_clears_previous_default(catalog, standard_plan):
    first = catalog.create_plan(standard_plan.model_copy(update={"is_default": True}))
    second = catalog.create_plan(standard_plan.model_copy(update={"name": "Pro", "is_default": True}))

    assert catalog.get_default_plan().id == second.id
    assert catalog.get_plan(first.id).is_default is False


def test_update_plan_in_place_when_not_invoiced(catalog, standard_plan):
    plan = catalog.create_plan(standard_plan)

    updated = catalog.update_plan(plan.id, {"overage_cpu_core_price": Decimal("6.00"), "name": "Standard v2"})

    assert updated.id == plan.id
    assert updated.overage_cpu_core_price == Decimal("6.00")
    assert len(catalog.list_plans(active_only=False)) == 1


def test_update_invoiced_plan_pricing_creates_new_version(catalog, pricing_repository, standard_plan):
    plan = catalog.create_plan(standard_plan)
    catalog.assign_plan(3, plan.id)
    pricing_repository.invoiced_plan_ids.add(plan.id)

    new_version = catalog.update_plan(plan.id, {"overage_cpu_core_price": Decimal("7.50")})

    assert new_version.id != plan.id
    assert new_version.supersedes_plan_id == plan.id
    old = catalog.get_plan(plan.id)
    assert old.overage_cpu_core_price == Decimal("5.00")
    assert old.is_active is False
    assert catalog.resolve_company_plan(3).id == new_version.id


def test_update_invoiced_plan_non_pricing_field_updates_in_place(catalog, pricing_repository, standard_plan):
    plan = catalog.create_plan(standard_plan)
    pricing_repository.invoiced_plan_ids.add(plan.id)

    updated = catalog.update_plan(plan.id, {"description": "Most popular"})

    assert updated.id == plan.id
    assert updated.description == "Most popular"


@pytest.mark.parametrize("changes", [{"id": 5}, {"created_at": None}, {"unknown": 1}])
def test_update_plan_rejects_unsupported_fields(catalog, standard_plan, changes):
    plan = catalog.create_plan(standard_plan)

    with pytest.raises(ValueError):
        catalog.update_plan(plan.id, changes)


def test_update_plan_validates_values(catalog, standard_plan):
    plan = catalog.create_plan(standard_plan)

    with pytest.raises(ValueError):
        catalog.update_plan(plan.id, {"overage_cpu_core_price": Decimal("-1")})
