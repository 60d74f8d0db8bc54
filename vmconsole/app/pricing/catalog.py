"""Pricing catalog: plans, company plan assignment and plan versioning."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ..billing.errors import PlanNotFoundError
from .models import PRICING_FIELDS, CompanyBilling, PricingPlan

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "created_at", "updated_at", "supersedes_plan_id"})


class PricingRepository(Protocol):
    """Persistence operations required by the pricing catalog."""

    def get_plan(self, plan_id: int) -> Optional[PricingPlan]:
        ...

    def list_plans(self, *, active_only: bool = True) -> Sequence[PricingPlan]:
        ...

    def get_default_plan(self) -> Optional[PricingPlan]:
        ...

    def insert_plan(self, plan: PricingPlan) -> PricingPlan:
        ...

    def update_plan(self, plan: PricingPlan) -> PricingPlan:
        ...

    def replace_plan_version(self, old_plan_id: int, new_plan: PricingPlan) -> PricingPlan:
        """Insert ``new_plan``, deactivate the old row and move its companies, atomically."""

    def clear_default_flag(self, *, except_plan_id: int) -> None:
        ...

    def plan_is_invoiced(self, plan_id: int) -> bool:
        ...

    def get_company_billing(self, company_id: int) -> Optional[CompanyBilling]:
        ...

    def upsert_company_billing(self, billing: CompanyBilling) -> CompanyBilling:
        ...

    def list_billable_companies(self) -> Sequence[CompanyBilling]:
        ...

    def set_next_billing_date(self, company_id: int, next_billing_date: Optional[date]) -> None:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    return clock() if clock else datetime.now(timezone.utc)


@dataclass
class PricingCatalog:
    """Read and administer pricing plans and company assignments."""

    repository: PricingRepository
    clock: Optional[Callable[[], datetime]] = None

    def get_plan(self, plan_id: int) -> PricingPlan:
        plan = self.repository.get_plan(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Pricing plan {plan_id} not found", context={"plan_id": plan_id})
        return plan

    def list_plans(self, *, active_only: bool = True) -> Sequence[PricingPlan]:
        return self.repository.list_plans(active_only=active_only)

    def get_default_plan(self) -> Optional[PricingPlan]:
        return self.repository.get_default_plan()

    def get_company_billing(self, company_id: int) -> Optional[CompanyBilling]:
        return self.repository.get_company_billing(company_id)

    def resolve_company_plan(self, company_id: int) -> Optional[PricingPlan]:
        """Return the company's current plan, or ``None`` when it is not billable."""

        billing = self.repository.get_company_billing(company_id)
        if billing is None or not billing.is_billable:
            return None
        return self.get_plan(billing.current_pricing_plan_id)

    def assign_plan(self, company_id: int, plan_id: Optional[int]) -> CompanyBilling:
        if plan_id is not None:
            plan = self.get_plan(plan_id)
            if not plan.is_active:
                raise ValueError(f"Pricing plan {plan_id} is not active")

        existing = self.repository.get_company_billing(company_id)
        if existing is None:
            billing = CompanyBilling(
                company_id=company_id,
                current_pricing_plan_id=plan_id,
                updated_at=_current_time(self.clock),
            )
        else:
            billing = existing.model_copy(
                update={"current_pricing_plan_id": plan_id, "updated_at": _current_time(self.clock)}
            )
        stored = self.repository.upsert_company_billing(billing)
        logger.info(
            "Assigned pricing plan",
            extra={"company_id": company_id, "plan_id": plan_id},
        )
        return stored

    def create_plan(self, plan: PricingPlan) -> PricingPlan:
        if plan.id is not None:
            raise ValueError("New plans must not carry an id")
        now = _current_time(self.clock)
        stored = self.repository.insert_plan(plan.model_copy(update={"created_at": now, "updated_at": now}))
        if stored.is_default and stored.id is not None:
            self.repository.clear_default_flag(except_plan_id=stored.id)
        logger.info("Created pricing plan", extra={"plan_id": stored.id, "plan_name": stored.name})
        return stored

    def update_plan(self, plan_id: int, changes: Mapping[str, Any]) -> PricingPlan:
        """Apply ``changes`` to a plan.

        Pricing changes to a plan that already backs an invoice never rewrite
        that row: a new version is inserted, the old one is deactivated and its
        companies move onto the new version.
        """

        unknown = set(changes) - (set(PricingPlan.model_fields) - _IMMUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported plan fields: {sorted(unknown)}")

        current = self.get_plan(plan_id)
        now = _current_time(self.clock)
        updated = PricingPlan.model_validate({**current.model_dump(), **changes, "updated_at": now})

        pricing_changed = any(getattr(updated, name) != getattr(current, name) for name in PRICING_FIELDS)
        if pricing_changed and self.repository.plan_is_invoiced(plan_id):
            new_version = updated.model_copy(
                update={"id": None, "supersedes_plan_id": plan_id, "created_at": now}
            )
            stored = self.repository.replace_plan_version(plan_id, new_version)
            logger.info(
                "Created new pricing plan version",
                extra={"plan_id": stored.id, "supersedes_plan_id": plan_id},
            )
        else:
            stored = self.repository.update_plan(updated)

        if stored.is_default and stored.id is not None:
            self.repository.clear_default_flag(except_plan_id=stored.id)
        return stored

    def list_billable_companies(self) -> Sequence[CompanyBilling]:
        return self.repository.list_billable_companies()

    def set_next_billing_date(self, company_id: int, next_billing_date: Optional[date]) -> None:
        self.repository.set_next_billing_date(company_id, next_billing_date)


__all__ = ["PricingCatalog", "PricingRepository"]
