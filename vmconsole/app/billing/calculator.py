"""Bill calculation over the snapshot ledger.

Aggregation policy: each dimension is billed on its time-weighted average
over the metered days of the period. The divisor is the number of distinct
days that carry at least one snapshot for the company, so a VM that existed
for half the metered days contributes half its allocation. Company totals are
rounded once to cents (half-up) before overage is computed, and each
dimension's overage is rounded once. The per-VM breakdown is an allocation of
the company overage, never an independent computation.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Set, Tuple

from ..metering.models import ResourceSnapshot
from ..metering.service import SnapshotRepository
from ..pricing.catalog import PricingCatalog
from ..pricing.models import PricingPlan, ResourceDimension
from .errors import LedgerInvariantError
from .models import ZERO, BillEstimate, BillingPeriod, DimensionUsage, Invoice, VMCost

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class ActiveInvoiceLookup(Protocol):
    def find_active_invoice(self, company_id: int, period_start: date) -> Optional[Invoice]:
        ...


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def overage_amount(total_used: Decimal, included: Decimal, unit_price: Decimal) -> Decimal:
    """``max(0, total_used - included) * unit_price`` rounded to cents."""

    return round_money(max(ZERO, total_used - included) * unit_price)


def allocate_cents(amount: Decimal, weights: Mapping[int, Decimal]) -> Dict[int, Decimal]:
    """Split ``amount`` across ``weights`` by largest remainder so the parts sum exactly."""

    shares = {key: ZERO for key in weights}
    total_weight = sum(weights.values(), Decimal(0))
    cents = int((amount / CENT).to_integral_value(rounding=ROUND_HALF_UP))
    if cents <= 0 or total_weight <= 0:
        return shares

    raw = {key: Decimal(cents) * weight / total_weight for key, weight in weights.items()}
    floors = {key: int(value) for key, value in raw.items()}
    remainder = cents - sum(floors.values())
    # Ties go to the lowest key.
    order = sorted(raw, key=lambda key: (-(raw[key] - floors[key]), key))
    for key in order[:remainder]:
        floors[key] += 1
    return {key: Decimal(value) * CENT for key, value in floors.items()}


def _check_unique_days(snapshots: Iterable[ResourceSnapshot]) -> None:
    seen: Set[Tuple[int, date]] = set()
    for snapshot in snapshots:
        key = (snapshot.vm_id, snapshot.snapshot_date)
        if key in seen:
            raise LedgerInvariantError(
                "Duplicate resource snapshot for VM and day",
                context={"vm_id": snapshot.vm_id, "snapshot_date": snapshot.snapshot_date.isoformat()},
            )
        seen.add(key)


def _dimension_value(snapshot: ResourceSnapshot, dimension: ResourceDimension) -> Decimal:
    if dimension == ResourceDimension.CPU:
        return Decimal(snapshot.cpu_cores)
    if dimension == ResourceDimension.MEMORY:
        return snapshot.memory_gb
    return snapshot.storage_gb


def build_estimate(
    company_id: int,
    plan: PricingPlan,
    period: BillingPeriod,
    snapshots: Iterable[ResourceSnapshot],
) -> BillEstimate:
    """Compute the bill for ``company_id`` from ``snapshots`` under ``plan``."""

    in_period = [s for s in snapshots if s.company_id == company_id and period.contains(s.snapshot_date)]
    _check_unique_days(in_period)

    metered_days = len({s.snapshot_date for s in in_period})
    sums: Dict[ResourceDimension, Dict[int, Decimal]] = {dimension: {} for dimension in ResourceDimension}
    vm_days: Dict[int, int] = {}
    for snapshot in in_period:
        vm_days[snapshot.vm_id] = vm_days.get(snapshot.vm_id, 0) + 1
        for dimension in ResourceDimension:
            per_vm = sums[dimension]
            per_vm[snapshot.vm_id] = per_vm.get(snapshot.vm_id, Decimal(0)) + _dimension_value(snapshot, dimension)

    usage: List[DimensionUsage] = []
    allocations: Dict[ResourceDimension, Dict[int, Decimal]] = {}
    for dimension in ResourceDimension:
        per_vm = sums[dimension]
        total = round_money(sum(per_vm.values(), Decimal(0)) / metered_days) if metered_days else ZERO
        included = plan.included(dimension)
        rate = plan.overage_rate(dimension)
        amount = overage_amount(total, included, rate)
        usage.append(
            DimensionUsage(
                dimension=dimension,
                total_usage=total,
                included=included,
                overage_quantity=max(ZERO, total - included),
                unit_price=rate,
                overage_amount=amount,
            )
        )
        allocations[dimension] = allocate_cents(amount, per_vm)

    vms: List[VMCost] = []
    for vm_id in sorted(vm_days):
        vms.append(
            VMCost(
                vm_id=vm_id,
                days_metered=vm_days[vm_id],
                cpu_cores=round_money(sums[ResourceDimension.CPU][vm_id] / metered_days),
                memory_gb=round_money(sums[ResourceDimension.MEMORY][vm_id] / metered_days),
                storage_gb=round_money(sums[ResourceDimension.STORAGE][vm_id] / metered_days),
                cpu_overage=allocations[ResourceDimension.CPU].get(vm_id, ZERO),
                memory_overage=allocations[ResourceDimension.MEMORY].get(vm_id, ZERO),
                storage_overage=allocations[ResourceDimension.STORAGE].get(vm_id, ZERO),
            )
        )

    base_fee = round_money(plan.base_price)
    overage_total = sum((entry.overage_amount for entry in usage), ZERO)
    return BillEstimate(
        company_id=company_id,
        plan=plan,
        period=period,
        currency=plan.currency,
        days_metered=metered_days,
        snapshot_count=len(in_period),
        usage=usage,
        base_fee=base_fee,
        overage_total=overage_total,
        subtotal=base_fee + overage_total,
        vms=vms,
    )


@dataclass
class BillCalculator:
    """Read-only bill computation for a company and a period."""

    catalog: PricingCatalog
    snapshots: SnapshotRepository
    invoices: Optional[ActiveInvoiceLookup] = None

    def _plan_for_period(self, company_id: int, plan_id: int, period: BillingPeriod) -> PricingPlan:
        if self.invoices is not None:
            existing = self.invoices.find_active_invoice(company_id, period.start)
            if existing is not None and existing.pricing_plan_id is not None:
                return self.catalog.get_plan(existing.pricing_plan_id)
        return self.catalog.get_plan(plan_id)

    def calculate_bill(self, company_id: int, period: BillingPeriod) -> Optional[BillEstimate]:
        """Return the bill for ``period``, or ``None`` when the company is not billable."""

        billing = self.catalog.get_company_billing(company_id)
        if billing is None or not billing.is_billable:
            logger.debug("Company has no pricing plan", extra={"company_id": company_id})
            return None

        plan = self._plan_for_period(company_id, billing.current_pricing_plan_id, period)
        snapshots = self.snapshots.list_snapshots_for_company(company_id, period.start, period.end)
        return build_estimate(company_id, plan, period, snapshots)

    def calculate_monthly_bill(self, company_id: int, month: date) -> Optional[BillEstimate]:
        """Bill for the calendar month containing ``month``."""

        return self.calculate_bill(company_id, BillingPeriod.containing(month))

    def get_vm_costs(self, company_id: int, period: BillingPeriod) -> Optional[List[VMCost]]:
        estimate = self.calculate_bill(company_id, period)
        return None if estimate is None else list(estimate.vms)


__all__ = [
    "ActiveInvoiceLookup",
    "BillCalculator",
    "allocate_cents",
    "build_estimate",
    "overage_amount",
    "round_money",
]
