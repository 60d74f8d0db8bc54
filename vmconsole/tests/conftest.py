"""In-memory collaborators shared by the billing engine tests."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

import pytest

from vmconsole.app.billing import BillingAuditEvent, GatewayDeclinedError, GatewayTimeoutError, Invoice, InvoiceStatus
from vmconsole.app.billing.models import format_invoice_number, invoice_number_prefix
from vmconsole.app.billing.service import BillingEventLogger, BillingNotifier
from vmconsole.app.metering.models import ResourceAllocation, ResourceSnapshot, SnapshotWriteOutcome, VirtualMachine
from vmconsole.app.pricing.models import CompanyBilling, PricingPlan
from vmconsole.app.subscriptions.models import (
    CompanySubscription,
    GatewayInvoice,
    GatewaySubscription,
    SubscriptionStatus,
)

FIXED_NOW = datetime(2024, 3, 5, 9, 0, tzinfo=timezone.utc)


class InMemoryPricingRepository:
    def __init__(self) -> None:
        self.plans: Dict[int, PricingPlan] = {}
        self.billing: Dict[int, CompanyBilling] = {}
        self.invoiced_plan_ids: Set[int] = set()
        self._next_id = 1

    def get_plan(self, plan_id: int) -> Optional[PricingPlan]:
        return self.plans.get(plan_id)

    def list_plans(self, *, active_only: bool = True) -> Sequence[PricingPlan]:
        plans = [plan for plan in self.plans.values() if plan.is_active or not active_only]
        return sorted(plans, key=lambda plan: (plan.display_order, plan.id))

    def get_default_plan(self) -> Optional[PricingPlan]:
        for plan in self.plans.values():
            if plan.is_default and plan.is_active:
                return plan
        return None

    def insert_plan(self, plan: PricingPlan) -> PricingPlan:
        stored = plan.model_copy(update={"id": self._next_id})
        self._next_id += 1
        self.plans[stored.id] = stored
        return stored

    def update_plan(self, plan: PricingPlan) -> PricingPlan:
        self.plans[plan.id] = plan
        return plan

    def replace_plan_version(self, old_plan_id: int, new_plan: PricingPlan) -> PricingPlan:
        stored = self.insert_plan(new_plan)
        old = self.plans[old_plan_id]
        self.plans[old_plan_id] = old.model_copy(update={"is_active": False, "is_default": False})
        for company_id, billing in list(self.billing.items()):
            if billing.current_pricing_plan_id == old_plan_id:
                self.billing[company_id] = billing.model_copy(update={"current_pricing_plan_id": stored.id})
        return stored

    def clear_default_flag(self, *, except_plan_id: int) -> None:
        for plan_id, plan in list(self.plans.items()):
            if plan.is_default and plan_id != except_plan_id:
                self.plans[plan_id] = plan.model_copy(update={"is_default": False})

    def plan_is_invoiced(self, plan_id: int) -> bool:
        return plan_id in self.invoiced_plan_ids

    def get_company_billing(self, company_id: int) -> Optional[CompanyBilling]:
        return self.billing.get(company_id)

    def upsert_company_billing(self, billing: CompanyBilling) -> CompanyBilling:
        self.billing[billing.company_id] = billing
        return billing

    def list_billable_companies(self) -> Sequence[CompanyBilling]:
        return [
            billing
            for _, billing in sorted(self.billing.items())
            if billing.current_pricing_plan_id is not None
        ]

    def set_next_billing_date(self, company_id: int, next_billing_date: Optional[date]) -> None:
        billing = self.billing.get(company_id)
        if billing is not None:
            self.billing[company_id] = billing.model_copy(update={"next_billing_date": next_billing_date})


def _allocation(snapshot: ResourceSnapshot) -> Tuple[int, int, int, Decimal]:
    return (snapshot.company_id, snapshot.cpu_cores, snapshot.memory_mb, snapshot.storage_gb)


class InMemorySnapshotRepository:
    def __init__(self) -> None:
        self.rows: Dict[Tuple[int, date], ResourceSnapshot] = {}
        self.extra_rows: List[ResourceSnapshot] = []
        self.write_count = 0

    def add(self, snapshot: ResourceSnapshot) -> None:
        self.rows[(snapshot.vm_id, snapshot.snapshot_date)] = snapshot

    def upsert_snapshot(self, snapshot: ResourceSnapshot) -> SnapshotWriteOutcome:
        key = (snapshot.vm_id, snapshot.snapshot_date)
        existing = self.rows.get(key)
        if existing is not None and _allocation(existing) == _allocation(snapshot):
            return SnapshotWriteOutcome.UNCHANGED
        self.rows[key] = snapshot.model_copy(update={"id": existing.id if existing else len(self.rows) + 1})
        self.write_count += 1
        return SnapshotWriteOutcome.CREATED if existing is None else SnapshotWriteOutcome.UPDATED

    def list_snapshots_for_vm(self, vm_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        return sorted(
            (s for s in self.rows.values() if s.vm_id == vm_id and start <= s.snapshot_date < end),
            key=lambda s: s.snapshot_date,
        )

    def list_snapshots_for_company(self, company_id: int, start: date, end: date) -> Sequence[ResourceSnapshot]:
        rows = [*self.rows.values(), *self.extra_rows]
        return sorted(
            (s for s in rows if s.company_id == company_id and start <= s.snapshot_date < end),
            key=lambda s: (s.vm_id, s.snapshot_date),
        )


class FakeInventory:
    def __init__(self) -> None:
        self.vms: List[VirtualMachine] = []
        self.allocations: Dict[int, ResourceAllocation] = {}
        self.failing_vm_ids: Set[int] = set()

    def add_vm(self, vm_id: int, company_id: int, *, cpu: int, memory_mb: int, storage_gb: str, status: str = "running") -> None:
        self.vms.append(VirtualMachine(id=vm_id, company_id=company_id, name=f"vm-{vm_id}", status=status))
        self.allocations[vm_id] = ResourceAllocation(cpu_cores=cpu, memory_mb=memory_mb, storage_gb=Decimal(storage_gb))

    def list_active_vms(self, company_id: Optional[int] = None) -> Sequence[VirtualMachine]:
        return [vm for vm in self.vms if company_id is None or vm.company_id == company_id]

    def get_allocation(self, vm_id: int) -> ResourceAllocation:
        if vm_id in self.failing_vm_ids:
            raise RuntimeError(f"inventory lookup failed for VM {vm_id}")
        return self.allocations[vm_id]


class InMemoryInvoiceRepository:
    def __init__(self) -> None:
        self.invoices: Dict[int, Invoice] = {}
        self.create_calls = 0
        self._next_id = 1
        self._next_line_id = 1

    def find_active_invoice(self, company_id: int, period_start: date) -> Optional[Invoice]:
        for invoice in self.invoices.values():
            if (
                invoice.company_id == company_id
                and invoice.billing_period_start == period_start
                and invoice.status != InvoiceStatus.VOID
            ):
                return invoice
        return None

    def create_invoice(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        self.create_calls += 1
        existing = self.find_active_invoice(invoice.company_id, invoice.billing_period_start)
        if existing is not None:
            return existing, False

        prefix = invoice_number_prefix(invoice.billing_period_start)
        sequence = sum(1 for stored in self.invoices.values() if (stored.invoice_number or "").startswith(prefix)) + 1
        invoice_id = self._next_id
        self._next_id += 1
        items = []
        for item in invoice.line_items:
            items.append(item.model_copy(update={"id": self._next_line_id, "invoice_id": invoice_id}))
            self._next_line_id += 1
        stored = invoice.model_copy(
            update={
                "id": invoice_id,
                "invoice_number": invoice.invoice_number or format_invoice_number(prefix, sequence),
                "line_items": items,
            }
        )
        self.invoices[invoice_id] = stored
        return stored, True

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        return self.invoices.get(invoice_id)

    def list_invoices(
        self,
        company_id: int,
        *,
        limit: int = 24,
        period_start_from: Optional[date] = None,
        period_start_to: Optional[date] = None,
    ) -> Sequence[Invoice]:
        matches = [
            invoice
            for invoice in self.invoices.values()
            if invoice.company_id == company_id
            and (period_start_from is None or invoice.billing_period_start >= period_start_from)
            and (period_start_to is None or invoice.billing_period_start < period_start_to)
        ]
        matches.sort(key=lambda invoice: (invoice.billing_period_start, invoice.id), reverse=True)
        return matches[:limit]

    def list_invoices_for_period(self, period_start: date) -> Sequence[Invoice]:
        return [
            invoice
            for invoice in self.invoices.values()
            if invoice.billing_period_start == period_start and invoice.status != InvoiceStatus.VOID
        ]

    def update_invoice_status(
        self,
        invoice_id: int,
        *,
        expected: InvoiceStatus,
        status: InvoiceStatus,
        issued_at: Optional[datetime] = None,
        paid_at: Optional[datetime] = None,
        payment_reference: Optional[str] = None,
    ) -> Optional[Invoice]:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or invoice.status != expected:
            return None
        update = {"status": status}
        if issued_at is not None:
            update["issued_at"] = issued_at
        if paid_at is not None:
            update["paid_at"] = paid_at
        if payment_reference is not None:
            update["payment_reference"] = payment_reference
        updated = invoice.model_copy(update=update)
        self.invoices[invoice_id] = updated
        return updated


class InMemorySubscriptionRepository:
    def __init__(self) -> None:
        self.subscriptions: Dict[int, CompanySubscription] = {}

    def add(self, subscription: CompanySubscription) -> None:
        self.subscriptions[subscription.id] = subscription

    def get_subscription(self, subscription_id: int) -> Optional[CompanySubscription]:
        return self.subscriptions.get(subscription_id)

    def _linked(self) -> List[CompanySubscription]:
        return sorted(
            (s for s in self.subscriptions.values() if s.gateway_subscription_ref),
            key=lambda s: (s.current_period_end, s.id),
        )

    def list_due_subscriptions(self, today: date) -> Sequence[CompanySubscription]:
        return [s for s in self._linked() if s.status == SubscriptionStatus.ACTIVE and s.current_period_end <= today]

    def list_active_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        return [s for s in self._linked() if s.status == SubscriptionStatus.ACTIVE and s.current_period_end < cutoff]

    def list_suspended_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        return [s for s in self._linked() if s.status == SubscriptionStatus.SUSPENDED and s.current_period_end < cutoff]

    def list_gateway_billed_company_ids(self) -> Iterable[int]:
        return sorted(
            {s.company_id for s in self._linked() if s.status != SubscriptionStatus.CANCELLED}
        )

    def update_subscription(
        self,
        subscription: CompanySubscription,
        *,
        expected_status: SubscriptionStatus,
        expected_period_end: date,
    ) -> Optional[CompanySubscription]:
        current = self.subscriptions.get(subscription.id)
        if (
            current is None
            or current.status != expected_status
            or current.current_period_end != expected_period_end
        ):
            return None
        self.subscriptions[subscription.id] = subscription
        return subscription


class FakeGateway:
    def __init__(self) -> None:
        self.remote: Dict[str, GatewaySubscription] = {}
        self.always_timeout_refs: Set[str] = set()
        self.transient_failures: Dict[str, int] = {}
        self.declined_refs: Set[str] = set()
        self.unpaid_refs: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self.idempotency_keys: List[str] = []
        self._invoice_subscriptions: Dict[str, str] = {}

    def set_remote(self, ref: str, status: str, **periods: date) -> None:
        self.remote[ref] = GatewaySubscription(ref=ref, status=status, **periods)

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        self.calls.append(("retrieve", subscription_ref))
        return self.remote.get(subscription_ref) or GatewaySubscription(ref=subscription_ref, status="active")

    def create_invoice(
        self,
        *,
        customer_ref: str,
        subscription_ref: str,
        description: str,
        idempotency_key: str,
    ) -> GatewayInvoice:
        self.calls.append(("create_invoice", subscription_ref))
        self.idempotency_keys.append(idempotency_key)
        if subscription_ref in self.always_timeout_refs:
            raise GatewayTimeoutError(f"timeout creating invoice for {subscription_ref}")
        remaining = self.transient_failures.get(subscription_ref, 0)
        if remaining:
            self.transient_failures[subscription_ref] = remaining - 1
            raise GatewayTimeoutError(f"transient timeout for {subscription_ref}")
        invoice_ref = f"in_{subscription_ref}"
        self._invoice_subscriptions[invoice_ref] = subscription_ref
        return GatewayInvoice(ref=invoice_ref, status="draft")

    def finalize_and_pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> GatewayInvoice:
        subscription_ref = self._invoice_subscriptions[invoice_ref]
        self.calls.append(("finalize_and_pay", subscription_ref))
        if subscription_ref in self.declined_refs:
            raise GatewayDeclinedError(f"card declined for {subscription_ref}")
        status = "open" if subscription_ref in self.unpaid_refs else "paid"
        return GatewayInvoice(ref=invoice_ref, status=status)

    def cancel_subscription(self, subscription_ref: str) -> GatewaySubscription:
        self.calls.append(("cancel", subscription_ref))
        cancelled = GatewaySubscription(ref=subscription_ref, status="canceled")
        self.remote[subscription_ref] = cancelled
        return cancelled

    def calls_for(self, operation: str) -> List[str]:
        return [ref for name, ref in self.calls if name == operation]


class FakeNotifier(BillingNotifier):
    def __init__(self) -> None:
        self.issued: List[Invoice] = []
        self.charge_failures: List[Tuple[CompanySubscription, str]] = []
        self.cancelled: List[CompanySubscription] = []

    def notify_invoice_issued(self, invoice: Invoice) -> None:
        self.issued.append(invoice)

    def notify_charge_failed(self, subscription: CompanySubscription, reason: str) -> None:
        self.charge_failures.append((subscription, reason))

    def notify_subscription_cancelled(self, subscription: CompanySubscription) -> None:
        self.cancelled.append(subscription)


class FakeEventLogger(BillingEventLogger):
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def pricing_repository() -> InMemoryPricingRepository:
    return InMemoryPricingRepository()


@pytest.fixture
def snapshot_repository() -> InMemorySnapshotRepository:
    return InMemorySnapshotRepository()


@pytest.fixture
def inventory() -> FakeInventory:
    return FakeInventory()


@pytest.fixture
def invoice_repository() -> InMemoryInvoiceRepository:
    return InMemoryInvoiceRepository()


@pytest.fixture
def subscription_repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def event_logger() -> FakeEventLogger:
    return FakeEventLogger()


@pytest.fixture
def standard_plan() -> PricingPlan:
    return PricingPlan(
        name="Standard",
        base_price=Decimal("49.00"),
        included_cpu_cores=Decimal("4"),
        included_memory_gb=Decimal("8"),
        included_storage_gb=Decimal("100"),
        overage_cpu_core_price=Decimal("5.00"),
        overage_memory_gb_price=Decimal("2.00"),
        overage_storage_gb_price=Decimal("0.10"),
    )
