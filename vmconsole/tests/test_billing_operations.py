"""Tests for the caller-facing billing operations and gateway wiring."""
from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
import stripe

from vmconsole import job_guard
from vmconsole.app.billing import InvoiceStateError, InvoiceStatus
from vmconsole.app.billing.calculator import BillCalculator
from vmconsole.app.billing.service import InvoiceGenerator
from vmconsole.app.metering import MeteringCollector, ResourceSnapshot
from vmconsole.app.pricing import PricingCatalog
from vmconsole.app.pricing.models import CompanyBilling, PricingPlan
from vmconsole.app.schemas.billing import BatchOutcome
from vmconsole.app.services.billing import (
    BillingOperations,
    SandboxPaymentGateway,
    create_payment_gateway,
)
from vmconsole.app.subscriptions import (
    CompanySubscription,
    GatewaySubscription,
    StripePaymentGateway,
    SubscriptionChargeProcessor,
    SubscriptionStatus,
)
from vmconsole.config import GATEWAY_NONE, GATEWAY_SANDBOX, GATEWAY_STRIPE, BillingConfig
from vmconsole.job_guard import JOB_DAILY_SNAPSHOTS, JOB_MONTHLY_INVOICES, JOB_SUBSCRIPTION_CHARGES, JobGuard


@pytest.fixture(autouse=True)
def reset_job_metrics():
    job_guard._reset_metrics_for_testing()
    yield
    job_guard._reset_metrics_for_testing()


@pytest.fixture
def operations(
    pricing_repository,
    snapshot_repository,
    inventory,
    invoice_repository,
    subscription_repository,
    gateway,
    notifier,
    event_logger,
    clock,
):
    catalog = PricingCatalog(repository=pricing_repository, clock=clock)
    calculator = BillCalculator(catalog=catalog, snapshots=snapshot_repository, invoices=invoice_repository)
    return BillingOperations(
        catalog=catalog,
        collector=MeteringCollector(repository=snapshot_repository, inventory=inventory, clock=clock),
        calculator=calculator,
        invoices=InvoiceGenerator(
            calculator=calculator,
            catalog=catalog,
            repository=invoice_repository,
            event_logger=event_logger,
            notifier=notifier,
            gateway_billed=subscription_repository,
            clock=clock,
        ),
        subscriptions=SubscriptionChargeProcessor(
            repository=subscription_repository,
            catalog=catalog,
            gateway=gateway,
            event_logger=event_logger,
            notifier=notifier,
            clock=clock,
            sleep=lambda _: None,
        ),
        job_guard=JobGuard(use_advisory_locks=False),
        clock=clock,
    )


@pytest.fixture
def plan(operations, standard_plan):
    return operations.catalog.create_plan(standard_plan)


@pytest.fixture
def billed_company(operations, plan, snapshot_repository):
    operations.catalog.assign_plan(1, plan.id)
    for vm_id, cpu in ((21, 4), (22, 2)):
        snapshot_repository.add(
            ResourceSnapshot(
                vm_id=vm_id,
                company_id=1,
                snapshot_date=date(2024, 3, 1),
                cpu_cores=cpu,
                memory_mb=4096,
                storage_gb=Decimal("50"),
            )
        )
    return 1


@pytest.mark.parametrize(
    "processed, failed, expected",
    [
        (0, 0, BatchOutcome.NOTHING_TO_DO),
        (4, 0, BatchOutcome.COMPLETED),
        (4, 1, BatchOutcome.PARTIALLY_FAILED),
        (4, 4, BatchOutcome.FAILED),
    ],
)
def test_batch_outcome_classification(processed, failed, expected):
    assert BatchOutcome.classify(processed, failed) == expected


def test_estimate_for_company_without_plan_is_no_plan(operations, pricing_repository):
    pricing_repository.upsert_company_billing(CompanyBilling(company_id=9))

    result = operations.get_billing_estimate(9, date(2024, 3, 1))

    assert result.kind == "no_plan"
    assert result.company_id == 9


def test_estimate_defaults_to_current_month(operations, billed_company):
    result = operations.get_billing_estimate(billed_company)

    assert result.kind == "estimate"
    assert result.estimate.period.start == date(2024, 3, 1)
    assert result.estimate.subtotal == Decimal("59.00")


def test_vm_costs_total_matches_company_overage(operations, billed_company):
    result = operations.get_vm_costs(billed_company, date(2024, 3, 31))

    assert result.kind == "vm_costs"
    assert sorted(vm.vm_id for vm in result.vms) == [21, 22]
    assert result.total_overage == Decimal("10.00")
    assert operations.get_vm_costs(404).kind == "no_plan"


def test_manual_invoice_then_already_exists(operations, billed_company):
    created = operations.generate_invoice_manually(billed_company, date(2024, 3, 1), initiated_by="42")
    again = operations.generate_invoice_manually(billed_company, date(2024, 3, 15), initiated_by="42")

    assert created.kind == "created"
    assert created.invoice.initiated_by == "42"
    assert again.kind == "already_exists"
    assert again.invoice.id == created.invoice.id
    assert operations.generate_invoice_manually(77, date(2024, 3, 1)).kind == "no_plan"


def test_history_and_generation_status(operations, billed_company):
    operations.generate_invoice_manually(billed_company, date(2024, 3, 1))

    history = operations.get_billing_history(billed_company, month=date(2024, 3, 20))
    status = operations.get_invoice_generation_status()

    assert [invoice.billing_period_start for invoice in history.invoices] == [date(2024, 3, 1)]
    assert status.status.invoices_generated == 1
    assert status.status.pending_company_ids == []


def test_list_pricing_plans_hides_inactive_plans_by_default(operations, plan):
    retired = operations.catalog.create_plan(PricingPlan(name="Legacy", is_active=False, display_order=5))

    assert [p.id for p in operations.list_pricing_plans().plans] == [plan.id]
    assert [p.id for p in operations.list_pricing_plans(include_inactive=True).plans] == [plan.id, retired.id]


def test_all_companies_overview_combines_inventory_and_estimates(
    operations, billed_company, inventory, pricing_repository
):
    inventory.add_vm(21, 1, cpu=4, memory_mb=4096, storage_gb="50")
    inventory.add_vm(22, 1, cpu=2, memory_mb=4096, storage_gb="50", status="stopped")
    inventory.add_vm(23, 1, cpu=8, memory_mb=8192, storage_gb="80", status="deleted")
    inventory.add_vm(30, 5, cpu=1, memory_mb=1536, storage_gb="10.5")
    pricing_repository.upsert_company_billing(CompanyBilling(company_id=4, current_pricing_plan_id=999))

    overview = operations.get_all_companies_billing(date(2024, 3, 10))

    assert [company.company_id for company in overview.companies] == [1, 4, 5]
    billed, missing_plan, unbilled = overview.companies
    assert (billed.vm_count, billed.running_vms, billed.total_cpu_cores) == (2, 1, 6)
    assert billed.total_memory_gb == Decimal("8.00")
    assert billed.total_storage_gb == Decimal("100.00")
    assert billed.estimated_cost == Decimal("59.00")
    assert billed.currency == "USD"
    assert missing_plan.vm_count == 0
    assert missing_plan.estimated_cost is None
    assert unbilled.pricing_plan_id is None
    assert unbilled.total_memory_gb == Decimal("1.50")
    assert unbilled.estimated_cost is None
    assert overview.total_companies == 3
    assert overview.estimated_revenue == {"USD": Decimal("59.00")}


def test_all_companies_overview_skips_unreadable_allocations(operations, billed_company, inventory):
    inventory.add_vm(21, 1, cpu=4, memory_mb=4096, storage_gb="50")
    inventory.add_vm(22, 1, cpu=2, memory_mb=4096, storage_gb="50")
    inventory.failing_vm_ids.add(22)

    overview = operations.get_all_companies_billing(date(2024, 3, 10))

    assert overview.companies[0].vm_count == 2
    assert overview.companies[0].total_cpu_cores == 4


def test_update_invoice_status_walks_the_lifecycle(operations, billed_company, notifier, event_logger):
    invoice = operations.generate_invoice_manually(billed_company, date(2024, 3, 1)).invoice

    issued = operations.update_invoice_status(invoice.id, InvoiceStatus.ISSUED, actor_id="1")
    operations.update_invoice_status(invoice.id, InvoiceStatus.SENT, actor_id="1")
    paid = operations.update_invoice_status(
        invoice.id, InvoiceStatus.PAID, actor_id="1", payment_reference="wire-889"
    )

    assert issued.kind == "status_changed"
    assert issued.invoice.issued_at is not None
    assert [sent.id for sent in notifier.issued] == [invoice.id]
    assert paid.invoice.status == InvoiceStatus.PAID
    assert paid.invoice.payment_reference == "wire-889"
    assert event_logger.events[-1].actor_id == "1"
    with pytest.raises(InvoiceStateError):
        operations.update_invoice_status(invoice.id, InvoiceStatus.VOID)


def test_update_invoice_status_rejects_return_to_draft(operations, billed_company):
    invoice = operations.generate_invoice_manually(billed_company, date(2024, 3, 1)).invoice

    with pytest.raises(InvoiceStateError):
        operations.update_invoice_status(invoice.id, InvoiceStatus.DRAFT)
    with pytest.raises(LookupError):
        operations.update_invoice_status(404, InvoiceStatus.ISSUED)


def test_daily_snapshot_trigger_reports_partial_failure(operations, inventory):
    inventory.add_vm(1, 10, cpu=2, memory_mb=2048, storage_gb="20")
    inventory.add_vm(2, 10, cpu=2, memory_mb=2048, storage_gb="20")
    inventory.failing_vm_ids.add(2)

    result = operations.trigger_daily_snapshots(date(2024, 3, 4))

    assert result.outcome == BatchOutcome.PARTIALLY_FAILED
    assert result.processed == 2
    assert result.failed == 1
    assert result.snapshots.errors == [2]
    assert not result.succeeded
    metrics = job_guard.get_job_metrics()[JOB_DAILY_SNAPSHOTS]
    assert metrics["runs"] == 1
    assert metrics["processed"] == 2
    assert metrics["failures"] == 1
    assert metrics["last_success_at"] is not None


def test_daily_snapshot_trigger_classifies_empty_and_total_failure(operations, inventory):
    assert operations.trigger_daily_snapshots(date(2024, 3, 4)).outcome == BatchOutcome.NOTHING_TO_DO

    inventory.add_vm(1, 10, cpu=2, memory_mb=2048, storage_gb="20")
    inventory.failing_vm_ids.add(1)

    assert operations.trigger_daily_snapshots(date(2024, 3, 4)).outcome == BatchOutcome.FAILED


def test_overlapping_trigger_returns_already_running(operations):
    with operations.job_guard.hold(JOB_MONTHLY_INVOICES) as acquired:
        assert acquired is True
        result = operations.trigger_monthly_invoices(date(2024, 4, 1))

    assert result.outcome == BatchOutcome.ALREADY_RUNNING
    assert job_guard.get_job_metrics()[JOB_MONTHLY_INVOICES]["overlaps"] == 1
    assert job_guard.get_job_metrics()[JOB_MONTHLY_INVOICES]["runs"] == 0


def test_monthly_invoice_trigger(operations, billed_company):
    result = operations.trigger_monthly_invoices(date(2024, 4, 1))

    assert result.outcome == BatchOutcome.COMPLETED
    assert result.invoices.created == 1
    assert result.succeeded


def test_unexpected_job_error_is_recorded_and_raised(operations, monkeypatch):
    def explode(today=None):
        raise RuntimeError("database went away")

    monkeypatch.setattr(operations.invoices, "generate_monthly_invoices", explode)

    with pytest.raises(RuntimeError):
        operations.trigger_monthly_invoices(date(2024, 4, 1))

    metrics = job_guard.get_job_metrics()[JOB_MONTHLY_INVOICES]
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database went away"


def test_subscription_trigger_without_gateway_is_gateway_unavailable(operations):
    operations.subscriptions.gateway = None

    result = operations.trigger_subscription_charges(date(2024, 3, 1))

    assert result.outcome == BatchOutcome.GATEWAY_UNAVAILABLE
    assert "not configured" in result.errors[0]
    assert job_guard.get_job_metrics()[JOB_SUBSCRIPTION_CHARGES]["last_error"].startswith(
        "GatewayNotConfiguredError"
    )


def test_subscription_trigger_runs_charges_and_sweeps(operations, plan, subscription_repository, pricing_repository):
    pricing_repository.upsert_company_billing(
        CompanyBilling(company_id=3, current_pricing_plan_id=plan.id, gateway_customer_ref="cus_3")
    )
    subscription_repository.add(
        CompanySubscription(
            id=1,
            company_id=3,
            plan_id=plan.id,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=date(2024, 2, 1),
            current_period_end=date(2024, 3, 1),
            gateway_subscription_ref="sub_1",
        )
    )

    result = operations.trigger_subscription_charges(date(2024, 3, 1))

    assert result.outcome == BatchOutcome.COMPLETED
    assert result.charges.charged == 1
    assert result.past_due.examined == 0
    assert result.cancellations.examined == 0
    assert subscription_repository.get_subscription(1).current_period_end == date(2024, 4, 1)


def test_sandbox_gateway_is_idempotent_per_key():
    sandbox = SandboxPaymentGateway(declining_customer_refs=["cus_bad"])

    first = sandbox.create_invoice(
        customer_ref="cus_ok", subscription_ref="sub_1", description="charge", idempotency_key="charge-1-2024-03-01"
    )
    second = sandbox.create_invoice(
        customer_ref="cus_ok", subscription_ref="sub_1", description="charge", idempotency_key="charge-1-2024-03-01"
    )
    declined = sandbox.create_invoice(
        customer_ref="cus_bad", subscription_ref="sub_2", description="charge", idempotency_key="charge-2-2024-03-01"
    )

    assert first.ref == second.ref
    assert sandbox.finalize_and_pay_invoice(first.ref, idempotency_key="k").paid
    assert sandbox.finalize_and_pay_invoice(declined.ref, idempotency_key="k").status == "open"
    with pytest.raises(LookupError):
        sandbox.finalize_and_pay_invoice("in_missing", idempotency_key="k")


def test_sandbox_gateway_subscription_state():
    sandbox = SandboxPaymentGateway()
    sandbox.set_subscription(GatewaySubscription(ref="sub_9", status="past_due"))

    assert sandbox.retrieve_subscription("sub_9").status == "past_due"
    assert sandbox.retrieve_subscription("sub_new").status == "active"
    assert sandbox.cancel_subscription("sub_9").status == "canceled"
    assert sandbox.retrieve_subscription("sub_9").status == "canceled"


def test_create_payment_gateway_follows_configuration(monkeypatch):
    monkeypatch.setattr(stripe, "default_http_client", None)
    monkeypatch.setattr(stripe, "max_network_retries", stripe.max_network_retries)

    assert create_payment_gateway(BillingConfig(gateway_name=GATEWAY_NONE)) is None
    assert create_payment_gateway(BillingConfig(gateway_name=GATEWAY_STRIPE)) is None
    assert isinstance(create_payment_gateway(BillingConfig(gateway_name=GATEWAY_SANDBOX)), SandboxPaymentGateway)
    configured = create_payment_gateway(BillingConfig(gateway_name=GATEWAY_STRIPE, stripe_secret_key="sk_test_1"))
    assert isinstance(configured, StripePaymentGateway)
