"""Application wiring for the billing engine and its caller-facing operations."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from functools import lru_cache
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional
from uuid import NAMESPACE_URL, uuid5

from ...app_context import get_conn
from ...config import GATEWAY_NONE, GATEWAY_STRIPE, BillingConfig, load_billing_config
from ...db import ConnectionFactory
from ...job_guard import (
    JOB_DAILY_SNAPSHOTS,
    JOB_MONTHLY_INVOICES,
    JOB_SUBSCRIPTION_CHARGES,
    JobGuard,
    record_job_failure,
    record_job_start,
    record_job_success,
)
from ..billing import (
    BillingAuditEvent,
    BillingPeriod,
    GatewayNotConfiguredError,
    Invoice,
    InvoiceGenerationOutcome,
    InvoiceStateError,
    InvoiceStatus,
)
from ..billing.calculator import BillCalculator, round_money
from ..billing.models import ZERO
from ..billing.repository import PostgresInvoiceRepository
from ..billing.service import BillingEventLogger, BillingNotifier, InvoiceGenerator
from ..metering.inventory import PostgresVMInventory, VMInventory
from ..metering.models import MB_PER_GB, VirtualMachine
from ..metering.repository import PostgresSnapshotRepository
from ..metering.service import MeteringCollector
from ..pricing.catalog import PricingCatalog
from ..pricing.repository import PostgresPricingRepository
from ..schemas.billing import (
    BatchOutcome,
    BatchRunResult,
    BillingEstimateResult,
    BillingHistoryResponse,
    CompaniesBillingOverview,
    CompanyBillingSummary,
    EstimateResult,
    InvoiceAlreadyExistsResult,
    InvoiceCreatedResult,
    InvoiceGenerationStatusResponse,
    InvoiceStatusChangedResult,
    ManualInvoiceResult,
    NoPlanResult,
    PricingPlansResponse,
    VMCostsLookupResult,
    VMCostsResult,
)
from ..subscriptions.gateway import PaymentGateway, StripePaymentGateway
from ..subscriptions.models import CompanySubscription, GatewayInvoice, GatewaySubscription
from ..subscriptions.repository import PostgresSubscriptionRepository
from ..subscriptions.service import SubscriptionChargeProcessor


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_invoice_issued(self, invoice: Invoice) -> None:
        logger.info(
            "Invoice issued %s company=%s total=%s %s",
            invoice.invoice_number,
            invoice.company_id,
            invoice.total,
            invoice.currency,
        )

    def notify_charge_failed(self, subscription: CompanySubscription, reason: str) -> None:
        logger.warning(
            "Charge failed for subscription %s company=%s reason=%s",
            subscription.id,
            subscription.company_id,
            reason,
        )

    def notify_subscription_cancelled(self, subscription: CompanySubscription) -> None:
        logger.warning(
            "Subscription %s cancelled company=%s",
            subscription.id,
            subscription.company_id,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s company=%s invoice=%s subscription=%s actor=%s metadata=%s",
            event.event_type.value,
            event.company_id,
            event.invoice_id,
            event.subscription_id,
            event.actor_id,
            event.metadata,
        )


class SandboxPaymentGateway:
    """In-memory gateway for local development and tests.

    Invoices are keyed by idempotency key, so repeating a call returns the
    same invoice. Charges succeed unless the customer is listed as declining.
    """

    def __init__(self, *, declining_customer_refs: Iterable[str] = ()) -> None:
        self._lock = Lock()
        self._declining = set(declining_customer_refs)
        self._subscriptions: Dict[str, GatewaySubscription] = {}
        self._invoices: Dict[str, GatewayInvoice] = {}
        self._invoice_customers: Dict[str, str] = {}

    def set_subscription(self, subscription: GatewaySubscription) -> None:
        with self._lock:
            self._subscriptions[subscription.ref] = subscription

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        with self._lock:
            stored = self._subscriptions.get(subscription_ref)
        return stored or GatewaySubscription(ref=subscription_ref, status="active")

    def create_invoice(
        self,
        *,
        customer_ref: str,
        subscription_ref: str,
        description: str,
        idempotency_key: str,
    ) -> GatewayInvoice:
        ref = f"in_{uuid5(NAMESPACE_URL, idempotency_key).hex[:24]}"
        with self._lock:
            invoice = self._invoices.get(ref)
            if invoice is None:
                invoice = GatewayInvoice(ref=ref, status="draft")
                self._invoices[ref] = invoice
                self._invoice_customers[ref] = customer_ref
        return invoice

    def finalize_and_pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> GatewayInvoice:
        with self._lock:
            invoice = self._invoices.get(invoice_ref)
            if invoice is None:
                raise LookupError(f"Unknown sandbox invoice {invoice_ref}")
            if invoice.status == "draft":
                declined = self._invoice_customers.get(invoice_ref) in self._declining
                invoice = invoice.model_copy(update={"status": "open" if declined else "paid"})
                self._invoices[invoice_ref] = invoice
        return invoice

    def cancel_subscription(self, subscription_ref: str) -> GatewaySubscription:
        with self._lock:
            current = self._subscriptions.get(subscription_ref) or GatewaySubscription(
                ref=subscription_ref, status="active"
            )
            cancelled = current.model_copy(update={"status": "canceled"})
            self._subscriptions[subscription_ref] = cancelled
        return cancelled


def create_payment_gateway(config: BillingConfig) -> Optional[PaymentGateway]:
    """Build the configured gateway adapter, or ``None`` when none is configured."""

    if config.gateway_name == GATEWAY_NONE:
        return None
    if config.gateway_name == GATEWAY_STRIPE:
        if not config.stripe_secret_key:
            logger.warning("BILLING_GATEWAY is stripe but STRIPE_SECRET_KEY is not set")
            return None
        return StripePaymentGateway(config.stripe_secret_key, timeout_seconds=config.gateway_timeout_seconds)
    return SandboxPaymentGateway()


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    return clock() if clock else datetime.now(timezone.utc)


@dataclass
class BillingOperations:
    """Caller-facing billing operations returning typed results."""

    catalog: PricingCatalog
    collector: MeteringCollector
    calculator: BillCalculator
    invoices: InvoiceGenerator
    subscriptions: SubscriptionChargeProcessor
    job_guard: JobGuard = field(default_factory=JobGuard)
    clock: Optional[Callable[[], datetime]] = None

    def _period(self, month: Optional[date]) -> BillingPeriod:
        return BillingPeriod.containing(month or _current_time(self.clock).date())

    def get_billing_estimate(self, company_id: int, month: Optional[date] = None) -> BillingEstimateResult:
        estimate = self.calculator.calculate_bill(company_id, self._period(month))
        if estimate is None:
            return NoPlanResult(company_id=company_id)
        return EstimateResult(estimate=estimate)

    def get_vm_costs(self, company_id: int, month: Optional[date] = None) -> VMCostsLookupResult:
        period = self._period(month)
        vms = self.calculator.get_vm_costs(company_id, period)
        if vms is None:
            return NoPlanResult(company_id=company_id)
        return VMCostsResult(
            company_id=company_id,
            period=period,
            vms=vms,
            total_overage=sum((vm.total_overage for vm in vms), ZERO),
        )

    def get_billing_history(
        self,
        company_id: int,
        *,
        limit: int = 24,
        month: Optional[date] = None,
    ) -> BillingHistoryResponse:
        period = BillingPeriod.containing(month) if month else None
        invoices = self.invoices.get_billing_history(company_id, limit=limit, period=period)
        return BillingHistoryResponse(company_id=company_id, invoices=list(invoices))

    def generate_invoice_manually(
        self,
        company_id: int,
        billing_month: date,
        *,
        initiated_by: Optional[str] = None,
    ) -> ManualInvoiceResult:
        result = self.invoices.generate_invoice(company_id, billing_month, initiated_by)
        if result.outcome == InvoiceGenerationOutcome.NO_PLAN:
            return NoPlanResult(company_id=company_id)
        if result.outcome == InvoiceGenerationOutcome.EXISTING:
            return InvoiceAlreadyExistsResult(invoice=result.invoice)
        return InvoiceCreatedResult(invoice=result.invoice)

    def get_invoice_generation_status(self, month: Optional[date] = None) -> InvoiceGenerationStatusResponse:
        status = self.invoices.get_invoice_generation_status(month or _current_time(self.clock).date())
        return InvoiceGenerationStatusResponse(status=status)

    def list_pricing_plans(self, *, include_inactive: bool = False) -> PricingPlansResponse:
        return PricingPlansResponse(plans=list(self.catalog.list_plans(active_only=not include_inactive)))

    def get_all_companies_billing(self, month: Optional[date] = None) -> CompaniesBillingOverview:
        """Super-admin overview: live VM resources and the estimate for every company."""

        period = self._period(month)
        inventory = self.collector.inventory
        vms_by_company: Dict[int, List[VirtualMachine]] = {}
        for vm in inventory.list_active_vms():
            if not vm.is_terminal:
                vms_by_company.setdefault(vm.company_id, []).append(vm)
        plan_ids = {
            billing.company_id: billing.current_pricing_plan_id
            for billing in self.catalog.list_billable_companies()
        }

        companies: List[CompanyBillingSummary] = []
        revenue: Dict[str, Decimal] = {}
        for company_id in sorted(set(vms_by_company) | set(plan_ids)):
            vms = vms_by_company.get(company_id, [])
            cpu = memory_mb = 0
            storage = Decimal(0)
            for vm in vms:
                try:
                    allocation = inventory.get_allocation(vm.id)
                except Exception:
                    logger.exception("Failed to read VM allocation", extra={"vm_id": vm.id, "company_id": company_id})
                    continue
                cpu += allocation.cpu_cores
                memory_mb += allocation.memory_mb
                storage += allocation.storage_gb

            estimate = None
            if company_id in plan_ids:
                try:
                    estimate = self.calculator.calculate_bill(company_id, period)
                except LookupError as exc:
                    logger.warning("No estimate for company %s: %s", company_id, exc)
            if estimate is not None:
                revenue[estimate.currency] = revenue.get(estimate.currency, ZERO) + estimate.subtotal

            companies.append(
                CompanyBillingSummary(
                    company_id=company_id,
                    pricing_plan_id=plan_ids.get(company_id),
                    vm_count=len(vms),
                    running_vms=sum(1 for vm in vms if vm.status == "running"),
                    total_cpu_cores=cpu,
                    total_memory_gb=round_money(Decimal(memory_mb) / MB_PER_GB),
                    total_storage_gb=round_money(storage),
                    estimated_cost=estimate.subtotal if estimate is not None else None,
                    currency=estimate.currency if estimate is not None else None,
                )
            )
        return CompaniesBillingOverview(
            period=period,
            companies=companies,
            total_companies=len(companies),
            estimated_revenue=revenue,
        )

    def update_invoice_status(
        self,
        invoice_id: int,
        target: InvoiceStatus,
        *,
        actor_id: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> InvoiceStatusChangedResult:
        """Move an invoice one step along its lifecycle; issuing notifies the company."""

        if target == InvoiceStatus.ISSUED:
            invoice = self.invoices.issue_invoice(invoice_id, actor_id=actor_id)
        elif target == InvoiceStatus.SENT:
            invoice = self.invoices.mark_invoice_sent(invoice_id, actor_id=actor_id)
        elif target == InvoiceStatus.PAID:
            invoice = self.invoices.mark_invoice_paid(
                invoice_id, payment_reference=payment_reference, actor_id=actor_id
            )
        elif target == InvoiceStatus.VOID:
            invoice = self.invoices.void_invoice(invoice_id, actor_id=actor_id)
        else:
            raise InvoiceStateError(
                f"Invoices cannot be moved back to {target.value}",
                context={"invoice_id": invoice_id, "target": target.value},
            )
        return InvoiceStatusChangedResult(invoice=invoice)

    def _run_job(self, job_name: str, work: Callable[[], BatchRunResult]) -> BatchRunResult:
        with self.job_guard.hold(job_name) as acquired:
            if not acquired:
                return BatchRunResult(job=job_name, outcome=BatchOutcome.ALREADY_RUNNING)

            record_job_start(job_name, _current_time(self.clock))
            try:
                result = work()
            except GatewayNotConfiguredError as exc:
                record_job_failure(job_name, exc)
                logger.error("Billing job skipped: %s", exc, extra={"job": job_name})
                return BatchRunResult(job=job_name, outcome=BatchOutcome.GATEWAY_UNAVAILABLE, errors=[str(exc)])
            except Exception as exc:
                record_job_failure(job_name, exc)
                logger.exception("Billing job failed", extra={"job": job_name})
                raise

            record_job_success(
                job_name, _current_time(self.clock), processed=result.processed, failed=result.failed
            )
            logger.info(
                "Billing job completed",
                extra={
                    "job": job_name,
                    "outcome": result.outcome.value,
                    "processed": result.processed,
                    "failed": result.failed,
                },
            )
            return result

    def trigger_daily_snapshots(self, as_of_day: Optional[date] = None) -> BatchRunResult:
        def work() -> BatchRunResult:
            summary = self.collector.collect_daily_snapshots(as_of_day)
            return BatchRunResult(
                job=JOB_DAILY_SNAPSHOTS,
                outcome=BatchOutcome.classify(summary.processed, summary.failed),
                processed=summary.processed,
                failed=summary.failed,
                errors=list(summary.error_messages),
                snapshots=summary,
            )

        return self._run_job(JOB_DAILY_SNAPSHOTS, work)

    def trigger_monthly_invoices(self, today: Optional[date] = None) -> BatchRunResult:
        def work() -> BatchRunResult:
            summary = self.invoices.generate_monthly_invoices(today)
            return BatchRunResult(
                job=JOB_MONTHLY_INVOICES,
                outcome=BatchOutcome.classify(summary.processed, summary.failed),
                processed=summary.processed,
                failed=summary.failed,
                errors=list(summary.errors),
                invoices=summary,
            )

        return self._run_job(JOB_MONTHLY_INVOICES, work)

    def trigger_subscription_charges(self, today: Optional[date] = None) -> BatchRunResult:
        """Charge due subscriptions, then run the past-due and cancellation sweeps."""

        def work() -> BatchRunResult:
            charges = self.subscriptions.process_subscription_charges(today)
            past_due = self.subscriptions.check_past_due_subscriptions(today)
            cancellations = self.subscriptions.cancel_past_due_subscriptions(today)
            processed = charges.processed + past_due.examined + cancellations.examined
            failed = charges.failed + past_due.failed + cancellations.failed
            return BatchRunResult(
                job=JOB_SUBSCRIPTION_CHARGES,
                outcome=BatchOutcome.classify(processed, failed),
                processed=processed,
                failed=failed,
                errors=[*charges.errors, *past_due.errors, *cancellations.errors],
                charges=charges,
                past_due=past_due,
                cancellations=cancellations,
            )

        return self._run_job(JOB_SUBSCRIPTION_CHARGES, work)


def build_billing_operations(
    config: BillingConfig,
    *,
    conn_factory: Optional[ConnectionFactory] = None,
    inventory: Optional[VMInventory] = None,
    gateway: Optional[PaymentGateway] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> BillingOperations:
    """Assemble the engine on PostgreSQL repositories and the configured gateway."""

    pricing_repository = PostgresPricingRepository(conn_factory=conn_factory)
    snapshot_repository = PostgresSnapshotRepository(conn_factory=conn_factory)
    invoice_repository = PostgresInvoiceRepository(conn_factory=conn_factory)
    subscription_repository = PostgresSubscriptionRepository(conn_factory=conn_factory)
    notifier = LoggingBillingNotifier()
    event_logger = LoggingBillingEventLogger()

    catalog = PricingCatalog(repository=pricing_repository, clock=clock)
    collector = MeteringCollector(
        repository=snapshot_repository,
        inventory=inventory or PostgresVMInventory(conn_factory=conn_factory),
        max_error_messages=config.max_batch_errors,
        clock=clock,
    )
    calculator = BillCalculator(catalog=catalog, snapshots=snapshot_repository, invoices=invoice_repository)
    invoices = InvoiceGenerator(
        calculator=calculator,
        catalog=catalog,
        repository=invoice_repository,
        event_logger=event_logger,
        notifier=notifier,
        gateway_billed=subscription_repository,
        invoice_due_days=config.invoice_due_days,
        max_error_messages=config.max_batch_errors,
        clock=clock,
    )
    subscriptions = SubscriptionChargeProcessor(
        repository=subscription_repository,
        catalog=catalog,
        gateway=gateway if gateway is not None else create_payment_gateway(config),
        event_logger=event_logger,
        notifier=notifier,
        max_attempts=config.gateway_max_attempts,
        retry_backoff=config.gateway_retry_backoff,
        past_due_grace_days=config.past_due_grace_days,
        cancel_after_days=config.cancel_after_days,
        max_error_messages=config.max_batch_errors,
        clock=clock,
    )
    job_guard = JobGuard(conn_factory=conn_factory or get_conn, use_advisory_locks=config.use_advisory_locks)
    return BillingOperations(
        catalog=catalog,
        collector=collector,
        calculator=calculator,
        invoices=invoices,
        subscriptions=subscriptions,
        job_guard=job_guard,
        clock=clock,
    )


@lru_cache(maxsize=1)
def get_billing_operations() -> BillingOperations:
    return build_billing_operations(load_billing_config())


__all__ = [
    "BillingOperations",
    "LoggingBillingEventLogger",
    "LoggingBillingNotifier",
    "SandboxPaymentGateway",
    "build_billing_operations",
    "create_payment_gateway",
    "get_billing_operations",
]
