"""Invoice generation and invoice lifecycle management."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

from ..pricing.catalog import PricingCatalog
from ..pricing.models import add_billing_cycle
from .calculator import BillCalculator
from .errors import (
    ConcurrentModificationError,
    InvoiceNotFoundError,
    InvoiceStateError,
    LedgerInvariantError,
)
from .models import (
    INVOICE_TRANSITIONS,
    ZERO,
    BillEstimate,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingPeriod,
    Invoice,
    InvoiceBatchResult,
    InvoiceGenerationOutcome,
    InvoiceGenerationResult,
    InvoiceGenerationStatus,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
)

if TYPE_CHECKING:  # pragma: no cover
    from ..subscriptions.models import CompanySubscription

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_DIMENSION_LABELS = {
    LineItemKind.CPU_OVERAGE: ("CPU overage", "cores"),
    LineItemKind.MEMORY_OVERAGE: ("Memory overage", "GB"),
    LineItemKind.STORAGE_OVERAGE: ("Storage overage", "GB"),
}


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to company contacts."""

    def notify_invoice_issued(self, invoice: Invoice) -> None:
        ...

    def notify_charge_failed(self, subscription: "CompanySubscription", reason: str) -> None:
        ...

    def notify_subscription_cancelled(self, subscription: "CompanySubscription") -> None:
        ...


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class InvoiceRepository(Protocol):
    """Persistence operations required by the invoice generator."""

    def find_active_invoice(self, company_id: int, period_start: date) -> Optional[Invoice]:
        ...

    def create_invoice(self, invoice: Invoice) -> Tuple[Invoice, bool]:
        ...

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        ...

    def list_invoices(
        self,
        company_id: int,
        *,
        limit: int = 24,
        period_start_from: Optional[date] = None,
        period_start_to: Optional[date] = None,
    ) -> Sequence[Invoice]:
        ...

    def list_invoices_for_period(self, period_start: date) -> Sequence[Invoice]:
        ...

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
        ...


class GatewayBilledCompanies(Protocol):
    """Companies billed by the subscription charge processor instead of invoices."""

    def list_gateway_billed_company_ids(self) -> Iterable[int]:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    return clock() if clock else datetime.now(timezone.utc)


def verify_invoice_totals(invoice: Invoice) -> None:
    """Raise :class:`LedgerInvariantError` unless line items, subtotal and total agree."""

    context = {"company_id": invoice.company_id, "period_start": invoice.billing_period_start.isoformat()}
    line_sum = sum((item.amount for item in invoice.line_items), ZERO)
    if line_sum != invoice.subtotal:
        raise LedgerInvariantError(
            "Invoice line items do not sum to subtotal",
            context={**context, "line_sum": str(line_sum), "subtotal": str(invoice.subtotal)},
        )
    if invoice.subtotal + invoice.adjustments != invoice.total:
        raise LedgerInvariantError(
            "Invoice subtotal plus adjustments does not equal total",
            context={**context, "subtotal": str(invoice.subtotal), "total": str(invoice.total)},
        )
    if not any(item.kind == LineItemKind.BASE_FEE for item in invoice.line_items):
        raise LedgerInvariantError("Invoice is missing its base fee line item", context=context)


def _check_covers_period(invoice: Optional[Invoice], period: BillingPeriod) -> None:
    # Advancing next_billing_date past a shorter invoice would leave days unbilled.
    if invoice is not None and invoice.billing_period_end != period.last_day:
        raise LedgerInvariantError(
            f"Existing invoice {invoice.invoice_number or invoice.id} does not cover the billing period",
            context={
                "company_id": invoice.company_id,
                "invoice_id": invoice.id,
                "invoice_period_end": invoice.billing_period_end.isoformat(),
                "period_end": period.last_day.isoformat(),
            },
        )


@dataclass
class InvoiceGenerator:
    """Turns bill estimates into persisted invoices, one per company and period."""

    calculator: BillCalculator
    catalog: PricingCatalog
    repository: InvoiceRepository
    event_logger: BillingEventLogger
    notifier: BillingNotifier
    gateway_billed: Optional[GatewayBilledCompanies] = None
    invoice_due_days: int = 30
    max_error_messages: int = 50
    clock: Optional[Callable[[], datetime]] = None

    def generate_invoice(
        self,
        company_id: int,
        billing_month: date,
        initiated_by: Optional[str] = None,
    ) -> InvoiceGenerationResult:
        """Generate the invoice for the billing cycle containing ``billing_month``.

        Monthly plans bill the month, longer cycles bill their whole window.
        Windows line up with the company's ``next_billing_date`` so a manual
        invoice covers the same period the monthly batch would bill.
        """

        return self.generate_invoice_for_period(company_id, self.period_for(company_id, billing_month), initiated_by)

    def period_for(self, company_id: int, day: date) -> BillingPeriod:
        billing = self.catalog.get_company_billing(company_id)
        if billing is None or not billing.is_billable:
            return BillingPeriod.containing(day)
        plan = self.catalog.get_plan(billing.current_pricing_plan_id)
        return BillingPeriod.for_cycle(day, plan.billing_cycle, billing.next_billing_date)

    def generate_invoice_for_period(
        self,
        company_id: int,
        period: BillingPeriod,
        initiated_by: Optional[str] = None,
    ) -> InvoiceGenerationResult:
        existing = self.repository.find_active_invoice(company_id, period.start)
        if existing is not None:
            logger.info(
                "Invoice already exists for period",
                extra={"company_id": company_id, "invoice_id": existing.id, "period": period.label},
            )
            return InvoiceGenerationResult(
                outcome=InvoiceGenerationOutcome.EXISTING,
                company_id=company_id,
                period=period,
                invoice=existing,
            )

        estimate = self.calculator.calculate_bill(company_id, period)
        if estimate is None:
            return InvoiceGenerationResult(
                outcome=InvoiceGenerationOutcome.NO_PLAN,
                company_id=company_id,
                period=period,
            )

        invoice = self._build_invoice(estimate, initiated_by or SYSTEM_ACTOR)
        try:
            verify_invoice_totals(invoice)
        except LedgerInvariantError as exc:
            logger.error(
                "Refusing to persist inconsistent invoice",
                extra={"company_id": company_id, "period": period.label, **exc.context},
            )
            raise

        stored, created = self.repository.create_invoice(invoice)
        if not created:
            return InvoiceGenerationResult(
                outcome=InvoiceGenerationOutcome.EXISTING,
                company_id=company_id,
                period=period,
                invoice=stored,
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.INVOICE_CREATED,
                company_id=company_id,
                invoice_id=stored.id,
                actor_id=invoice.initiated_by,
                metadata={
                    "invoice_number": stored.invoice_number or "",
                    "period": period.label,
                    "total": str(stored.total),
                },
            )
        )
        logger.info(
            "Generated invoice",
            extra={
                "company_id": company_id,
                "invoice_id": stored.id,
                "invoice_number": stored.invoice_number,
                "total": str(stored.total),
            },
        )
        return InvoiceGenerationResult(
            outcome=InvoiceGenerationOutcome.CREATED,
            company_id=company_id,
            period=period,
            invoice=stored,
        )

    def _build_invoice(self, estimate: BillEstimate, initiated_by: str) -> Invoice:
        plan = estimate.plan
        period = estimate.period
        items: List[InvoiceLineItem] = [
            InvoiceLineItem(
                kind=LineItemKind.BASE_FEE,
                description=f"{plan.name} base fee ({period.label})",
                quantity=Decimal(1),
                unit_price=estimate.base_fee,
                amount=estimate.base_fee,
            )
        ]
        for usage in estimate.usage:
            if usage.overage_amount <= ZERO:
                continue
            kind = LineItemKind.for_dimension(usage.dimension)
            label, unit = _DIMENSION_LABELS[kind]
            items.append(
                InvoiceLineItem(
                    kind=kind,
                    description=f"{label}: {usage.overage_quantity} {unit} over {usage.included} included",
                    quantity=usage.overage_quantity,
                    unit_price=usage.unit_price,
                    amount=usage.overage_amount,
                )
            )

        subtotal = sum((item.amount for item in items), ZERO)
        now = _current_time(self.clock)
        return Invoice(
            company_id=estimate.company_id,
            pricing_plan_id=plan.id,
            billing_period_start=period.start,
            billing_period_end=period.last_day,
            status=InvoiceStatus.DRAFT,
            currency=estimate.currency,
            subtotal=subtotal,
            adjustments=ZERO,
            total=subtotal,
            due_date=period.last_day + timedelta(days=self.invoice_due_days),
            initiated_by=initiated_by,
            line_items=items,
            created_at=now,
            updated_at=now,
        )

    def generate_monthly_invoices(self, today: Optional[date] = None) -> InvoiceBatchResult:
        """Invoice every billable company whose billing cycle is due on ``today``."""

        run_date = today or _current_time(self.clock).date()
        excluded = set(self.gateway_billed.list_gateway_billed_company_ids()) if self.gateway_billed else set()

        created = existing = skipped = failed = 0
        failed_ids: List[int] = []
        errors: List[str] = []
        for billing in self.catalog.list_billable_companies():
            company_id = billing.company_id
            if company_id in excluded:
                continue
            if billing.next_billing_date is not None and billing.next_billing_date > run_date:
                continue
            anchor = billing.next_billing_date or run_date.replace(day=1)
            try:
                plan = self.catalog.get_plan(billing.current_pricing_plan_id)
                period = BillingPeriod.ending_at(anchor, plan.billing_cycle)
                result = self.generate_invoice_for_period(company_id, period, SYSTEM_ACTOR)
                if result.outcome == InvoiceGenerationOutcome.NO_PLAN:
                    skipped += 1
                    continue
                if result.outcome == InvoiceGenerationOutcome.CREATED:
                    created += 1
                else:
                    _check_covers_period(result.invoice, period)
                    existing += 1
                self.catalog.set_next_billing_date(company_id, add_billing_cycle(anchor, plan.billing_cycle))
            except Exception as exc:
                logger.exception("Failed to generate invoice", extra={"company_id": company_id})
                failed += 1
                failed_ids.append(company_id)
                if len(errors) < self.max_error_messages:
                    errors.append(f"Company {company_id}: {exc}")

        logger.info(
            "Monthly invoice generation finished",
            extra={"created": created, "existing": existing, "skipped": skipped, "failed": failed},
        )
        return InvoiceBatchResult(
            run_date=run_date,
            created=created,
            existing=existing,
            skipped=skipped,
            failed=failed,
            failed_company_ids=failed_ids,
            errors=errors,
        )

    def get_invoice(self, invoice_id: int) -> Invoice:
        invoice = self.repository.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(f"Invoice {invoice_id} not found", context={"invoice_id": invoice_id})
        return invoice

    def get_billing_history(
        self,
        company_id: int,
        *,
        limit: int = 24,
        period: Optional[BillingPeriod] = None,
    ) -> Sequence[Invoice]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        return self.repository.list_invoices(
            company_id,
            limit=limit,
            period_start_from=period.start if period else None,
            period_start_to=period.end if period else None,
        )

    def get_invoice_generation_status(self, month: date) -> InvoiceGenerationStatus:
        period = BillingPeriod.containing(month)
        excluded = set(self.gateway_billed.list_gateway_billed_company_ids()) if self.gateway_billed else set()
        billable = [c.company_id for c in self.catalog.list_billable_companies() if c.company_id not in excluded]
        invoices = self.repository.list_invoices_for_period(period.start)
        invoiced = {invoice.company_id for invoice in invoices}
        return InvoiceGenerationStatus(
            period=period,
            billable_companies=len(billable),
            invoices_generated=len(invoices),
            total_amount=sum((invoice.total for invoice in invoices), ZERO),
            pending_company_ids=[company_id for company_id in billable if company_id not in invoiced],
        )

    def issue_invoice(self, invoice_id: int, *, actor_id: Optional[str] = None) -> Invoice:
        updated = self._transition(
            invoice_id, InvoiceStatus.ISSUED, actor_id, issued_at=_current_time(self.clock)
        )
        self.notifier.notify_invoice_issued(updated)
        return updated

    def mark_invoice_sent(self, invoice_id: int, *, actor_id: Optional[str] = None) -> Invoice:
        return self._transition(invoice_id, InvoiceStatus.SENT, actor_id)

    def mark_invoice_paid(
        self,
        invoice_id: int,
        *,
        payment_reference: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Invoice:
        return self._transition(
            invoice_id,
            InvoiceStatus.PAID,
            actor_id,
            paid_at=_current_time(self.clock),
            payment_reference=payment_reference,
        )

    def void_invoice(self, invoice_id: int, *, actor_id: Optional[str] = None) -> Invoice:
        return self._transition(invoice_id, InvoiceStatus.VOID, actor_id)

    def _transition(
        self,
        invoice_id: int,
        target: InvoiceStatus,
        actor_id: Optional[str],
        **fields: object,
    ) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        if target not in INVOICE_TRANSITIONS[invoice.status]:
            raise InvoiceStateError(
                f"Cannot move invoice {invoice_id} from {invoice.status.value} to {target.value}",
                context={"invoice_id": invoice_id, "status": invoice.status.value, "target": target.value},
            )

        updated = self.repository.update_invoice_status(
            invoice_id, expected=invoice.status, status=target, **fields
        )
        if updated is None:
            raise ConcurrentModificationError(
                f"Invoice {invoice_id} changed while moving to {target.value}",
                context={"invoice_id": invoice_id},
            )

        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.INVOICE_STATUS_CHANGED,
                company_id=updated.company_id,
                invoice_id=updated.id,
                actor_id=actor_id,
                metadata={"from": invoice.status.value, "to": target.value},
            )
        )
        return updated


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "GatewayBilledCompanies",
    "InvoiceGenerator",
    "InvoiceRepository",
    "verify_invoice_totals",
]
