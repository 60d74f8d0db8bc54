"""Domain models for bill calculation and invoicing."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..pricing.models import BillingCycle, PricingPlan, ResourceDimension, add_billing_cycle

ZERO = Decimal("0.00")


class InvoiceStatus(str, Enum):
    """Lifecycle status of a persisted invoice."""

    DRAFT = "draft"
    ISSUED = "issued"
    SENT = "sent"
    PAID = "paid"
    VOID = "void"


INVOICE_TRANSITIONS: Dict[InvoiceStatus, FrozenSet[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: frozenset({InvoiceStatus.ISSUED, InvoiceStatus.VOID}),
    InvoiceStatus.ISSUED: frozenset({InvoiceStatus.SENT, InvoiceStatus.VOID}),
    InvoiceStatus.SENT: frozenset({InvoiceStatus.PAID, InvoiceStatus.VOID}),
    InvoiceStatus.PAID: frozenset(),
    InvoiceStatus.VOID: frozenset(),
}


class LineItemKind(str, Enum):
    """Kinds of invoice line items."""

    BASE_FEE = "base_fee"
    CPU_OVERAGE = "cpu_overage"
    MEMORY_OVERAGE = "memory_overage"
    STORAGE_OVERAGE = "storage_overage"

    @classmethod
    def for_dimension(cls, dimension: ResourceDimension) -> "LineItemKind":
        return {
            ResourceDimension.CPU: cls.CPU_OVERAGE,
            ResourceDimension.MEMORY: cls.MEMORY_OVERAGE,
            ResourceDimension.STORAGE: cls.STORAGE_OVERAGE,
        }[dimension]


class BillingPeriod(BaseModel):
    """Half-open date window ``[start, end)`` covered by one bill."""

    start: date
    end: date

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @model_validator(mode="after")
    def _check_order(self) -> "BillingPeriod":
        if self.end <= self.start:
            raise ValueError("billing period end must be after its start")
        return self

    @classmethod
    def for_month(cls, year: int, month: int) -> "BillingPeriod":
        start = date(year, month, 1)
        return cls(start=start, end=add_billing_cycle(start, BillingCycle.MONTHLY))

    @classmethod
    def containing(cls, day: date) -> "BillingPeriod":
        return cls.for_month(day.year, day.month)

    @classmethod
    def ending_at(cls, anchor: date, cycle: BillingCycle) -> "BillingPeriod":
        """The cycle-long window that ends (exclusively) at ``anchor``."""

        return cls(start=add_billing_cycle(anchor, cycle, -1), end=anchor)

    @classmethod
    def for_cycle(cls, day: date, cycle: BillingCycle, anchor: Optional[date] = None) -> "BillingPeriod":
        """The cycle-long window containing ``day``.

        Windows are aligned to ``anchor`` (any cycle boundary, usually the
        company's next billing date) or to January 1st when there is none.
        """

        origin = anchor or date(day.year, 1, 1)
        count = ((day.year - origin.year) * 12 + day.month - origin.month) // cycle.months
        start = add_billing_cycle(origin, cycle, count)
        while start > day:
            count -= 1
            start = add_billing_cycle(origin, cycle, count)
        end = add_billing_cycle(origin, cycle, count + 1)
        while end <= day:
            count += 1
            start, end = end, add_billing_cycle(origin, cycle, count + 1)
        return cls(start=start, end=end)

    @property
    def last_day(self) -> date:
        return self.end - timedelta(days=1)

    @property
    def label(self) -> str:
        return self.start.strftime("%Y-%m")

    def contains(self, day: date) -> bool:
        return self.start <= day < self.end


def invoice_number_prefix(period_start: date) -> str:
    return f"INV-{period_start.strftime('%Y%m')}-"


def format_invoice_number(prefix: str, sequence: int) -> str:
    return f"{prefix}{sequence:05d}"


class InvoiceLineItem(BaseModel):
    """Single charge on an invoice."""

    id: Optional[int] = None
    invoice_id: Optional[int] = None
    kind: LineItemKind
    description: str
    quantity: Decimal = Field(ge=0)
    unit_price: Decimal = Field(ge=0)
    amount: Decimal = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Invoice(BaseModel):
    """Persisted invoice; ``billing_period_end`` is the last billed day (inclusive)."""

    id: Optional[int] = None
    invoice_number: Optional[str] = None
    company_id: int
    pricing_plan_id: Optional[int] = None
    billing_period_start: date
    billing_period_end: date
    status: InvoiceStatus = InvoiceStatus.DRAFT
    currency: str = Field(default="USD", min_length=3, max_length=3)
    subtotal: Decimal = ZERO
    adjustments: Decimal = ZERO
    total: Decimal = ZERO
    due_date: Optional[date] = None
    initiated_by: Optional[str] = None
    notes: Optional[str] = None
    issued_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_period(self) -> "Invoice":
        if self.billing_period_end < self.billing_period_start:
            raise ValueError("billing_period_end must not precede billing_period_start")
        return self

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(start=self.billing_period_start, end=self.billing_period_end + timedelta(days=1))

    @property
    def is_terminal(self) -> bool:
        return not INVOICE_TRANSITIONS[self.status]


class DimensionUsage(BaseModel):
    """Company-level usage and overage for one resource dimension."""

    dimension: ResourceDimension
    total_usage: Decimal
    included: Decimal
    overage_quantity: Decimal
    unit_price: Decimal
    overage_amount: Decimal = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class VMCost(BaseModel):
    """Per-VM share of the company's billed usage and overage."""

    vm_id: int
    days_metered: int
    cpu_cores: Decimal
    memory_gb: Decimal
    storage_gb: Decimal
    cpu_overage: Decimal = ZERO
    memory_overage: Decimal = ZERO
    storage_overage: Decimal = ZERO

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def total_overage(self) -> Decimal:
        return self.cpu_overage + self.memory_overage + self.storage_overage


class BillEstimate(BaseModel):
    """Cost breakdown for one company and one billing period."""

    company_id: int
    plan: PricingPlan
    period: BillingPeriod
    currency: str = "USD"
    days_metered: int = 0
    snapshot_count: int = 0
    usage: List[DimensionUsage] = Field(default_factory=list)
    base_fee: Decimal = ZERO
    overage_total: Decimal = ZERO
    subtotal: Decimal = ZERO
    vms: List[VMCost] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def usage_for(self, dimension: ResourceDimension) -> DimensionUsage:
        for entry in self.usage:
            if entry.dimension == dimension:
                return entry
        raise KeyError(dimension)


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing engine."""

    INVOICE_CREATED = "invoice_created"
    INVOICE_STATUS_CHANGED = "invoice_status_changed"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_SYNCED = "subscription_synced"
    SUBSCRIPTION_PLAN_CHANGED = "subscription_plan_changed"
    CHARGE_FAILED = "charge_failed"


class BillingAuditEvent(BaseModel):
    """Structured audit event for the billing ledger."""

    event_type: BillingAuditEventType
    company_id: Optional[int] = None
    invoice_id: Optional[int] = None
    subscription_id: Optional[int] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoiceGenerationOutcome(str, Enum):
    """Result of asking for one company's invoice."""

    CREATED = "created"
    EXISTING = "existing"
    NO_PLAN = "no_plan"


class InvoiceGenerationResult(BaseModel):
    outcome: InvoiceGenerationOutcome
    company_id: int
    period: BillingPeriod
    invoice: Optional[Invoice] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def invoice_id(self) -> Optional[int]:
        return self.invoice.id if self.invoice else None


class InvoiceBatchResult(BaseModel):
    """Aggregate outcome of a monthly invoice run."""

    run_date: date
    created: int = 0
    existing: int = 0
    skipped: int = 0
    failed: int = 0
    failed_company_ids: List[int] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def processed(self) -> int:
        return self.created + self.existing + self.skipped + self.failed


class InvoiceGenerationStatus(BaseModel):
    """Progress of invoicing for one calendar month."""

    period: BillingPeriod
    billable_companies: int
    invoices_generated: int
    total_amount: Decimal
    pending_company_ids: List[int] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


__all__ = [
    "BillEstimate",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingPeriod",
    "DimensionUsage",
    "INVOICE_TRANSITIONS",
    "Invoice",
    "InvoiceBatchResult",
    "InvoiceGenerationOutcome",
    "InvoiceGenerationResult",
    "InvoiceGenerationStatus",
    "InvoiceLineItem",
    "InvoiceStatus",
    "LineItemKind",
    "VMCost",
    "ZERO",
    "format_invoice_number",
    "invoice_number_prefix",
]
