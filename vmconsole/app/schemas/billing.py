"""Caller-facing result and request schemas for the billing operations."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..billing import BillEstimate, BillingPeriod, Invoice, InvoiceGenerationStatus, InvoiceStatus, VMCost
from ..billing.models import InvoiceBatchResult
from ..metering.models import SnapshotCollectionResult
from ..pricing.models import PricingPlan
from ..subscriptions.models import ChargeBatchResult, LifecycleSweepResult


class NoPlanResult(BaseModel):
    """The company has no pricing plan and is not billable."""

    kind: Literal["no_plan"] = "no_plan"
    company_id: int = Field(alias="companyId")

    model_config = ConfigDict(populate_by_name=True)


class EstimateResult(BaseModel):
    kind: Literal["estimate"] = "estimate"
    estimate: BillEstimate

    model_config = ConfigDict(populate_by_name=True)


class VMCostsResult(BaseModel):
    kind: Literal["vm_costs"] = "vm_costs"
    company_id: int = Field(alias="companyId")
    period: BillingPeriod
    vms: List[VMCost]
    total_overage: Decimal = Field(alias="totalOverage")

    model_config = ConfigDict(populate_by_name=True)


class InvoiceCreatedResult(BaseModel):
    kind: Literal["created"] = "created"
    invoice: Invoice

    model_config = ConfigDict(populate_by_name=True)


class InvoiceAlreadyExistsResult(BaseModel):
    kind: Literal["already_exists"] = "already_exists"
    invoice: Invoice

    model_config = ConfigDict(populate_by_name=True)


BillingEstimateResult = Annotated[Union[NoPlanResult, EstimateResult], Field(discriminator="kind")]
VMCostsLookupResult = Annotated[Union[NoPlanResult, VMCostsResult], Field(discriminator="kind")]
ManualInvoiceResult = Annotated[
    Union[NoPlanResult, InvoiceCreatedResult, InvoiceAlreadyExistsResult],
    Field(discriminator="kind"),
]


class BatchOutcome(str, Enum):
    """How a triggered batch job ended."""

    NOTHING_TO_DO = "nothing_to_do"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"

    @classmethod
    def classify(cls, processed: int, failed: int) -> "BatchOutcome":
        if processed == 0:
            return cls.NOTHING_TO_DO
        if failed == 0:
            return cls.COMPLETED
        if failed < processed:
            return cls.PARTIALLY_FAILED
        return cls.FAILED


class BatchRunResult(BaseModel):
    """Outcome of a triggered batch job, with the job-specific summary attached."""

    job: str
    outcome: BatchOutcome
    processed: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    snapshots: Optional[SnapshotCollectionResult] = None
    invoices: Optional[InvoiceBatchResult] = None
    charges: Optional[ChargeBatchResult] = None
    past_due: Optional[LifecycleSweepResult] = Field(alias="pastDue", default=None)
    cancellations: Optional[LifecycleSweepResult] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def succeeded(self) -> bool:
        return self.outcome in {BatchOutcome.COMPLETED, BatchOutcome.NOTHING_TO_DO}


class BillingHistoryResponse(BaseModel):
    company_id: int = Field(alias="companyId")
    invoices: List[Invoice]

    model_config = ConfigDict(populate_by_name=True)


class InvoiceGenerationStatusResponse(BaseModel):
    status: InvoiceGenerationStatus

    model_config = ConfigDict(populate_by_name=True)


class GenerateInvoiceRequest(BaseModel):
    company_id: int = Field(alias="companyId", ge=1)
    billing_month: date = Field(alias="billingMonth")

    model_config = ConfigDict(populate_by_name=True)


class TriggerJobRequest(BaseModel):
    run_date: Optional[date] = Field(alias="date", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PricingPlansResponse(BaseModel):
    plans: List[PricingPlan]

    model_config = ConfigDict(populate_by_name=True)


class CompanyBillingSummary(BaseModel):
    """Live resources and the period-to-date estimate for one company."""

    company_id: int = Field(alias="companyId")
    pricing_plan_id: Optional[int] = Field(alias="pricingPlanId", default=None)
    vm_count: int = Field(alias="vmCount", default=0)
    running_vms: int = Field(alias="runningVms", default=0)
    total_cpu_cores: int = Field(alias="totalCpuCores", default=0)
    total_memory_gb: Decimal = Field(alias="totalMemoryGb", default=Decimal("0.00"))
    total_storage_gb: Decimal = Field(alias="totalStorageGb", default=Decimal("0.00"))
    estimated_cost: Optional[Decimal] = Field(alias="estimatedCost", default=None)
    currency: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class CompaniesBillingOverview(BaseModel):
    period: BillingPeriod
    companies: List[CompanyBillingSummary]
    total_companies: int = Field(alias="totalCompanies")
    # Keyed by currency; plans may bill in different currencies.
    estimated_revenue: Dict[str, Decimal] = Field(alias="estimatedRevenue", default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class InvoiceStatusChangedResult(BaseModel):
    kind: Literal["status_changed"] = "status_changed"
    invoice: Invoice

    model_config = ConfigDict(populate_by_name=True)


class UpdateInvoiceStatusRequest(BaseModel):
    status: InvoiceStatus
    payment_reference: Optional[str] = Field(alias="paymentReference", default=None, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


__all__ = [
    "BatchOutcome",
    "BatchRunResult",
    "BillingEstimateResult",
    "BillingHistoryResponse",
    "CompaniesBillingOverview",
    "CompanyBillingSummary",
    "EstimateResult",
    "GenerateInvoiceRequest",
    "InvoiceAlreadyExistsResult",
    "InvoiceCreatedResult",
    "InvoiceGenerationStatusResponse",
    "InvoiceStatusChangedResult",
    "ManualInvoiceResult",
    "NoPlanResult",
    "PricingPlansResponse",
    "TriggerJobRequest",
    "UpdateInvoiceStatusRequest",
    "VMCostsLookupResult",
    "VMCostsResult",
]
