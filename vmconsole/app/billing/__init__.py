"""Billing domain package: bill calculation, invoices and the billing ledger."""

from .errors import (
    BillingError,
    ConcurrentModificationError,
    GatewayDeclinedError,
    GatewayError,
    GatewayNotConfiguredError,
    GatewayTimeoutError,
    InvoiceNotFoundError,
    InvoiceStateError,
    LedgerInvariantError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
)
from .models import (
    BillEstimate,
    BillingAuditEvent,
    BillingAuditEventType,
    BillingPeriod,
    DimensionUsage,
    Invoice,
    InvoiceBatchResult,
    InvoiceGenerationOutcome,
    InvoiceGenerationResult,
    InvoiceGenerationStatus,
    InvoiceLineItem,
    InvoiceStatus,
    LineItemKind,
    VMCost,
)

__all__ = [
    "BillEstimate",
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingError",
    "BillingPeriod",
    "ConcurrentModificationError",
    "DimensionUsage",
    "GatewayDeclinedError",
    "GatewayError",
    "GatewayNotConfiguredError",
    "GatewayTimeoutError",
    "Invoice",
    "InvoiceBatchResult",
    "InvoiceGenerationOutcome",
    "InvoiceGenerationResult",
    "InvoiceGenerationStatus",
    "InvoiceLineItem",
    "InvoiceNotFoundError",
    "InvoiceStateError",
    "InvoiceStatus",
    "LedgerInvariantError",
    "LineItemKind",
    "PlanNotFoundError",
    "SubscriptionNotFoundError",
    "VMCost",
]
