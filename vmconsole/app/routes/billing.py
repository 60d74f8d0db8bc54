"""API routes exposing billing functionality."""
from __future__ import annotations

import os
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, status

from ... import app_context
from ..billing import ConcurrentModificationError, InvoiceStateError
from ..schemas.billing import (
    BatchRunResult,
    BillingEstimateResult,
    BillingHistoryResponse,
    CompaniesBillingOverview,
    GenerateInvoiceRequest,
    InvoiceGenerationStatusResponse,
    InvoiceStatusChangedResult,
    ManualInvoiceResult,
    PricingPlansResponse,
    TriggerJobRequest,
    UpdateInvoiceStatusRequest,
    VMCostsLookupResult,
)
from ..services.billing import get_billing_operations

SUPER_ADMIN_ROLE = "super_admin"

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    return app_context.get_current_user(session_token=session_token)


def _is_super_admin(user: Any) -> bool:
    return getattr(user, "role", None) == SUPER_ADMIN_ROLE


def _require_super_admin(user: Any) -> None:
    if not _is_super_admin(user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Super admin access required")


def _resolve_company_id(user: Any, requested: Optional[int]) -> int:
    """Super admins may act on any company; everyone else on their own."""

    if _is_super_admin(user):
        if requested is not None:
            return requested
    elif requested is not None and requested != getattr(user, "company_id", None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot view billing for another company")

    company_id = getattr(user, "company_id", None)
    if company_id is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Company ID required")
    return company_id


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.get("/estimate", response_model=BillingEstimateResult)
def get_billing_estimate(
    company_id: Optional[int] = Query(default=None, alias="companyId"),
    month: Optional[date] = Query(default=None),
    *,
    current_user=Depends(_get_current_user),
) -> BillingEstimateResult:
    resolved = _resolve_company_id(current_user, company_id)
    try:
        return get_billing_operations().get_billing_estimate(resolved, month)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/vm-costs", response_model=VMCostsLookupResult)
def get_vm_costs(
    company_id: Optional[int] = Query(default=None, alias="companyId"),
    month: Optional[date] = Query(default=None),
    *,
    current_user=Depends(_get_current_user),
) -> VMCostsLookupResult:
    resolved = _resolve_company_id(current_user, company_id)
    try:
        return get_billing_operations().get_vm_costs(resolved, month)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get("/history", response_model=BillingHistoryResponse)
def get_billing_history(
    company_id: Optional[int] = Query(default=None, alias="companyId"),
    limit: int = Query(default=24, ge=1, le=120),
    month: Optional[date] = Query(default=None),
    *,
    current_user=Depends(_get_current_user),
) -> BillingHistoryResponse:
    resolved = _resolve_company_id(current_user, company_id)
    try:
        return get_billing_operations().get_billing_history(resolved, limit=limit, month=month)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/invoices/status", response_model=InvoiceGenerationStatusResponse)
def get_invoice_generation_status(
    month: Optional[date] = Query(default=None),
    *,
    current_user=Depends(_get_current_user),
) -> InvoiceGenerationStatusResponse:
    _require_super_admin(current_user)
    return get_billing_operations().get_invoice_generation_status(month)


@router.post("/generate-invoice", response_model=ManualInvoiceResult)
def generate_invoice(
    payload: GenerateInvoiceRequest,
    *,
    current_user=Depends(_get_current_user),
) -> ManualInvoiceResult:
    _require_super_admin(current_user)
    try:
        return get_billing_operations().generate_invoice_manually(
            payload.company_id,
            payload.billing_month,
            initiated_by=str(current_user.id),
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.get("/plans", response_model=PricingPlansResponse)
def list_pricing_plans(
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    *,
    current_user=Depends(_get_current_user),
) -> PricingPlansResponse:
    # Retired plan versions are only listed for super admins.
    return get_billing_operations().list_pricing_plans(
        include_inactive=include_inactive and _is_super_admin(current_user)
    )


@router.get("/all-companies", response_model=CompaniesBillingOverview)
def get_all_companies_billing(
    month: Optional[date] = Query(default=None),
    *,
    current_user=Depends(_get_current_user),
) -> CompaniesBillingOverview:
    _require_super_admin(current_user)
    return get_billing_operations().get_all_companies_billing(month)


@router.post("/invoices/{invoice_id}/status", response_model=InvoiceStatusChangedResult)
def update_invoice_status(
    invoice_id: int,
    payload: UpdateInvoiceStatusRequest,
    *,
    current_user=Depends(_get_current_user),
) -> InvoiceStatusChangedResult:
    _require_super_admin(current_user)
    try:
        return get_billing_operations().update_invoice_status(
            invoice_id,
            payload.status,
            actor_id=str(current_user.id),
            payment_reference=payload.payment_reference,
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (InvoiceStateError, ConcurrentModificationError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


def _run_date(payload: Optional[TriggerJobRequest]) -> Optional[date]:
    return payload.run_date if payload else None


@router.post("/snapshots/daily", response_model=BatchRunResult)
def trigger_daily_snapshots(
    payload: Optional[TriggerJobRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> BatchRunResult:
    _require_super_admin(current_user)
    return get_billing_operations().trigger_daily_snapshots(_run_date(payload))


@router.post("/invoices/generate-monthly", response_model=BatchRunResult)
def trigger_monthly_invoices(
    payload: Optional[TriggerJobRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> BatchRunResult:
    _require_super_admin(current_user)
    return get_billing_operations().trigger_monthly_invoices(_run_date(payload))


@router.post("/subscriptions/process", response_model=BatchRunResult)
def trigger_subscription_charges(
    payload: Optional[TriggerJobRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> BatchRunResult:
    _require_super_admin(current_user)
    return get_billing_operations().trigger_subscription_charges(_run_date(payload))
