"""Persistence layer for pricing plans and company billing settings."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from ...db import PostgresRepository
from .models import BillingCycle, CompanyBilling, PricingPlan

_PLAN_COLUMNS = (
    "name",
    "description",
    "base_price",
    "currency",
    "included_cpu_cores",
    "included_memory_gb",
    "included_storage_gb",
    "overage_cpu_core_price",
    "overage_memory_gb_price",
    "overage_storage_gb_price",
    "billing_cycle",
    "is_active",
    "is_default",
    "display_order",
    "supersedes_plan_id",
)

_INSERT_PLAN_SQL = f"""
    INSERT INTO pricing_plans ({", ".join(_PLAN_COLUMNS)}, created_at, updated_at)
    VALUES ({", ".join(f"%({name})s" for name in _PLAN_COLUMNS)}, %(created_at)s, %(updated_at)s)
    RETURNING *
"""


def _row_to_plan(row: dict) -> PricingPlan:
    return PricingPlan(
        id=row["id"],
        name=row["name"],
        description=row.get("description"),
        base_price=Decimal(row["base_price"]),
        currency=row.get("currency") or "USD",
        included_cpu_cores=Decimal(row["included_cpu_cores"]),
        included_memory_gb=Decimal(row["included_memory_gb"]),
        included_storage_gb=Decimal(row["included_storage_gb"]),
        overage_cpu_core_price=Decimal(row["overage_cpu_core_price"]),
        overage_memory_gb_price=Decimal(row["overage_memory_gb_price"]),
        overage_storage_gb_price=Decimal(row["overage_storage_gb_price"]),
        billing_cycle=BillingCycle(row["billing_cycle"]),
        is_active=bool(row["is_active"]),
        is_default=bool(row["is_default"]),
        display_order=int(row.get("display_order") or 0),
        supersedes_plan_id=row.get("supersedes_plan_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_company_billing(row: dict) -> CompanyBilling:
    return CompanyBilling(
        company_id=row["company_id"],
        current_pricing_plan_id=row.get("current_pricing_plan_id"),
        gateway_customer_ref=row.get("gateway_customer_ref"),
        billing_email=row.get("billing_email"),
        next_billing_date=row.get("next_billing_date"),
        updated_at=row["updated_at"],
    )


def _plan_params(plan: PricingPlan) -> Dict[str, Any]:
    params: Dict[str, Any] = {name: getattr(plan, name) for name in _PLAN_COLUMNS}
    params["billing_cycle"] = plan.billing_cycle.value
    params["created_at"] = plan.created_at
    params["updated_at"] = plan.updated_at
    return params


class PostgresPricingRepository(PostgresRepository):
    """Concrete repository persisting pricing plans in PostgreSQL."""

    def get_plan(self, plan_id: int) -> Optional[PricingPlan]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM pricing_plans WHERE id = %s", (plan_id,))
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def list_plans(self, *, active_only: bool = True) -> Sequence[PricingPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM pricing_plans
                WHERE (%s = FALSE OR is_active)
                ORDER BY display_order, id
                """,
                (active_only,),
            )
            return [_row_to_plan(row) for row in cursor.fetchall()]

    def get_default_plan(self) -> Optional[PricingPlan]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM pricing_plans
                WHERE is_default AND is_active
                ORDER BY updated_at DESC
                LIMIT 1
                """
            )
            row = cursor.fetchone()
            return _row_to_plan(row) if row else None

    def insert_plan(self, plan: PricingPlan) -> PricingPlan:
        with self._cursor() as cursor:
            cursor.execute(_INSERT_PLAN_SQL, _plan_params(plan))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist pricing plan")
            return _row_to_plan(row)

    def update_plan(self, plan: PricingPlan) -> PricingPlan:
        if plan.id is None:
            raise ValueError("Cannot update a plan without an id")
        assignments = ", ".join(f"{name} = %({name})s" for name in _PLAN_COLUMNS)
        params = _plan_params(plan)
        params["id"] = plan.id
        with self._cursor() as cursor:
            cursor.execute(
                f"UPDATE pricing_plans SET {assignments}, updated_at = %(updated_at)s WHERE id = %(id)s RETURNING *",
                params,
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError(f"Pricing plan {plan.id} disappeared during update")
            return _row_to_plan(row)

    def replace_plan_version(self, old_plan_id: int, new_plan: PricingPlan) -> PricingPlan:
        with self._cursor() as cursor:
            cursor.execute(_INSERT_PLAN_SQL, _plan_params(new_plan))
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist pricing plan version")
            stored = _row_to_plan(row)
            cursor.execute(
                "UPDATE pricing_plans SET is_active = FALSE, is_default = FALSE, updated_at = NOW() WHERE id = %s",
                (old_plan_id,),
            )
            cursor.execute(
                """
                UPDATE company_billing
                SET current_pricing_plan_id = %s, updated_at = NOW()
                WHERE current_pricing_plan_id = %s
                """,
                (stored.id, old_plan_id),
            )
            return stored

    def clear_default_flag(self, *, except_plan_id: int) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE pricing_plans SET is_default = FALSE, updated_at = NOW() WHERE is_default AND id <> %s",
                (except_plan_id,),
            )

    def plan_is_invoiced(self, plan_id: int) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT EXISTS (
                    SELECT 1 FROM invoices WHERE pricing_plan_id = %s AND status <> 'void'
                ) AS invoiced
                """,
                (plan_id,),
            )
            row = cursor.fetchone()
            return bool(row and row["invoiced"])

    def get_company_billing(self, company_id: int) -> Optional[CompanyBilling]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM company_billing WHERE company_id = %s", (company_id,))
            row = cursor.fetchone()
            return _row_to_company_billing(row) if row else None

    def upsert_company_billing(self, billing: CompanyBilling) -> CompanyBilling:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO company_billing (
                    company_id,
                    current_pricing_plan_id,
                    gateway_customer_ref,
                    billing_email,
                    next_billing_date,
                    updated_at
                )
                VALUES (%(company_id)s, %(current_pricing_plan_id)s, %(gateway_customer_ref)s,
                        %(billing_email)s, %(next_billing_date)s, %(updated_at)s)
                ON CONFLICT (company_id) DO UPDATE SET
                    current_pricing_plan_id = EXCLUDED.current_pricing_plan_id,
                    gateway_customer_ref = EXCLUDED.gateway_customer_ref,
                    billing_email = EXCLUDED.billing_email,
                    next_billing_date = EXCLUDED.next_billing_date,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                billing.model_dump(),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist company billing settings")
            return _row_to_company_billing(row)

    def list_billable_companies(self) -> Sequence[CompanyBilling]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM company_billing
                WHERE current_pricing_plan_id IS NOT NULL
                ORDER BY company_id
                """
            )
            rows: List[dict] = cursor.fetchall()
            return [_row_to_company_billing(row) for row in rows]

    def set_next_billing_date(self, company_id: int, next_billing_date: Optional[date]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE company_billing SET next_billing_date = %s, updated_at = NOW() WHERE company_id = %s",
                (next_billing_date, company_id),
            )


__all__ = ["PostgresPricingRepository"]
