"""Persistence layer for company subscriptions."""
from __future__ import annotations

from datetime import date
from typing import Iterable, List, Optional, Sequence

from ...db import PostgresRepository
from .models import CompanySubscription, SubscriptionStatus


def _row_to_subscription(row: dict) -> CompanySubscription:
    return CompanySubscription(
        id=row["id"],
        company_id=row["company_id"],
        plan_id=row["plan_id"],
        status=SubscriptionStatus(row["status"]),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        billing_anchor_day=row.get("billing_anchor_day"),
        gateway_subscription_ref=row.get("gateway_subscription_ref"),
        cancelled_at=row.get("cancelled_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresSubscriptionRepository(PostgresRepository):
    """Concrete repository persisting company subscriptions in PostgreSQL."""

    def get_subscription(self, subscription_id: int) -> Optional[CompanySubscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM company_subscriptions WHERE id = %s", (subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def _list(self, where: str, params: tuple) -> List[CompanySubscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM company_subscriptions
                WHERE {where}
                ORDER BY current_period_end, id
                """,
                params,
            )
            return [_row_to_subscription(row) for row in cursor.fetchall()]

    def list_due_subscriptions(self, today: date) -> Sequence[CompanySubscription]:
        """Active gateway subscriptions whose period ended on or before ``today``."""

        return self._list(
            "status = 'active' AND current_period_end <= %s AND gateway_subscription_ref IS NOT NULL",
            (today,),
        )

    def list_active_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        return self._list(
            "status = 'active' AND current_period_end < %s AND gateway_subscription_ref IS NOT NULL",
            (cutoff,),
        )

    def list_suspended_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        return self._list(
            "status = 'suspended' AND current_period_end < %s AND gateway_subscription_ref IS NOT NULL",
            (cutoff,),
        )

    def list_gateway_billed_company_ids(self) -> Iterable[int]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT DISTINCT company_id
                FROM company_subscriptions
                WHERE status <> 'cancelled' AND gateway_subscription_ref IS NOT NULL
                """
            )
            return [row["company_id"] for row in cursor.fetchall()]

    def update_subscription(
        self,
        subscription: CompanySubscription,
        *,
        expected_status: SubscriptionStatus,
        expected_period_end: date,
    ) -> Optional[CompanySubscription]:
        """Compare-and-set write; ``None`` when another writer changed the row first."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE company_subscriptions
                SET plan_id = %(plan_id)s,
                    status = %(status)s,
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    billing_anchor_day = %(billing_anchor_day)s,
                    cancelled_at = %(cancelled_at)s,
                    updated_at = %(updated_at)s
                WHERE id = %(id)s
                  AND status = %(expected_status)s
                  AND current_period_end = %(expected_period_end)s
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "plan_id": subscription.plan_id,
                    "status": subscription.status.value,
                    "current_period_start": subscription.current_period_start,
                    "current_period_end": subscription.current_period_end,
                    "billing_anchor_day": subscription.billing_anchor_day,
                    "cancelled_at": subscription.cancelled_at,
                    "updated_at": subscription.updated_at,
                    "expected_status": expected_status.value,
                    "expected_period_end": expected_period_end,
                },
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None


__all__ = ["PostgresSubscriptionRepository"]
