"""Period-end charging and suspend/cancel lifecycle for gateway subscriptions."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol, Sequence, TypeVar

from ..billing.errors import (
    ConcurrentModificationError,
    GatewayDeclinedError,
    GatewayNotConfiguredError,
    GatewayTimeoutError,
    SubscriptionNotFoundError,
)
from ..billing.models import BillingAuditEvent, BillingAuditEventType
from ..billing.service import BillingEventLogger, BillingNotifier
from ..pricing.catalog import PricingCatalog
from ..pricing.models import PricingPlan, add_billing_cycle
from .gateway import PaymentGateway
from .models import (
    ChargeBatchResult,
    CompanySubscription,
    GatewaySubscription,
    LifecycleSweepResult,
    SubscriptionStatus,
    local_status_for_remote,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SubscriptionRepository(Protocol):
    """Persistence operations required by the charge processor."""

    def get_subscription(self, subscription_id: int) -> Optional[CompanySubscription]:
        ...

    def list_due_subscriptions(self, today: date) -> Sequence[CompanySubscription]:
        ...

    def list_active_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        ...

    def list_suspended_ended_before(self, cutoff: date) -> Sequence[CompanySubscription]:
        ...

    def list_gateway_billed_company_ids(self) -> Iterable[int]:
        ...

    def update_subscription(
        self,
        subscription: CompanySubscription,
        *,
        expected_status: SubscriptionStatus,
        expected_period_end: date,
    ) -> Optional[CompanySubscription]:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    return clock() if clock else datetime.now(timezone.utc)


@dataclass
class SubscriptionChargeProcessor:
    """Charges due subscriptions and keeps local state in step with the gateway.

    Gateway calls are made without holding any lock; every local write is a
    compare-and-set on ``(status, current_period_end)`` so a concurrent admin
    action makes the automated write fail instead of overwriting it.
    """

    repository: SubscriptionRepository
    catalog: PricingCatalog
    gateway: Optional[PaymentGateway]
    event_logger: BillingEventLogger
    notifier: BillingNotifier
    max_attempts: int = 3
    retry_backoff: float = 1.0
    past_due_grace_days: int = 3
    cancel_after_days: int = 30
    max_error_messages: int = 50
    clock: Optional[Callable[[], datetime]] = None
    sleep: Callable[[float], None] = field(default=time.sleep)

    def _require_gateway(self) -> PaymentGateway:
        if self.gateway is None:
            raise GatewayNotConfiguredError("Payment gateway is not configured")
        return self.gateway

    def _today(self, today: Optional[date]) -> date:
        return today or _current_time(self.clock).date()

    def _call_gateway(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = 1
        while True:
            try:
                return operation(*args, **kwargs)
            except GatewayTimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise
                logger.warning(
                    "Transient gateway failure, retrying",
                    extra={"attempt": attempt, "max_attempts": self.max_attempts, "error": str(exc)},
                )
                self.sleep(self.retry_backoff * attempt)
                attempt += 1

    def _write(self, current: CompanySubscription, updated: CompanySubscription) -> CompanySubscription:
        stored = self.repository.update_subscription(
            updated,
            expected_status=current.status,
            expected_period_end=current.current_period_end,
        )
        if stored is None:
            raise ConcurrentModificationError(
                f"Subscription {current.id} changed concurrently",
                context={"subscription_id": current.id},
            )
        return stored

    def _log(
        self,
        event_type: BillingAuditEventType,
        subscription: CompanySubscription,
        *,
        actor_id: Optional[str] = None,
        **metadata: str,
    ) -> None:
        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                company_id=subscription.company_id,
                subscription_id=subscription.id,
                actor_id=actor_id,
                metadata=metadata,
            )
        )

    def _set_status(
        self,
        subscription: CompanySubscription,
        status: SubscriptionStatus,
        *,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> CompanySubscription:
        now = _current_time(self.clock)
        update = {"status": status, "updated_at": now}
        if status == SubscriptionStatus.CANCELLED:
            update["cancelled_at"] = now
        stored = self._write(subscription, subscription.model_copy(update=update))

        if status == SubscriptionStatus.CANCELLED:
            event_type = BillingAuditEventType.SUBSCRIPTION_CANCELLED
            self.notifier.notify_subscription_cancelled(stored)
        elif status == SubscriptionStatus.SUSPENDED:
            event_type = BillingAuditEventType.SUBSCRIPTION_SUSPENDED
        else:
            event_type = BillingAuditEventType.SUBSCRIPTION_SYNCED
        self._log(event_type, stored, actor_id=actor_id, reason=reason, previous=subscription.status.value)
        logger.info(
            "Subscription status changed",
            extra={
                "subscription_id": stored.id,
                "company_id": stored.company_id,
                "from_status": subscription.status.value,
                "to_status": status.value,
                "reason": reason,
            },
        )
        return stored

    def _follow_remote(self, subscription: CompanySubscription, remote: GatewaySubscription) -> bool:
        """Apply the gateway's status locally; return ``True`` when the local status changed."""

        local = local_status_for_remote(remote.status)
        if local == subscription.status:
            return False
        self._set_status(subscription, local, reason=f"gateway status {remote.status}")
        return True

    def _suspend_for_failed_charge(self, subscription: CompanySubscription, reason: str) -> None:
        stored = self._set_status(subscription, SubscriptionStatus.SUSPENDED, reason=reason)
        self._log(BillingAuditEventType.CHARGE_FAILED, stored, reason=reason)
        self.notifier.notify_charge_failed(stored, reason)

    def _renew(self, subscription: CompanySubscription, plan: PricingPlan) -> CompanySubscription:
        new_start = subscription.current_period_end
        anchor_day = subscription.anchor_day
        new_end = add_billing_cycle(new_start, plan.billing_cycle, anchor_day=anchor_day)
        stored = self._write(
            subscription,
            subscription.model_copy(
                update={
                    "current_period_start": new_start,
                    "current_period_end": new_end,
                    "billing_anchor_day": anchor_day,
                    "updated_at": _current_time(self.clock),
                }
            ),
        )
        self.catalog.set_next_billing_date(subscription.company_id, new_end)
        self._log(
            BillingAuditEventType.SUBSCRIPTION_RENEWED,
            stored,
            period_start=new_start.isoformat(),
            period_end=new_end.isoformat(),
        )
        return stored

    def _charge_one(self, gateway: PaymentGateway, subscription: CompanySubscription) -> Optional[str]:
        """Charge one subscription; return ``None`` on success or a failure message."""

        billing = self.catalog.get_company_billing(subscription.company_id)
        if billing is None or not billing.gateway_customer_ref:
            return f"Company {subscription.company_id} has no gateway customer reference"

        remote = self._call_gateway(gateway.retrieve_subscription, subscription.gateway_subscription_ref)
        if local_status_for_remote(remote.status) != SubscriptionStatus.ACTIVE:
            self._follow_remote(subscription, remote)
            return f"Gateway subscription {remote.ref} is not active: {remote.status}"

        plan = self.catalog.get_plan(subscription.plan_id)
        key = subscription.charge_idempotency_key
        try:
            invoice = self._call_gateway(
                gateway.create_invoice,
                customer_ref=billing.gateway_customer_ref,
                subscription_ref=subscription.gateway_subscription_ref,
                description=f"Subscription charge for {plan.name}",
                idempotency_key=key,
            )
            paid = self._call_gateway(gateway.finalize_and_pay_invoice, invoice.ref, idempotency_key=key)
        except GatewayDeclinedError as exc:
            reason = f"Charge declined for subscription {subscription.id}: {exc}"
            self._suspend_for_failed_charge(subscription, reason)
            return reason

        if not paid.paid:
            reason = f"Invoice {paid.ref} not paid: {paid.status}"
            self._suspend_for_failed_charge(subscription, reason)
            return reason

        self._renew(subscription, plan)
        return None

    def process_subscription_charges(self, today: Optional[date] = None) -> ChargeBatchResult:
        """Charge every active gateway subscription whose period has ended."""

        gateway = self._require_gateway()
        run_date = self._today(today)
        due = self.repository.list_due_subscriptions(run_date)

        charged = failed = 0
        failed_ids: List[int] = []
        errors: List[str] = []

        def _record(subscription_id: int, message: str) -> None:
            failed_ids.append(subscription_id)
            if len(errors) < self.max_error_messages:
                errors.append(message)

        for subscription in due:
            try:
                failure = self._charge_one(gateway, subscription)
            except Exception as exc:
                logger.exception(
                    "Subscription charge failed",
                    extra={"subscription_id": subscription.id, "company_id": subscription.company_id},
                )
                failed += 1
                _record(subscription.id, f"Failed to charge company {subscription.company_id}: {exc}")
                continue

            if failure is None:
                charged += 1
                logger.info(
                    "Charged subscription",
                    extra={"subscription_id": subscription.id, "company_id": subscription.company_id},
                )
            else:
                failed += 1
                logger.warning(failure, extra={"subscription_id": subscription.id})
                _record(subscription.id, failure)

        logger.info(
            "Subscription charge processing finished",
            extra={"processed": len(due), "charged": charged, "failed": failed},
        )
        return ChargeBatchResult(
            run_date=run_date,
            processed=len(due),
            charged=charged,
            failed=failed,
            failed_subscription_ids=failed_ids,
            errors=errors,
        )

    def check_past_due_subscriptions(self, today: Optional[date] = None) -> LifecycleSweepResult:
        """Reconcile active subscriptions whose period ended beyond the grace window."""

        gateway = self._require_gateway()
        run_date = self._today(today)
        cutoff = run_date - timedelta(days=self.past_due_grace_days)
        candidates = self.repository.list_active_ended_before(cutoff)

        transitioned = failed = 0
        errors: List[str] = []
        for subscription in candidates:
            try:
                remote = self._call_gateway(gateway.retrieve_subscription, subscription.gateway_subscription_ref)
                if self._follow_remote(subscription, remote):
                    transitioned += 1
                elif remote.current_period_end and remote.current_period_end > subscription.current_period_end:
                    self._sync_period(subscription, remote)
            except Exception as exc:
                logger.exception("Past-due reconciliation failed", extra={"subscription_id": subscription.id})
                failed += 1
                if len(errors) < self.max_error_messages:
                    errors.append(f"Subscription {subscription.id}: {exc}")

        return LifecycleSweepResult(
            run_date=run_date,
            examined=len(candidates),
            transitioned=transitioned,
            failed=failed,
            errors=errors,
        )

    def _sync_period(self, subscription: CompanySubscription, remote: GatewaySubscription) -> CompanySubscription:
        new_start = remote.current_period_start or subscription.current_period_end
        new_end = max(remote.current_period_end, new_start)
        stored = self._write(
            subscription,
            subscription.model_copy(
                update={
                    "current_period_start": new_start,
                    "current_period_end": new_end,
                    "updated_at": _current_time(self.clock),
                }
            ),
        )
        self.catalog.set_next_billing_date(subscription.company_id, new_end)
        self._log(
            BillingAuditEventType.SUBSCRIPTION_SYNCED,
            stored,
            period_start=new_start.isoformat(),
            period_end=new_end.isoformat(),
        )
        return stored

    def cancel_past_due_subscriptions(self, today: Optional[date] = None) -> LifecycleSweepResult:
        """Cancel suspended subscriptions whose period ended beyond the cancel threshold."""

        gateway = self._require_gateway()
        run_date = self._today(today)
        cutoff = run_date - timedelta(days=self.cancel_after_days)
        candidates = self.repository.list_suspended_ended_before(cutoff)

        cancelled = failed = 0
        errors: List[str] = []
        for subscription in candidates:
            try:
                gateway.cancel_subscription(subscription.gateway_subscription_ref)
                self._set_status(
                    subscription,
                    SubscriptionStatus.CANCELLED,
                    reason=f"past due more than {self.cancel_after_days} days",
                )
                cancelled += 1
            except Exception as exc:
                logger.exception("Failed to cancel past-due subscription", extra={"subscription_id": subscription.id})
                failed += 1
                if len(errors) < self.max_error_messages:
                    errors.append(f"Subscription {subscription.id}: {exc}")

        if cancelled:
            logger.warning("Cancelled past-due subscriptions", extra={"cancelled": cancelled})
        return LifecycleSweepResult(
            run_date=run_date,
            examined=len(candidates),
            transitioned=cancelled,
            failed=failed,
            errors=errors,
        )

    def get_subscription(self, subscription_id: int) -> CompanySubscription:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", context={"subscription_id": subscription_id}
            )
        return subscription

    def cancel_subscription(self, subscription_id: int, *, actor_id: Optional[str] = None) -> CompanySubscription:
        """Admin cancellation: cancel remotely (when linked), then locally."""

        subscription = self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            return subscription
        if subscription.gateway_subscription_ref:
            gateway = self._require_gateway()
            self._call_gateway(gateway.cancel_subscription, subscription.gateway_subscription_ref)
        return self._set_status(
            subscription, SubscriptionStatus.CANCELLED, reason="cancelled by administrator", actor_id=actor_id
        )

    def change_subscription_plan(
        self,
        subscription_id: int,
        plan_id: int,
        *,
        actor_id: Optional[str] = None,
    ) -> CompanySubscription:
        subscription = self.get_subscription(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED:
            raise ValueError(f"Subscription {subscription_id} is cancelled")
        plan = self.catalog.get_plan(plan_id)
        if not plan.is_active:
            raise ValueError(f"Pricing plan {plan_id} is not active")
        if plan.id == subscription.plan_id:
            return subscription

        stored = self._write(
            subscription,
            subscription.model_copy(update={"plan_id": plan.id, "updated_at": _current_time(self.clock)}),
        )
        self._log(
            BillingAuditEventType.SUBSCRIPTION_PLAN_CHANGED,
            stored,
            actor_id=actor_id,
            previous_plan_id=str(subscription.plan_id),
            plan_id=str(plan.id),
        )
        return stored


__all__ = ["SubscriptionChargeProcessor", "SubscriptionRepository"]
