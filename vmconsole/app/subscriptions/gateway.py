"""Payment gateway port and its Stripe adapter."""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional, Protocol

import stripe

from ..billing.errors import GatewayDeclinedError, GatewayError, GatewayTimeoutError
from .models import GatewayInvoice, GatewaySubscription

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    """External payment processor holding the authoritative subscription state.

    Every call must be safe to retry with the same idempotency key.
    """

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        ...

    def create_invoice(
        self,
        *,
        customer_ref: str,
        subscription_ref: str,
        description: str,
        idempotency_key: str,
    ) -> GatewayInvoice:
        ...

    def finalize_and_pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> GatewayInvoice:
        ...

    def cancel_subscription(self, subscription_ref: str) -> GatewaySubscription:
        ...


def _timestamp_to_date(value: Any) -> Optional[date]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).date()


def _to_gateway_subscription(payload: Any) -> GatewaySubscription:
    customer = payload.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return GatewaySubscription(
        ref=str(payload["id"]),
        status=str(payload.get("status") or ""),
        customer_ref=customer,
        current_period_start=_timestamp_to_date(payload.get("current_period_start")),
        current_period_end=_timestamp_to_date(payload.get("current_period_end")),
    )


def _to_gateway_invoice(payload: Any) -> GatewayInvoice:
    return GatewayInvoice(
        ref=str(payload["id"]),
        status=str(payload.get("status") or ""),
        amount_due=payload.get("amount_due"),
        currency=payload.get("currency"),
    )


class StripePaymentGateway:
    """Stripe implementation of :class:`PaymentGateway`."""

    def __init__(self, api_key: str, *, timeout_seconds: float = 20.0) -> None:
        if not api_key:
            raise ValueError("Stripe secret key is required")
        self._api_key = api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        # Retries happen in the charge processor.
        stripe.max_network_retries = 0

    def _call(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, api_key=self._api_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise GatewayTimeoutError(f"Stripe {operation} failed: {exc}", context={"operation": operation}) from exc
        except stripe.CardError as exc:
            raise GatewayDeclinedError(
                f"Stripe {operation} declined: {exc.user_message or exc}",
                context={"operation": operation, "code": str(exc.code or "")},
            ) from exc
        except stripe.APIError as exc:
            raise GatewayTimeoutError(f"Stripe {operation} failed: {exc}", context={"operation": operation}) from exc
        except stripe.StripeError as exc:
            raise GatewayError(f"Stripe {operation} failed: {exc}", context={"operation": operation}) from exc

    def retrieve_subscription(self, subscription_ref: str) -> GatewaySubscription:
        payload = self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_ref)
        return _to_gateway_subscription(payload)

    def create_invoice(
        self,
        *,
        customer_ref: str,
        subscription_ref: str,
        description: str,
        idempotency_key: str,
    ) -> GatewayInvoice:
        payload = self._call(
            "create_invoice",
            stripe.Invoice.create,
            customer=customer_ref,
            subscription=subscription_ref,
            description=description,
            auto_advance=False,
            idempotency_key=f"{idempotency_key}-create",
        )
        return _to_gateway_invoice(payload)

    def finalize_and_pay_invoice(self, invoice_ref: str, *, idempotency_key: str) -> GatewayInvoice:
        finalized = self._call(
            "finalize_invoice",
            stripe.Invoice.finalize_invoice,
            invoice_ref,
            idempotency_key=f"{idempotency_key}-finalize",
        )
        if finalized.get("status") == "paid":
            return _to_gateway_invoice(finalized)
        paid = self._call(
            "pay_invoice",
            stripe.Invoice.pay,
            invoice_ref,
            idempotency_key=f"{idempotency_key}-pay",
        )
        return _to_gateway_invoice(paid)

    def cancel_subscription(self, subscription_ref: str) -> GatewaySubscription:
        payload = self._call("cancel_subscription", stripe.Subscription.cancel, subscription_ref)
        logger.info("Cancelled Stripe subscription", extra={"subscription_ref": subscription_ref})
        return _to_gateway_subscription(payload)


__all__ = ["PaymentGateway", "StripePaymentGateway"]
