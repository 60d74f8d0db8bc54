"""Subscription package: gateway-billed recurring charges and their lifecycle."""

from .gateway import PaymentGateway, StripePaymentGateway
from .models import (
    ChargeBatchResult,
    CompanySubscription,
    GatewayInvoice,
    GatewaySubscription,
    LifecycleSweepResult,
    SubscriptionStatus,
    local_status_for_remote,
)
from .service import SubscriptionChargeProcessor, SubscriptionRepository

__all__ = [
    "ChargeBatchResult",
    "CompanySubscription",
    "GatewayInvoice",
    "GatewaySubscription",
    "LifecycleSweepResult",
    "PaymentGateway",
    "StripePaymentGateway",
    "SubscriptionChargeProcessor",
    "SubscriptionRepository",
    "SubscriptionStatus",
    "local_status_for_remote",
]
