"""Public payment gateway utilities."""

from services.payment_gateway.providers import (
    BasePaymentGateway,
    OfflinePaymentGateway,
    StripePaymentGateway,
    field,
    get_payment_gateway,
    subscription_period_end,
)
from services.payment_gateway.types import (
    INTERVAL_PLANS,
    PLAN_INTERVALS,
    CheckoutRequest,
    CheckoutSessionResult,
    GatewaySubscription,
    PaymentGatewayError,
    PlanKey,
)

__all__ = [
    "BasePaymentGateway",
    "CheckoutRequest",
    "CheckoutSessionResult",
    "GatewaySubscription",
    "INTERVAL_PLANS",
    "OfflinePaymentGateway",
    "PLAN_INTERVALS",
    "PaymentGatewayError",
    "PlanKey",
    "StripePaymentGateway",
    "field",
    "get_payment_gateway",
    "subscription_period_end",
]
