"""Payment gateway abstraction over Stripe with an offline stand-in."""

from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import stripe

from config import settings
from services.payment_gateway.types import (
    PLAN_INTERVALS,
    CheckoutRequest,
    CheckoutSessionResult,
    GatewaySubscription,
    PaymentGatewayError,
)


class BasePaymentGateway(ABC):
    provider_name: str

    @abstractmethod
    def create_customer(self, *, user_id: str, email: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSessionResult:
        raise NotImplementedError

    @abstractmethod
    def list_active_subscriptions(self, *, customer_ref: str, limit: int = 1) -> List[GatewaySubscription]:
        raise NotImplementedError

    @abstractmethod
    def cancel_at_period_end(self, subscription_id: str) -> GatewaySubscription:
        raise NotImplementedError


def field(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a dict or Stripe object, treating missing and null alike."""
    try:
        value = obj[key]
    except (KeyError, IndexError, TypeError):
        return default
    return default if value is None else value


def subscription_period_end(obj: Any) -> Optional[int]:
    # Newer API versions report the period on the subscription items.
    period_end = field(obj, "current_period_end")
    if period_end is None:
        items = field(field(obj, "items", {}), "data", [])
        if items:
            period_end = field(items[0], "current_period_end")
    return int(period_end) if period_end else None


def _to_subscription(obj: Any) -> GatewaySubscription:
    return GatewaySubscription(
        subscription_id=str(field(obj, "id", "")),
        status=str(field(obj, "status", "")),
        customer_ref=str(field(obj, "customer", "")),
        current_period_end=subscription_period_end(obj),
        cancel_at_period_end=bool(field(obj, "cancel_at_period_end", False)),
    )


class StripePaymentGateway(BasePaymentGateway):
    """Thin wrapper around the blocking Stripe SDK; call it from a worker thread."""

    provider_name = "stripe"

    def __init__(self, *, api_key: str) -> None:
        self.api_key = api_key

    def create_customer(self, *, user_id: str, email: str) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self.api_key,
                email=email,
                metadata={"userId": user_id},
                idempotency_key=f"customer-{user_id}",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Failed to create Stripe customer: {exc}") from exc
        return str(customer.id)

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSessionResult:
        plan_title = "Monthly" if request.plan == "monthly" else "Yearly"
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                customer=request.customer_ref,
                payment_method_types=["card"],
                mode="subscription",
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency,
                            "product_data": {"name": f"{request.product_name} {plan_title} Subscription"},
                            "unit_amount": request.unit_amount,
                            "recurring": {"interval": PLAN_INTERVALS[request.plan]},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=request.success_url,
                cancel_url=request.cancel_url,
                metadata={"userId": request.user_id, "plan": request.plan},
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Failed to create Stripe checkout session: {exc}") from exc
        return CheckoutSessionResult(
            session_id=str(session.id),
            checkout_url=str(session.url or ""),
            customer_ref=request.customer_ref,
            provider=self.provider_name,
        )

    def list_active_subscriptions(self, *, customer_ref: str, limit: int = 1) -> List[GatewaySubscription]:
        try:
            result = stripe.Subscription.list(
                api_key=self.api_key,
                customer=customer_ref,
                status="active",
                limit=limit,
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Failed to list Stripe subscriptions: {exc}") from exc
        return [_to_subscription(item) for item in result.data]

    def cancel_at_period_end(self, subscription_id: str) -> GatewaySubscription:
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                api_key=self.api_key,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"Failed to cancel Stripe subscription: {exc}") from exc
        return _to_subscription(subscription)


class OfflinePaymentGateway(BasePaymentGateway):
    """Stand-in used when no Stripe key is configured (local development, tests)."""

    provider_name = "offline"

    def create_customer(self, *, user_id: str, email: str) -> str:
        return f"cus_{secrets.token_hex(7)}"

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSessionResult:
        session_id = f"cs_{secrets.token_hex(12)}"
        return CheckoutSessionResult(
            session_id=session_id,
            checkout_url=f"https://checkout.stripe.com/pay/{session_id}",
            customer_ref=request.customer_ref,
            provider=self.provider_name,
        )

    def list_active_subscriptions(self, *, customer_ref: str, limit: int = 1) -> List[GatewaySubscription]:
        return []

    def cancel_at_period_end(self, subscription_id: str) -> GatewaySubscription:
        raise PaymentGatewayError("Offline gateway has no subscriptions to cancel.")


def get_payment_gateway() -> BasePaymentGateway:
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if api_key:
        return StripePaymentGateway(api_key=api_key)
    return OfflinePaymentGateway()
