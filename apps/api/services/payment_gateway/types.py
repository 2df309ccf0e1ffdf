"""Payment gateway contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


PlanKey = Literal["monthly", "yearly"]

PLAN_INTERVALS = {"monthly": "month", "yearly": "year"}
INTERVAL_PLANS = {"month": "monthly", "year": "yearly"}


class PaymentGatewayError(RuntimeError):
    """Raised when the payment gateway rejects or fails a request."""


@dataclass(frozen=True)
class CheckoutRequest:
    user_id: str
    plan: PlanKey
    customer_ref: str
    unit_amount: int
    currency: str
    product_name: str
    success_url: str
    cancel_url: str


@dataclass(frozen=True)
class CheckoutSessionResult:
    session_id: str
    checkout_url: str
    customer_ref: str
    provider: str


@dataclass(frozen=True)
class GatewaySubscription:
    subscription_id: str
    status: str
    customer_ref: str
    current_period_end: Optional[int]
    cancel_at_period_end: bool = False
