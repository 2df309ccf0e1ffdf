"""Stripe webhook verification and dispatch onto the subscription ledger."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import stripe
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TRANSACTION_SUBSCRIPTION_GRANTED
from models.payment_event import PaymentEvent
from models.user import PAID_PLANS, User
from services.credits import append_transaction
from services.ledger_errors import (
    InvalidEventPayloadError,
    LedgerNotFoundError,
    SignatureVerificationFailedError,
    WebhookNotConfiguredError,
)
from services.payment_gateway import INTERVAL_PLANS, field, subscription_period_end
from services.accounts import get_ledger_snapshot
from services.subscriptions import activate, downgrade_to_free, has_operator_grant

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"
RENEWABLE_STATUSES = {"active", "past_due"}


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: Dict[str, Any]


class WebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: str
    data: WebhookEventData


HandlerResult = Tuple[str, Optional[str]]
EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[HandlerResult]]


def verify_event(payload: bytes, signature: Optional[str]) -> WebhookEvent:
    """Check the Stripe signature header and parse the event envelope."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise WebhookNotConfiguredError()
    if not signature:
        logger.warning("webhook_rejected reason=missing_signature")
        raise SignatureVerificationFailedError("Missing signature")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidEventPayloadError("Payload is not valid UTF-8") from exc

    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            secret,
            tolerance=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("webhook_rejected reason=invalid_signature error=%s", exc)
        raise SignatureVerificationFailedError() from exc

    try:
        return WebhookEvent.model_validate_json(body)
    except ValidationError as exc:
        logger.warning("webhook_rejected reason=invalid_payload error=%s", exc)
        raise InvalidEventPayloadError() from exc


async def _user_id_for_customer(customer_ref: Any, db: AsyncSession) -> Optional[str]:
    if not customer_ref:
        return None
    result = await db.execute(select(User.id).where(User.payment_customer_ref == str(customer_ref)))
    return result.scalar_one_or_none()


async def _remember_customer_ref(user_id: str, customer_ref: Any, db: AsyncSession) -> None:
    if not customer_ref:
        return
    await db.execute(
        update(User)
        .where(User.id == user_id, User.payment_customer_ref.is_(None))
        .values(payment_customer_ref=str(customer_ref))
        .execution_options(synchronize_session=False)
    )


async def handle_checkout_completed(obj: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    metadata = field(obj, "metadata", {})
    user_id = field(metadata, "userId")
    plan = field(metadata, "plan")
    if not user_id or not plan:
        logger.warning("checkout_dropped session=%s reason=missing_metadata", field(obj, "id"))
        return "dropped", None
    if plan not in PAID_PLANS:
        logger.warning("checkout_dropped session=%s reason=unknown_plan plan=%s", field(obj, "id"), plan)
        return "dropped", None

    try:
        await activate(
            str(user_id),
            str(plan),
            f"Stripe checkout (session {field(obj, 'id')})",
            db,
            fresh_period=True,
            commit=False,
        )
    except LedgerNotFoundError:
        logger.warning("checkout_dropped session=%s reason=unknown_user user=%s", field(obj, "id"), user_id)
        return "dropped", None
    await _remember_customer_ref(str(user_id), field(obj, "customer"), db)
    return "activated", str(user_id)


async def handle_subscription_updated(obj: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    customer_ref = field(obj, "customer")
    user_id = await _user_id_for_customer(customer_ref, db)
    if not user_id:
        logger.warning("subscription_update_dropped customer=%s reason=unknown_customer", customer_ref)
        return "dropped", None
    if has_operator_grant(await get_ledger_snapshot(user_id, db)):
        logger.info("subscription_update_ignored user=%s reason=operator_grant", user_id)
        return "ignored", user_id

    status = field(obj, "status", "")
    if status not in RENEWABLE_STATUSES:
        logger.info("subscription_update_ignored user=%s status=%s", user_id, status)
        return "ignored", user_id

    items = field(field(obj, "items", {}), "data", [])
    interval = field(field(field(items[0], "price", {}), "recurring", {}), "interval") if items else None
    plan = INTERVAL_PLANS.get(str(interval)) if interval else None
    period_end = subscription_period_end(obj)
    if not plan or not period_end:
        logger.warning(
            "subscription_update_dropped user=%s reason=missing_interval_or_period interval=%s",
            user_id,
            interval,
        )
        return "dropped", user_id

    await activate(
        user_id,
        plan,
        f"Stripe subscription update ({field(obj, 'id')}, status {status})",
        db,
        period_end=datetime.fromtimestamp(period_end, tz=timezone.utc),
        commit=False,
    )
    return "renewed", user_id


async def handle_subscription_deleted(obj: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    customer_ref = field(obj, "customer")
    user_id = await _user_id_for_customer(customer_ref, db)
    if not user_id:
        logger.warning("subscription_delete_dropped customer=%s reason=unknown_customer", customer_ref)
        return "dropped", None
    if has_operator_grant(await get_ledger_snapshot(user_id, db)):
        logger.info("subscription_delete_ignored user=%s reason=operator_grant", user_id)
        return "ignored", user_id

    await downgrade_to_free(user_id, db, reason=f"stripe subscription {field(obj, 'id')} deleted", commit=False)
    return "downgraded", user_id


async def handle_payment_succeeded(obj: Dict[str, Any], db: AsyncSession) -> HandlerResult:
    customer_ref = field(obj, "customer")
    user_id = await _user_id_for_customer(customer_ref, db)
    if not user_id:
        logger.warning("invoice_payment_dropped customer=%s reason=unknown_customer", customer_ref)
        return "dropped", None

    await append_transaction(
        user_id,
        db,
        amount=0,
        transaction_type=TRANSACTION_SUBSCRIPTION_GRANTED,
        description=f"Subscription renewal payment succeeded (invoice {field(obj, 'id')})",
        reference_type="invoice",
        reference_id=field(obj, "id"),
    )
    logger.info("invoice_payment_recorded user=%s invoice=%s", user_id, field(obj, "id"))
    return "recorded", user_id


EVENT_HANDLERS: Dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
}


async def _already_processed(event_id: str, db: AsyncSession) -> bool:
    result = await db.execute(
        select(PaymentEvent.id).where(
            PaymentEvent.provider == STRIPE_PROVIDER,
            PaymentEvent.external_id == event_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def ingest_event(event: WebhookEvent, db: AsyncSession) -> Dict[str, Any]:
    """
    Apply a verified event exactly once.

    The event id is recorded in the same transaction as the ledger writes it
    causes, so a failure leaves neither behind and the gateway's redelivery is
    processed from scratch.
    """
    if await _already_processed(event.id, db):
        logger.info("webhook_duplicate event=%s type=%s", event.id, event.type)
        return {"received": True, "duplicate": True}

    handler = EVENT_HANDLERS.get(event.type)
    try:
        if handler is None:
            logger.info("webhook_unhandled event=%s type=%s", event.id, event.type)
            outcome, user_id = "ignored", None
        else:
            outcome, user_id = await handler(event.data.object, db)
        db.add(
            PaymentEvent(
                provider=STRIPE_PROVIDER,
                external_id=event.id,
                event_type=event.type,
                user_id=user_id,
            )
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("webhook_duplicate event=%s type=%s reason=concurrent_delivery", event.id, event.type)
        return {"received": True, "duplicate": True}
    except Exception:
        await db.rollback()
        logger.exception("webhook_failed event=%s type=%s", event.id, event.type)
        raise

    logger.info("webhook_processed event=%s type=%s outcome=%s", event.id, event.type, outcome)
    return {"received": True, "duplicate": False, "outcome": outcome}
