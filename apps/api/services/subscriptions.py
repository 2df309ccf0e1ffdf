"""Subscription activation, downgrade and operator grants."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dateutil.relativedelta import relativedelta
from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TRANSACTION_SUBSCRIPTION_GRANTED
from models.user import PAID_PLANS, SUBSCRIPTION_FREE, SUBSCRIPTION_MONTHLY, SUBSCRIPTION_YEARLY, User
from services.accounts import get_ledger_snapshot, get_user, get_user_by_email
from services.credits import append_transaction
from services.entitlement import LedgerSnapshot, as_utc, is_entitled
from services.ledger_errors import PersistenceConflictError
from services.payment_gateway import (
    BasePaymentGateway,
    CheckoutRequest,
    PaymentGatewayError,
    get_payment_gateway,
)

logger = logging.getLogger(__name__)

INFINITE_ACCESS_END_DATE = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
INFINITE_ACCESS_CREDITS = 999999
PLAN_LABELS = {SUBSCRIPTION_MONTHLY: "Monthly", SUBSCRIPTION_YEARLY: "Yearly"}


def has_operator_grant(snapshot: LedgerSnapshot) -> bool:
    """True while the account holds the admin infinite-access grant."""
    return snapshot.subscription_end_date == INFINITE_ACCESS_END_DATE


def plan_price_cents(plan: str) -> int:
    if plan == SUBSCRIPTION_MONTHLY:
        return int(settings.SUBSCRIPTION_PRICE_MONTHLY_CENTS)
    return int(settings.SUBSCRIPTION_PRICE_YEARLY_CENTS)


def compute_period_end(plan: str, snapshot: LedgerSnapshot, now: datetime, *, fresh: bool = False) -> datetime:
    """
    Return the end of a newly paid period.

    A renewal of an active subscription is extended from its current end date
    so paid time is never lost. A fresh checkout, or a free or lapsed account,
    starts from ``now``.
    """
    base = now
    if not fresh and is_entitled(snapshot, now) and snapshot.subscription_end_date:
        base = max(now, snapshot.subscription_end_date)
    if plan == SUBSCRIPTION_MONTHLY:
        return base + relativedelta(months=1)
    return base + relativedelta(years=1)


async def _compare_and_set(snapshot: LedgerSnapshot, db: AsyncSession, **values: Any) -> None:
    result = await db.execute(
        update(User)
        .where(User.id == snapshot.user_id, User.ledger_version == snapshot.version)
        .values(ledger_version=snapshot.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise PersistenceConflictError(f"Ledger for user {snapshot.user_id} changed concurrently")


async def _write_ledger(user_id: str, db: AsyncSession, build_values) -> Optional[LedgerSnapshot]:
    """
    Apply ``build_values(snapshot)`` as a compare-and-set, retrying once on conflict.

    ``build_values`` returns ``None`` when the current state needs no write.
    Returns the snapshot the write was based on, or ``None`` for a no-op.
    """
    for attempt in range(2):
        snapshot = await get_ledger_snapshot(user_id, db)
        values = build_values(snapshot)
        if values is None:
            return None
        try:
            await _compare_and_set(snapshot, db, **values)
            return snapshot
        except PersistenceConflictError:
            if attempt:
                raise
            logger.warning("ledger_conflict_retry user=%s", user_id)
    return None


async def activate(
    user_id: str,
    plan: str,
    source_description: str,
    db: AsyncSession,
    *,
    period_end: Optional[datetime] = None,
    fresh_period: bool = False,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> LedgerSnapshot:
    """
    Grant or renew a paid plan and log a ``subscription_granted`` entry.

    ``period_end`` is taken verbatim when the payment gateway reports it; a
    write that would leave plan and end date unchanged is skipped without a
    log entry. ``fresh_period`` starts the period from ``now`` instead of
    stacking onto an active end date. Replay protection is the caller's job.
    """
    if plan not in PAID_PLANS:
        raise HTTPException(status_code=422, detail=f"Unsupported plan: {plan}")
    current_time = as_utc(now) or datetime.now(timezone.utc)
    fixed_end = as_utc(period_end)

    def build_values(snapshot: LedgerSnapshot) -> Optional[Dict[str, Any]]:
        if has_operator_grant(snapshot):
            return None
        if fixed_end is not None:
            if snapshot.subscription_status == plan and snapshot.subscription_end_date == fixed_end:
                return None
            new_end = fixed_end
        else:
            new_end = compute_period_end(plan, snapshot, current_time, fresh=fresh_period)
        return {"subscription_status": plan, "subscription_end_date": new_end}

    try:
        based_on = await _write_ledger(user_id, db, build_values)
        if based_on is None:
            logger.info("subscription_unchanged user=%s plan=%s", user_id, plan)
            return await get_ledger_snapshot(user_id, db)

        await append_transaction(
            user_id,
            db,
            amount=0,
            transaction_type=TRANSACTION_SUBSCRIPTION_GRANTED,
            description=f"{PLAN_LABELS[plan]} subscription activated via {source_description}",
            reference_type="subscription",
            reference_id=plan,
        )
        if commit:
            await db.commit()
    except Exception:
        if commit:
            await db.rollback()
        raise

    updated = await get_ledger_snapshot(user_id, db)
    logger.info(
        "subscription_activated user=%s plan=%s end=%s source=%s",
        user_id,
        plan,
        updated.subscription_end_date.isoformat() if updated.subscription_end_date else None,
        source_description,
    )
    return updated


async def downgrade_to_free(
    user_id: str,
    db: AsyncSession,
    *,
    reason: str,
    commit: bool = True,
) -> LedgerSnapshot:
    """Revert the user to the free tier; repeating it is a no-op."""

    def build_values(snapshot: LedgerSnapshot) -> Optional[Dict[str, Any]]:
        if snapshot.subscription_status == SUBSCRIPTION_FREE and snapshot.subscription_end_date is None:
            return None
        return {"subscription_status": SUBSCRIPTION_FREE, "subscription_end_date": None}

    try:
        based_on = await _write_ledger(user_id, db, build_values)
        if commit:
            await db.commit()
    except Exception:
        if commit:
            await db.rollback()
        raise

    if based_on is not None:
        logger.info(
            "subscription_downgraded user=%s previous=%s reason=%s",
            user_id,
            based_on.subscription_status,
            reason,
        )
    return await get_ledger_snapshot(user_id, db)


async def grant_infinite_access(email: str, db: AsyncSession, *, granted_by: str) -> User:
    """Operator escape hatch: yearly plan until the far-future sentinel plus sentinel credits."""
    user = await get_user_by_email(email, db)

    def build_values(snapshot: LedgerSnapshot) -> Dict[str, Any]:
        return {
            "subscription_status": SUBSCRIPTION_YEARLY,
            "subscription_end_date": INFINITE_ACCESS_END_DATE,
            "credits": INFINITE_ACCESS_CREDITS,
        }

    try:
        await _write_ledger(user.id, db, build_values)
        await append_transaction(
            user.id,
            db,
            amount=0,
            transaction_type=TRANSACTION_SUBSCRIPTION_GRANTED,
            description=f"Infinite access granted by {granted_by}",
            reference_type="admin_grant",
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("infinite_access_granted user=%s granted_by=%s", user.id, granted_by)
    return await get_user(user.id, db)


async def grant_configured_infinite_access(db: AsyncSession) -> int:
    """Apply the infinite-access grant to every configured email that has an account."""
    granted = 0
    for email in settings.INFINITE_ACCESS_EMAILS:
        normalized = (email or "").strip().lower()
        if not normalized:
            continue
        result = await db.execute(select(User.id).where(User.email == normalized))
        if result.scalar_one_or_none() is None:
            continue
        await grant_infinite_access(normalized, db, granted_by="startup")
        granted += 1
    return granted


async def get_or_create_customer_ref(
    user_id: str,
    db: AsyncSession,
    gateway: Optional[BasePaymentGateway] = None,
) -> str:
    """Return the cached gateway customer id, creating it on first checkout."""
    user = await get_user(user_id, db)
    if user.payment_customer_ref:
        return user.payment_customer_ref

    gateway = gateway or get_payment_gateway()
    customer_ref = await asyncio.to_thread(gateway.create_customer, user_id=user_id, email=user.email)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.payment_customer_ref.is_(None))
        .values(payment_customer_ref=customer_ref)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        # Another request stored a customer first; keep theirs.
        user = await get_user(user_id, db)
        return str(user.payment_customer_ref)
    logger.info("payment_customer_created user=%s customer=%s", user_id, customer_ref)
    return customer_ref


async def create_subscription_checkout(
    user_id: str,
    plan: str,
    db: AsyncSession,
    gateway: Optional[BasePaymentGateway] = None,
) -> Dict[str, Any]:
    if plan not in PAID_PLANS:
        raise HTTPException(status_code=422, detail=f"Unsupported plan: {plan}")
    gateway = gateway or get_payment_gateway()
    try:
        customer_ref = await get_or_create_customer_ref(user_id, db, gateway)
        session = await asyncio.to_thread(
            gateway.create_checkout_session,
            CheckoutRequest(
                user_id=user_id,
                plan=plan,
                customer_ref=customer_ref,
                unit_amount=plan_price_cents(plan),
                currency=settings.SUBSCRIPTION_CURRENCY,
                product_name=settings.SUBSCRIPTION_PRODUCT_NAME,
                success_url=f"{settings.APP_URL}/subscription-success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{settings.APP_URL}/subscription-cancel",
            ),
        )
    except PaymentGatewayError as exc:
        logger.error("checkout_failed user=%s plan=%s error=%s", user_id, plan, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    logger.info("checkout_created user=%s plan=%s session=%s", user_id, plan, session.session_id)
    return {"checkoutUrl": session.checkout_url, "sessionId": session.session_id}


async def cancel_subscription(
    user_id: str,
    db: AsyncSession,
    gateway: Optional[BasePaymentGateway] = None,
) -> Dict[str, Any]:
    """
    Ask the gateway to stop renewing at period end.

    The ledger is left alone: access continues until the gateway sends its
    deletion event, which downgrades the account.
    """
    user = await get_user(user_id, db)
    if user.subscription_status == SUBSCRIPTION_FREE:
        return {"success": True, "message": "No active subscription to cancel"}

    if user.payment_customer_ref:
        gateway = gateway or get_payment_gateway()
        try:
            active = await asyncio.to_thread(
                gateway.list_active_subscriptions,
                customer_ref=user.payment_customer_ref,
                limit=1,
            )
            if active:
                await asyncio.to_thread(gateway.cancel_at_period_end, active[0].subscription_id)
                logger.info(
                    "subscription_cancel_requested user=%s subscription=%s",
                    user_id,
                    active[0].subscription_id,
                )
        except PaymentGatewayError as exc:
            logger.error("subscription_cancel_failed user=%s error=%s", user_id, exc)
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    end_date = as_utc(user.subscription_end_date)
    end_label = end_date.date().isoformat() if end_date else "today"
    return {"success": True, "message": f"Subscription will end on {end_label}"}
