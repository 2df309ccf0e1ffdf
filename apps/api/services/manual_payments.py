"""PayPal and bank-transfer payments confirmed by reference."""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.payment_event import PaymentEvent
from services.accounts import get_ledger_snapshot
from services.subscriptions import activate, create_subscription_checkout, plan_price_cents

logger = logging.getLogger(__name__)

MANUAL_PAYMENT_METHODS = ("paypal", "iban")


def _format_amount(cents: int) -> str:
    euros, remainder = divmod(int(cents), 100)
    return f"{euros}" if remainder == 0 else f"{euros}.{remainder:02d}"


async def initiate_payment(user_id: str, plan: str, payment_method: str, db: AsyncSession) -> Dict[str, Any]:
    if payment_method == "card":
        checkout = await create_subscription_checkout(user_id, plan, db)
        return {"success": True, "paymentMethod": "card", **checkout}

    if not settings.MANUAL_PAYMENTS_ENABLED:
        raise HTTPException(status_code=503, detail="Manual payments are disabled.")

    amount = _format_amount(plan_price_cents(plan))
    logger.info("manual_payment_initiated user=%s plan=%s method=%s", user_id, plan, payment_method)
    if payment_method == "paypal":
        return {
            "success": True,
            "paymentMethod": "paypal",
            "paypalId": settings.PAYPAL_ID,
            "amount": amount,
            "instructions": f"Send payment to {settings.PAYPAL_ID} via PayPal",
        }
    if not settings.IBAN_NUMBER:
        raise HTTPException(status_code=503, detail="Bank transfer is not configured.")
    return {
        "success": True,
        "paymentMethod": "iban",
        "iban": settings.IBAN_NUMBER,
        "amount": amount,
        "instructions": f"Transfer €{amount} to IBAN: {settings.IBAN_NUMBER}",
    }


async def confirm_manual_payment(
    user_id: str,
    *,
    plan: str,
    payment_method: str,
    transaction_reference: str,
    db: AsyncSession,
) -> Dict[str, Any]:
    """
    Activate a plan for a manual payment reference.

    A reference is applied once; confirming it again returns the current
    ledger without extending the period.
    """
    if not settings.MANUAL_PAYMENTS_ENABLED:
        raise HTTPException(status_code=503, detail="Manual payments are disabled.")
    if payment_method not in MANUAL_PAYMENT_METHODS:
        raise HTTPException(status_code=422, detail=f"Unsupported payment method: {payment_method}")
    reference = str(transaction_reference or "").strip()
    if not reference:
        raise HTTPException(status_code=422, detail="transactionReference is required")

    existing = await db.execute(
        select(PaymentEvent.user_id).where(
            PaymentEvent.provider == payment_method,
            PaymentEvent.external_id == reference,
        )
    )
    row = existing.first()
    if row is not None:
        if row[0] != user_id:
            raise HTTPException(status_code=409, detail="Transaction reference has already been used.")
        logger.info("manual_payment_duplicate user=%s method=%s ref=%s", user_id, payment_method, reference)
        snapshot = await get_ledger_snapshot(user_id, db)
        return {"success": True, "duplicate": True, **snapshot.to_dict()}

    try:
        snapshot = await activate(
            user_id,
            plan,
            f"{payment_method.upper()} (ref: {reference})",
            db,
            commit=False,
        )
        db.add(
            PaymentEvent(
                provider=payment_method,
                external_id=reference,
                event_type="manual_confirmation",
                user_id=user_id,
            )
        )
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Transaction reference has already been used.") from exc
    except Exception:
        await db.rollback()
        raise

    return {"success": True, "duplicate": False, **snapshot.to_dict()}
