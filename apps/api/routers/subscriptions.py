"""Subscription status, checkout, cancellation and Stripe webhook router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_ledger_snapshot
from services.entitlement import is_entitled
from services.subscriptions import cancel_subscription, create_subscription_checkout
from services.webhooks import ingest_event, verify_event

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan: Literal["monthly", "yearly"]


@router.get("/status")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await get_ledger_snapshot(auth.user_id, db)
    return {
        "status": snapshot.subscription_status,
        "endDate": snapshot.subscription_end_date.isoformat() if snapshot.subscription_end_date else None,
        "hasActiveSubscription": is_entitled(snapshot),
    }


@router.post("/create-checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("subscription_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await create_subscription_checkout(auth.user_id, request.plan, db)


@router.post("/cancel")
async def cancel(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await cancel_subscription(auth.user_id, db)


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
):
    """Acknowledge every verified event; only bad signatures or payloads are rejected."""
    payload = await request.body()
    event = verify_event(payload, stripe_signature)
    logger.info("webhook_received event=%s type=%s", event.id, event.type)
    return await ingest_event(event, db)
