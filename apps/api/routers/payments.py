"""Payment initiation and manual confirmation router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.manual_payments import confirm_manual_payment, initiate_payment

router = APIRouter()


class InitiatePaymentRequest(BaseModel):
    plan: Literal["monthly", "yearly"]
    paymentMethod: Literal["card", "paypal", "iban"]
    paypalEmail: Optional[str] = None
    iban: Optional[str] = None


class ConfirmManualPaymentRequest(BaseModel):
    plan: Literal["monthly", "yearly"]
    paymentMethod: Literal["paypal", "iban"]
    transactionReference: str = Field(min_length=1, max_length=200)


@router.post("/initiate")
async def initiate(
    request: InitiatePaymentRequest,
    _rate_limit: None = Depends(rate_limit("payments_initiate", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await initiate_payment(auth.user_id, request.plan, request.paymentMethod, db)


@router.post("/confirm-manual")
async def confirm_manual(
    request: ConfirmManualPaymentRequest,
    _rate_limit: None = Depends(rate_limit("payments_confirm", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await confirm_manual_payment(
        auth.user_id,
        plan=request.plan,
        payment_method=request.paymentMethod,
        transaction_reference=request.transactionReference,
        db=db,
    )
