"""Credit balance and edit debit router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.accounts import get_ledger_snapshot
from services.credits import get_recent_transactions, try_debit

router = APIRouter()


class DeductCreditRequest(BaseModel):
    projectId: str = Field(min_length=1, max_length=64)
    user_id: Optional[str] = None


@router.get("/credits")
async def credits_snapshot(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current credits, subscription status and end date."""
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    snapshot = await get_ledger_snapshot(scoped_user_id, db)
    return snapshot.to_dict()


@router.get("/credits/transactions")
async def credit_transactions(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await get_ledger_snapshot(auth.user_id, db)
    return {"transactions": await get_recent_transactions(auth.user_id, db, limit=limit)}


@router.post("/credits/deduct")
async def deduct_credit(
    request: DeductCreditRequest,
    _rate_limit: None = Depends(rate_limit("credits_deduct", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    result = await try_debit(scoped_user_id, request.projectId, db)
    return result.to_dict()
