"""Operator-only ledger endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_admin
from services.credits import reconcile_user_ledger
from services.entitlement import LedgerSnapshot
from services.subscriptions import grant_infinite_access

router = APIRouter()
logger = logging.getLogger(__name__)


class GrantInfiniteCreditsRequest(BaseModel):
    email: EmailStr


@router.post("/grant-infinite-credits")
async def grant_infinite_credits(
    request: GrantInfiniteCreditsRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    logger.info("admin_grant_requested admin=%s target=%s", admin.email, request.email)
    user = await grant_infinite_access(str(request.email), db, granted_by=admin.email or admin.user_id)
    snapshot = LedgerSnapshot.from_user(user)
    return {
        "success": True,
        "user": {"email": user.email, **snapshot.to_dict()},
    }


@router.get("/ledger/{user_id}/reconcile")
async def reconcile_ledger(
    user_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile_user_ledger(user_id, db)
