"""
Authentication router: identity sync from the auth provider and profile retrieval.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from services.accounts import ensure_user_account, get_user
from services.entitlement import LedgerSnapshot, is_entitled
from services.session_token import create_session_token

router = APIRouter()


class SyncSessionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    email: EmailStr
    name: Optional[str] = None
    picture: Optional[str] = None


class SyncSessionResponse(BaseModel):
    user_id: str
    email: str
    created: bool
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: str
    name: Optional[str] = None
    picture: Optional[str] = None
    credits: int
    subscriptionStatus: str
    subscriptionEndDate: Optional[str] = None
    hasActiveSubscription: bool


def _check_sync_secret(supplied: Optional[str]) -> None:
    expected = (settings.AUTH_SYNC_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Auth sync is not configured.")
    if not supplied or not hmac.compare_digest(supplied.strip(), expected):
        raise HTTPException(status_code=401, detail="Invalid auth sync secret.")


@router.post("/sync", response_model=SyncSessionResponse)
async def sync_session(
    request: SyncSessionRequest,
    x_auth_sync_secret: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """
    Upsert an identity resolved by the auth provider and issue a session token.

    First sight of a user id creates the ledger with signup credits.
    """
    _check_sync_secret(x_auth_sync_secret)
    user, created = await ensure_user_account(
        request.user_id,
        str(request.email),
        db,
        name=request.name,
        picture=request.picture,
    )
    session = create_session_token(user.id, user.email)
    return SyncSessionResponse(
        user_id=user.id,
        email=user.email,
        created=created,
        session_token=session["token"],
        session_expires_at=session["expires_at"],
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get current user profile and ledger snapshot."""
    user = await get_user(auth.user_id, db)
    snapshot = LedgerSnapshot.from_user(user)
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        name=user.name,
        picture=user.picture,
        hasActiveSubscription=is_entitled(snapshot),
        **snapshot.to_dict(),
    )
