"""User account lookup and ledger record creation."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.user import SUBSCRIPTION_FREE, User
from services.entitlement import LedgerSnapshot
from services.ledger_errors import LedgerNotFoundError

logger = logging.getLogger(__name__)


async def get_user(user_id: str, db: AsyncSession) -> User:
    """Load the user row fresh from the database, bypassing the identity map."""
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if not user:
        raise LedgerNotFoundError("user", user_id)
    return user


async def get_user_by_email(email: str, db: AsyncSession) -> User:
    normalized = (email or "").strip().lower()
    result = await db.execute(
        select(User).where(User.email == normalized).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if not user:
        raise LedgerNotFoundError("user", normalized)
    return user


async def get_ledger_snapshot(user_id: str, db: AsyncSession) -> LedgerSnapshot:
    return LedgerSnapshot.from_user(await get_user(user_id, db))


async def ensure_user_account(
    user_id: str,
    email: str,
    db: AsyncSession,
    *,
    name: Optional[str] = None,
    picture: Optional[str] = None,
) -> Tuple[User, bool]:
    """
    Return the user, creating it with signup ledger defaults on first sight.

    Profile fields are refreshed for existing users; ledger columns never are.
    """
    normalized_email = (email or "").strip().lower()
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        if normalized_email and user.email != normalized_email:
            user.email = normalized_email
        if name is not None:
            user.name = name
        if picture is not None:
            user.picture = picture
        await db.commit()
        return user, False

    user = User(
        id=user_id,
        email=normalized_email,
        name=name,
        picture=picture,
        credits=max(int(settings.SIGNUP_FREE_CREDITS), 0),
        subscription_status=SUBSCRIPTION_FREE,
        subscription_end_date=None,
        ledger_version=0,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        # A concurrent signup for the same identity won the insert.
        existing = await db.execute(select(User).where(User.id == user_id))
        winner = existing.scalar_one_or_none()
        if winner is None:
            raise HTTPException(status_code=409, detail="Email is already registered to another account.") from exc
        return winner, False

    logger.info("ledger_created user=%s credits=%s", user_id, user.credits)
    return user, True
