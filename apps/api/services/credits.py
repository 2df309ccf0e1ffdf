"""Credit debit service and transaction log helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import (
    TRANSACTION_EDIT_USED,
    TRANSACTION_SUBSCRIPTION_GRANTED,
    CreditTransaction,
)
from models.user import SUBSCRIPTION_FREE, User
from services.accounts import get_ledger_snapshot
from services.entitlement import is_entitled
from services.ledger_errors import InsufficientCreditsError, LedgerNotFoundError
from services.projects import resolve_project_owner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DebitResult:
    remaining_credits: int
    charged: int
    entitled: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "remainingCredits": self.remaining_credits,
            "charged": self.charged,
            "hasActiveSubscription": self.entitled,
        }


async def append_transaction(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str,
    description: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditTransaction:
    """Stage a log entry in the caller's transaction; the caller commits."""
    entry = CreditTransaction(
        user_id=user_id,
        amount=int(amount),
        transaction_type=transaction_type,
        description=description,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def debit_edit_credit(
    user_id: str,
    project_ref: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> DebitResult:
    """
    Charge one edit credit unless the user holds an active subscription.

    The decrement is a single conditional UPDATE guarded by ``credits > 0``, so
    concurrent callers cannot spend the same credit twice. The matching log row
    is staged in the same transaction; the caller commits or rolls back both.
    """
    snapshot = await get_ledger_snapshot(user_id, db)
    if is_entitled(snapshot, now):
        logger.info("credit_debit_skipped user=%s project=%s reason=subscription", user_id, project_ref)
        return DebitResult(remaining_credits=snapshot.credits, charged=0, entitled=True)

    if snapshot.credits <= 0:
        logger.warning("credit_debit_rejected user=%s project=%s credits=%s", user_id, project_ref, snapshot.credits)
        raise InsufficientCreditsError(snapshot.credits)

    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.credits > 0)
        .values(credits=User.credits - 1, ledger_version=User.ledger_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # A concurrent request spent the last credit between the read and the update.
        logger.warning("credit_debit_rejected user=%s project=%s credits=0 reason=race", user_id, project_ref)
        raise InsufficientCreditsError(0)

    remaining_result = await db.execute(select(User.credits).where(User.id == user_id))
    remaining = int(remaining_result.scalar_one())

    await append_transaction(
        user_id,
        db,
        amount=-1,
        transaction_type=TRANSACTION_EDIT_USED,
        description=f"Credit deducted for video edit (project {project_ref})",
        reference_type="video_project",
        reference_id=project_ref,
    )
    logger.info("credit_debit user=%s project=%s remaining=%s", user_id, project_ref, remaining)
    return DebitResult(remaining_credits=remaining, charged=1, entitled=False)


async def try_debit(
    user_id: str,
    project_ref: str,
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
) -> DebitResult:
    """Standalone debit against a previously created project owned by the user."""
    owner_id = await resolve_project_owner(project_ref, db)
    if owner_id != user_id:
        raise LedgerNotFoundError("project", project_ref)

    try:
        result = await debit_edit_credit(user_id, project_ref, db, now=now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result


async def get_recent_transactions(user_id: str, db: AsyncSession, *, limit: int = 30) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return [
        {
            "id": entry.id,
            "amount": entry.amount,
            "transactionType": entry.transaction_type,
            "description": entry.description,
            "referenceId": entry.reference_id,
            "createdAt": entry.created_at.isoformat() if entry.created_at else None,
        }
        for entry in result.scalars().all()
    ]


async def reconcile_user_ledger(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """
    Compare the stored balance with signup credits plus all logged amounts.

    Only meaningful for accounts that never held a subscription; for the rest
    the check is reported as not applicable.
    """
    snapshot = await get_ledger_snapshot(user_id, db)
    totals = await db.execute(
        select(
            func.coalesce(func.sum(CreditTransaction.amount), 0),
            func.count(CreditTransaction.id),
        ).where(CreditTransaction.user_id == user_id)
    )
    logged_total, entry_count = totals.one()
    grants = await db.execute(
        select(func.count(CreditTransaction.id)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.transaction_type == TRANSACTION_SUBSCRIPTION_GRANTED,
        )
    )
    ever_subscribed = bool(grants.scalar()) or snapshot.subscription_status != SUBSCRIPTION_FREE or (
        snapshot.subscription_end_date is not None
    )

    expected = max(int(settings.SIGNUP_FREE_CREDITS), 0) + int(logged_total or 0)
    applicable = not ever_subscribed
    consistent = (expected == snapshot.credits) if applicable else None
    if applicable and not consistent:
        logger.warning(
            "ledger_mismatch user=%s expected=%s actual=%s entries=%s",
            user_id,
            expected,
            snapshot.credits,
            entry_count,
        )
    return {
        "userId": user_id,
        "applicable": applicable,
        "consistent": consistent,
        "expectedCredits": expected,
        "actualCredits": snapshot.credits,
        "loggedTotal": int(logged_total or 0),
        "entryCount": int(entry_count or 0),
    }
