"""Entitlement evaluation shared by every code path that gates edits."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from models.user import PAID_PLANS, SUBSCRIPTION_FREE


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Point-in-time copy of a user's ledger columns."""

    user_id: str
    credits: int
    subscription_status: str
    subscription_end_date: Optional[datetime]
    version: int = 0

    @classmethod
    def from_user(cls, user: Any) -> "LedgerSnapshot":
        return cls(
            user_id=str(user.id),
            credits=int(user.credits or 0),
            subscription_status=str(user.subscription_status or SUBSCRIPTION_FREE),
            subscription_end_date=as_utc(user.subscription_end_date),
            version=int(user.ledger_version or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credits": self.credits,
            "subscriptionStatus": self.subscription_status,
            "subscriptionEndDate": (
                self.subscription_end_date.isoformat() if self.subscription_end_date else None
            ),
        }


def has_active_subscription(
    subscription_status: Optional[str],
    subscription_end_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """
    Return True when the user currently has unlimited edits.

    A paid status whose end date is missing or not strictly in the future is a
    lapsed subscription and counts as free.
    """
    if subscription_status not in PAID_PLANS:
        return False
    end_date = as_utc(subscription_end_date)
    if end_date is None:
        return False
    current = as_utc(now) or datetime.now(timezone.utc)
    return end_date > current


def is_entitled(snapshot: LedgerSnapshot, now: Optional[datetime] = None) -> bool:
    return has_active_subscription(snapshot.subscription_status, snapshot.subscription_end_date, now)
