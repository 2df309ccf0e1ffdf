"""User model carrying the per-user credits and subscription ledger."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


SUBSCRIPTION_FREE = "free"
SUBSCRIPTION_MONTHLY = "monthly"
SUBSCRIPTION_YEARLY = "yearly"
PAID_PLANS = (SUBSCRIPTION_MONTHLY, SUBSCRIPTION_YEARLY)
SUBSCRIPTION_STATUSES = (SUBSCRIPTION_FREE,) + PAID_PLANS


class User(Base):
    """Authenticated user and the single source of truth for their ledger."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint(
            "subscription_status IN ('free', 'monthly', 'yearly')",
            name="ck_users_subscription_status",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    picture = Column(String, nullable=True)

    # Ledger
    credits = Column(Integer, nullable=False, default=3, server_default="3")
    subscription_status = Column(String, nullable=False, default=SUBSCRIPTION_FREE, server_default=SUBSCRIPTION_FREE)
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    payment_customer_ref = Column(String, nullable=True, unique=True, index=True)
    ledger_version = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_transactions = relationship("CreditTransaction", back_populates="user", cascade="all, delete-orphan")
    video_projects = relationship("VideoProject", back_populates="user", cascade="all, delete-orphan")
