"""PaymentEvent model recording payment notifications that were already applied."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class PaymentEvent(Base):
    """One row per applied webhook event id or manual payment reference."""

    __tablename__ = "payment_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_payment_events_provider_external_id"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String, nullable=False)  # stripe, paypal, iban
    external_id = Column(String, nullable=False)
    event_type = Column(String, nullable=False)
    user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
