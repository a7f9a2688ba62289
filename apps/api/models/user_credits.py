"""UserCredits model: per-user billing account row."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class UserCredits(Base):
    """Billing account metadata (subscription state, Stripe customer)."""

    __tablename__ = "user_credits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    email = Column(String, nullable=False)
    subscription_status = Column(String, nullable=False, default="none", server_default="none")  # none, starter, pro
    subscription_end_date = Column(DateTime(timezone=True), nullable=True)
    subscription_ref = Column(String, nullable=True)
    stripe_customer_id = Column(String, nullable=True)
    last_payment_date = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="credit_account")
