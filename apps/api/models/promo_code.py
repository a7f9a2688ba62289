"""PromoCode and PromoRedemption models."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, true
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PromoCode(Base):
    """Promotional code granting credits and/or a subscription period."""

    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(20), unique=True, nullable=False, index=True)
    credit_amount = Column(Integer, nullable=False)
    subscription_type = Column(String, nullable=False, default="none", server_default="none")  # none, starter, pro
    subscription_days = Column(Integer, nullable=False, default=30, server_default="30")
    max_uses = Column(Integer, nullable=False, default=1, server_default="1")
    current_uses = Column(Integer, nullable=False, default=0, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    redemptions = relationship("PromoRedemption", back_populates="promo_code", cascade="all, delete-orphan")


class PromoRedemption(Base):
    """At most one row per (user, promo code)."""

    __tablename__ = "promo_redemptions"
    __table_args__ = (
        UniqueConstraint("user_id", "promo_code_id", name="unique_user_promo_redemption"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    credits_granted = Column(Integer, nullable=False)
    subscription_granted = Column(String, nullable=True)
    subscription_days = Column(Integer, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="promo_redemptions")
    promo_code = relationship("PromoCode", back_populates="redemptions")
