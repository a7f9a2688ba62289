"""User model."""

from sqlalchemy import Column, String, DateTime, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """User account. Credit balance is derived from the ledger, never stored here."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    last_free_scan_at = Column(DateTime(timezone=True), nullable=True)
    # Bumped by every credit mutation; the UPDATE is what takes the per-user row lock.
    credit_lock_version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="user", cascade="all, delete-orphan")
    credit_account = relationship("UserCredits", back_populates="user", uselist=False, cascade="all, delete-orphan")
    promo_redemptions = relationship("PromoRedemption", back_populates="user", cascade="all, delete-orphan")
