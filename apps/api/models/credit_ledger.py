"""CreditLedger model: append-only signed credit deltas."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditLedger(Base):
    """Immutable credit ledger entry.

    ``delta`` is positive for grants and negative for consumption. ``job_id`` is the
    per-user idempotency key for consumption, ``ext_ref`` the global one for external
    events (Stripe sessions, promo grants). Rows are never updated or deleted.
    """

    __tablename__ = "credit_ledger"
    __table_args__ = (
        UniqueConstraint("user_id", "job_id", name="credit_ledger_user_job_unique"),
        UniqueConstraint("ext_ref", name="credit_ledger_ext_ref_unique"),
        Index("credit_ledger_user_expires_idx", "user_id", "expires_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=False)
    job_id = Column(String, nullable=True)
    ext_ref = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        index=True,
    )

    user = relationship("User", back_populates="credit_entries")
