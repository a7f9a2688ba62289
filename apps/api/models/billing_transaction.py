"""BillingTransaction model: audit trail of processed payment events."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class BillingTransaction(Base):
    """One row per external event that has been fully processed."""

    __tablename__ = "billing_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "operation_type", "run_id", name="unique_user_operation_run"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    operation_type = Column(String, nullable=False)  # purchase_credits, subscription_update
    run_id = Column(String, nullable=False, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
