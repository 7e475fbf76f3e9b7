"""Append-only audit trail of matching and admin decisions. Rows are never updated or deleted."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import Base


class PaymentVerificationLog(Base):
    __tablename__ = "payment_verification_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    payment_request_id = Column(String, ForeignKey("payment_requests.id"), nullable=False, index=True)
    verification_type = Column(String(32), nullable=False)       # auto_match / admin_verification
    status = Column(String(16), nullable=False)                  # success / failed
    details = Column(JSONB, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    processed_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
