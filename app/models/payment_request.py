"""
PaymentRequest: one out-of-band purchase attempt (book or bundle).
Lifecycle: created -> payment_initiated -> payment_verified -> completed / failed;
cancelled is reachable from any non-terminal state.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Float, Index, Numeric, String, Text, text

from app.db.base import Base


class PaymentRequest(Base):
    __tablename__ = "payment_requests"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    item_type = Column(String(16), nullable=False)               # book / bundle
    item_id = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="ETB")
    status = Column(String(32), nullable=False, default="created", index=True)

    # Wallet integration
    selected_wallet_id = Column(String, nullable=True)
    deep_link_clicked_at = Column(DateTime(timezone=True), nullable=True)

    # Manual evidence
    manual_tx_id = Column(String(128), nullable=True)
    manual_amount = Column(Numeric(12, 2), nullable=True)

    # OCR evidence
    ocr_processed_at = Column(DateTime(timezone=True), nullable=True)
    ocr_extracted_tx_id = Column(String(128), nullable=True)
    ocr_extracted_amount = Column(Numeric(12, 2), nullable=True)
    ocr_confidence_score = Column(Float, nullable=True)
    ocr_raw_text = Column(Text, nullable=True)

    # Auto-matching outcome; auto_matched_at is written at most once
    auto_matched_at = Column(DateTime(timezone=True), nullable=True)
    auto_match_confidence = Column(Float, nullable=True)
    auto_match_reason = Column(Text, nullable=True)
    auto_match_rule_id = Column(String, nullable=True)

    # Admin verification
    admin_verified_at = Column(DateTime(timezone=True), nullable=True)
    admin_verified_by = Column(String, nullable=True)
    admin_notes = Column(Text, nullable=True)
    verification_method = Column(String(32), nullable=True)     # auto / manual / bank_statement / sms_verification

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        # At most one open request per user and item. The service checks first,
        # this index closes the check-then-insert race.
        Index(
            "uq_payment_requests_open_item",
            "user_id",
            "item_type",
            "item_id",
            unique=True,
            postgresql_where=text("status IN ('created', 'payment_initiated', 'payment_verified')"),
        ),
    )
