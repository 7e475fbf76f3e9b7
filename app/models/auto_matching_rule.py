"""
Auto-matching rule: configuration data, not code.
conditions is interpreted per rule_type (see app.schemas.payments *Conditions models).
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import Base


class AutoMatchingRule(Base):
    __tablename__ = "auto_matching_rules"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    rule_name = Column(String, nullable=False)
    rule_type = Column(String(32), nullable=False)               # amount_match / tx_id_pattern / time_window / user_history
    conditions = Column(JSONB, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=0)        # higher = evaluated first
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
