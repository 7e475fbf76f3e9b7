"""Payment destination shown to the buyer (mobile money, bank app, crypto)."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from app.db.base import Base


class WalletConfig(Base):
    __tablename__ = "wallet_config"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    wallet_name = Column(String, nullable=False)
    wallet_type = Column(String(32), nullable=False)             # mobile_money / bank_app / crypto
    # Placeholders: {amount}, {reference}, {currency}
    deep_link_template = Column(Text, nullable=False)
    tx_id_pattern = Column(Text, nullable=True)
    instructions = Column(Text, nullable=True)
    icon_url = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
