"""Item granted to a buyer's library. One row per completed payment request."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String

from app.db.base import Base


class LibraryEntry(Base):
    __tablename__ = "user_library"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, nullable=False, index=True)
    item_type = Column(String(16), nullable=False)
    item_id = Column(String, nullable=False)
    payment_request_id = Column(String, ForeignKey("payment_requests.id"), unique=True, nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
