"""
SQLAlchemy model for quarantined report items (the rate-limit ledger).
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint
from app.database import Base

class RateLimitEntry(Base):
    __tablename__ = "rate_limit_entries"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    timeframe = Column(String, nullable=False)

    # [{"id": ..., "type": ...}, ...]
    items = Column(JSON, nullable=False, default=list)
    rate_limited_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'timeframe', name='unique_user_timeframe_rate_limit'),
    )
