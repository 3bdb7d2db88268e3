"""
SQLAlchemy models for the per-user, per-timeframe report cache.

A ReportCacheDocument row carries the document metadata; each cached report
is its own CachedReport row so that adding a report is a single atomic
insert guarded by the (user_id, timeframe, report_id) unique constraint.
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.database import Base

class ReportCacheDocument(Base):
    __tablename__ = "report_cache_documents"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    timeframe = Column(String, nullable=False)

    fetched_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_updated = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('user_id', 'timeframe', name='unique_user_timeframe_cache'),
    )

class CachedReport(Base):
    __tablename__ = "cached_reports"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)
    report_id = Column(String, nullable=False)

    kind = Column(String, nullable=False)
    name = Column(String, nullable=False)
    counters = Column(JSON, nullable=False, default=dict)
    status = Column(String, nullable=False, default="available")
    fetched_at = Column(DateTime(timezone=True), nullable=False)
    # Insertion order of the record list.
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        UniqueConstraint('user_id', 'timeframe', 'report_id', name='unique_user_timeframe_report'),
        Index('ix_cached_reports_user_timeframe', 'user_id', 'timeframe'),
    )
