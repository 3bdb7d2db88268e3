"""Rate-limit ledger: items upstream just throttled, quarantined for a short window.

``record`` overwrites the entry for (user, timeframe); a newer throttling
event supersedes the previous one. Expired entries are deleted lazily the
next time they are looked at.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import database
from app.config import RATE_LIMIT_LEDGER
from app.models.db import RateLimitEntry
from app.models.domain import ReportItem
from app.utils import get_logger, log_business_event
from app.utils.time import ensure_utc, isoformat, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRecord:
    user_id: str
    timeframe: str
    items: tuple[ReportItem, ...]
    rate_limited_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "items": [i.to_dict() for i in self.items],
            "rateLimitedAt": isoformat(self.rate_limited_at),
            "expiresAt": isoformat(self.expires_at),
        }


@dataclass(frozen=True)
class LedgerFilter:
    available: List[ReportItem]
    blocked: List[ReportItem]


class RateLimitLedger:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        window_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.window = timedelta(seconds=float(window_seconds if window_seconds is not None else RATE_LIMIT_LEDGER["window_seconds"]))
        self._clock = clock

    def _open(self) -> Session:
        factory = self._session_factory or database.SessionLocal
        return factory()

    def record(self, user_id: str, timeframe: str, items: Sequence[ReportItem]) -> Optional[RateLimitRecord]:
        if not items:
            return None
        now = self._clock()
        expires_at = now + self.window
        payload = [i.to_dict() for i in items]
        try:
            with self._open() as session:
                stmt = database.dialect_insert(session, RateLimitEntry).values(
                    user_id=user_id, timeframe=timeframe, items=payload, rate_limited_at=now, expires_at=expires_at
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "timeframe"],
                    set_={"items": payload, "rate_limited_at": now, "expires_at": expires_at},
                )
                session.execute(stmt)
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Rate-limit ledger write failed", user_id=user_id, timeframe=timeframe, error=str(e))
            return None
        log_business_event(
            "items_rate_limited",
            {"timeframe": timeframe, "items": len(payload), "expires_at": isoformat(expires_at)},
            user_id=user_id,
        )
        return RateLimitRecord(user_id, timeframe, tuple(items), now, expires_at)

    def get(self, user_id: str, timeframe: str) -> Optional[RateLimitRecord]:
        """The current entry, or None. An expired entry is deleted on the way."""
        try:
            with self._open() as session:
                row = session.execute(
                    select(RateLimitEntry).where(RateLimitEntry.user_id == user_id, RateLimitEntry.timeframe == timeframe)
                ).scalar_one_or_none()
                if row is None:
                    return None
                expires_at = ensure_utc(row.expires_at)
                if self._clock() > expires_at:
                    session.delete(row)
                    session.commit()
                    logger.info("Rate-limit entry expired", user_id=user_id, timeframe=timeframe)
                    return None
                items = tuple(filter(None, (ReportItem.from_payload(p) for p in row.items or [])))
                return RateLimitRecord(user_id, timeframe, items, ensure_utc(row.rate_limited_at), expires_at)
        except SQLAlchemyError as e:
            logger.warning("Rate-limit ledger unavailable", user_id=user_id, timeframe=timeframe, error=str(e))
            return None

    def filter(self, user_id: str, timeframe: str, items: Sequence[ReportItem]) -> LedgerFilter:
        entry = self.get(user_id, timeframe)
        if entry is None:
            return LedgerFilter(available=list(items), blocked=[])
        blocked_ids = {i.id for i in entry.items}
        return LedgerFilter(
            available=[i for i in items if i.id not in blocked_ids],
            blocked=[i for i in items if i.id in blocked_ids],
        )

    def clear(self, user_id: str, timeframe: str) -> bool:
        try:
            with self._open() as session:
                removed = session.execute(
                    delete(RateLimitEntry).where(RateLimitEntry.user_id == user_id, RateLimitEntry.timeframe == timeframe)
                ).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Rate-limit ledger clear failed", user_id=user_id, timeframe=timeframe, error=str(e))
            return False
        return bool(removed)


__all__ = ["RateLimitLedger", "RateLimitRecord", "LedgerFilter"]
