"""Partial cache store for fetched Ortto reports.

One cache document per (user, timeframe). Records accumulate: a write only
ever adds ids that are not cached yet, so concurrent refill workers converge
on the same document instead of overwriting each other. Two exceptions let
a record be replaced:

  - an ``available`` record replaces a ``placeholder`` with the same id;
  - an ``available`` record replaces one whose own fetch time is older than
    the expiry window.

Both rules are applied inside a single ``INSERT .. ON CONFLICT DO UPDATE``
so there is no read-modify-write window.

The 24 hour expiry is judged on the *document's* ``fetched_at``: an expired
document reads as absent, a fresh one is trusted record by record.

Database failures never propagate. Reads degrade to "no cache" and writes
become logged no-ops.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import database
from app.config import REPORT_CACHE_SETTINGS
from app.models.db import CachedReport, ReportCacheDocument
from app.models.db.enums import RecordStatus, ReportKind
from app.models.domain import ReportItem, ReportRecord
from app.utils import get_logger, log_business_event
from app.utils.time import ensure_utc, isoformat, utc_now

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheDocument:
    user_id: str
    timeframe: str
    records: tuple[ReportRecord, ...]
    fetched_at: datetime
    last_updated: datetime
    count: int

    def to_dict(self) -> dict:
        return {
            "reports": [r.to_dict() for r in self.records],
            "fetchedAt": isoformat(self.fetched_at),
            "lastUpdated": isoformat(self.last_updated),
            "count": self.count,
        }


@dataclass(frozen=True)
class PartialRead:
    reports: List[ReportRecord]
    cached_items: List[str]
    missing_items: List[ReportItem]
    fetched_at: Optional[datetime] = None

    @property
    def is_partial(self) -> bool:
        return bool(self.missing_items)


@dataclass
class WriteResult:
    changed: int = 0
    count: int = 0
    skipped: bool = False
    errors: list[str] = field(default_factory=list)


def _to_record(row: CachedReport) -> ReportRecord:
    return ReportRecord(
        id=row.report_id,
        kind=ReportKind(row.kind),
        name=row.name,
        counters=row.counters or {},
        fetched_at=ensure_utc(row.fetched_at),
        status=RecordStatus(row.status),
    )


class PartialCacheStore:
    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        *,
        expiry_hours: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self.expiry = timedelta(hours=float(expiry_hours if expiry_hours is not None else REPORT_CACHE_SETTINGS["expiry_hours"]))
        self._clock = clock

    def _open(self) -> Session:
        # Resolved per call so a rebound SessionLocal (tests) is honoured.
        factory = self._session_factory or database.SessionLocal
        return factory()

    def is_stale(self, document: CacheDocument) -> bool:
        return self._clock() - ensure_utc(document.fetched_at) > self.expiry

    # ----------------------------- reads ----------------------------- #
    def _load(self, session: Session, user_id: str, timeframe: str) -> Optional[CacheDocument]:
        doc = session.execute(
            select(ReportCacheDocument).where(
                ReportCacheDocument.user_id == user_id,
                ReportCacheDocument.timeframe == timeframe,
            )
        ).scalar_one_or_none()
        if doc is None:
            return None
        rows = session.execute(
            select(CachedReport)
            .where(CachedReport.user_id == user_id, CachedReport.timeframe == timeframe)
            .order_by(CachedReport.created_at, CachedReport.id)
        ).scalars().all()
        records = tuple(_to_record(r) for r in rows)
        return CacheDocument(
            user_id=user_id,
            timeframe=timeframe,
            records=records,
            fetched_at=ensure_utc(doc.fetched_at),
            last_updated=ensure_utc(doc.last_updated),
            count=len(records),
        )

    def history(self, user_id: str, timeframe: str) -> Optional[CacheDocument]:
        """The stored document regardless of its age."""
        try:
            with self._open() as session:
                return self._load(session, user_id, timeframe)
        except SQLAlchemyError as e:
            logger.warning("Report cache unavailable; treating as empty", user_id=user_id, timeframe=timeframe, error=str(e))
            return None

    def read_full(self, user_id: str, timeframe: str) -> Optional[CacheDocument]:
        document = self.history(user_id, timeframe)
        if document is None:
            return None
        if self.is_stale(document):
            logger.info("Report cache expired", user_id=user_id, timeframe=timeframe, fetched_at=isoformat(document.fetched_at))
            return None
        return document

    def read_partial(self, user_id: str, timeframe: str, items: Sequence[ReportItem]) -> Optional[PartialRead]:
        """Split ``items`` into cached and missing. None when there is no usable document.

        Placeholder records are returned but their items still count as missing.
        """
        document = self.read_full(user_id, timeframe)
        if document is None:
            return None
        requested = {item.id for item in items}
        subset = [r for r in document.records if r.id in requested]
        available = {r.id for r in subset if not r.is_placeholder}
        return PartialRead(
            reports=subset,
            cached_items=[r.id for r in subset if r.id in available],
            missing_items=[item for item in items if item.id not in available],
            fetched_at=document.fetched_at,
        )

    def read(self, user_id: str, timeframe: str, requested_items: Optional[Sequence[ReportItem]] = None):
        if not requested_items:
            return self.read_full(user_id, timeframe)
        return self.read_partial(user_id, timeframe, requested_items)

    def list_timeframes(self, user_id: str) -> list[dict]:
        try:
            with self._open() as session:
                docs = session.execute(
                    select(ReportCacheDocument)
                    .where(ReportCacheDocument.user_id == user_id)
                    .order_by(ReportCacheDocument.timeframe)
                ).scalars().all()
                return [
                    {"timeframe": d.timeframe, "fetchedAt": isoformat(d.fetched_at), "count": d.count}
                    for d in docs
                ]
        except SQLAlchemyError as e:
            logger.warning("Report cache unavailable; no timeframes listed", user_id=user_id, error=str(e))
            return []

    # ----------------------------- writes ----------------------------- #
    @staticmethod
    def _dedupe(records: Iterable[ReportRecord]) -> list[ReportRecord]:
        chosen: dict[str, ReportRecord] = {}
        for record in records:
            current = chosen.get(record.id)
            if current is None or (current.is_placeholder and not record.is_placeholder):
                chosen[record.id] = record
        return list(chosen.values())

    def write(self, user_id: str, timeframe: str, records: Iterable[ReportRecord], *, refresh: bool = False) -> WriteResult:
        """Merge ``records`` into the document; ids already cached are left untouched.

        With ``refresh`` every available record replaces the cached one (explicit
        force refresh). Placeholders never replace anything.
        """
        batch = self._dedupe(records)
        if not batch:
            return WriteResult(skipped=True)
        now = self._clock()
        cutoff = now - self.expiry
        try:
            with self._open() as session:
                stmt = database.dialect_insert(session, CachedReport).values([
                    {
                        "user_id": user_id,
                        "timeframe": timeframe,
                        "report_id": r.id,
                        "kind": r.kind.value,
                        "name": r.name,
                        "counters": dict(r.counters),
                        "status": r.status.value,
                        "fetched_at": r.fetched_at,
                        "created_at": now,
                    }
                    for r in batch
                ])
                replaceable = stmt.excluded.status == RecordStatus.AVAILABLE.value
                if not refresh:
                    replaceable = and_(
                        replaceable,
                        or_(
                            CachedReport.status == RecordStatus.PLACEHOLDER.value,
                            CachedReport.fetched_at < cutoff,
                        ),
                    )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "timeframe", "report_id"],
                    set_={
                        "kind": stmt.excluded.kind,
                        "name": stmt.excluded.name,
                        "counters": stmt.excluded.counters,
                        "status": stmt.excluded.status,
                        "fetched_at": stmt.excluded.fetched_at,
                    },
                    where=replaceable,
                )
                changed = session.execute(stmt).rowcount or 0
                if changed == 0:
                    session.rollback()
                    logger.debug("Report cache write skipped; all records present", user_id=user_id, timeframe=timeframe)
                    return WriteResult(changed=0, count=self._count(session, user_id, timeframe), skipped=True)

                count_subq = (
                    select(func.count(CachedReport.id))
                    .where(CachedReport.user_id == user_id, CachedReport.timeframe == timeframe)
                    .scalar_subquery()
                )
                doc_stmt = database.dialect_insert(session, ReportCacheDocument).values(
                    user_id=user_id, timeframe=timeframe, fetched_at=now, last_updated=now, count=count_subq
                )
                doc_stmt = doc_stmt.on_conflict_do_update(
                    index_elements=["user_id", "timeframe"],
                    set_={"fetched_at": now, "last_updated": now, "count": count_subq},
                )
                session.execute(doc_stmt)
                session.commit()
                count = self._count(session, user_id, timeframe)
        except SQLAlchemyError as e:
            logger.warning(
                "Report cache write failed; continuing uncached",
                user_id=user_id,
                timeframe=timeframe,
                records=len(batch),
                error=str(e),
            )
            return WriteResult(skipped=True, errors=[str(e)])

        log_business_event("reports_cached", {"timeframe": timeframe, "changed": changed, "count": count}, user_id=user_id)
        return WriteResult(changed=changed, count=count)

    @staticmethod
    def _count(session: Session, user_id: str, timeframe: str) -> int:
        return session.execute(
            select(func.count(CachedReport.id)).where(
                CachedReport.user_id == user_id, CachedReport.timeframe == timeframe
            )
        ).scalar_one()

    def clear(self, user_id: str, timeframe: str) -> bool:
        try:
            with self._open() as session:
                session.execute(delete(CachedReport).where(CachedReport.user_id == user_id, CachedReport.timeframe == timeframe))
                removed = session.execute(
                    delete(ReportCacheDocument).where(
                        ReportCacheDocument.user_id == user_id, ReportCacheDocument.timeframe == timeframe
                    )
                ).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Report cache clear failed", user_id=user_id, timeframe=timeframe, error=str(e))
            return False
        log_business_event("report_cache_cleared", {"timeframe": timeframe}, user_id=user_id)
        return bool(removed)

    def clear_all(self, user_id: str) -> int:
        try:
            with self._open() as session:
                session.execute(delete(CachedReport).where(CachedReport.user_id == user_id))
                removed = session.execute(delete(ReportCacheDocument).where(ReportCacheDocument.user_id == user_id)).rowcount
                session.commit()
        except SQLAlchemyError as e:
            logger.warning("Report cache clear failed", user_id=user_id, error=str(e))
            return 0
        log_business_event("report_cache_cleared", {"timeframes": removed}, user_id=user_id)
        return removed or 0


__all__ = ["PartialCacheStore", "CacheDocument", "PartialRead", "WriteResult"]
