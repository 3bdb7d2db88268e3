"""Dashboard report orchestration.

Decides per request whether to answer from the cache, hand missing items to
a background refill, or fetch everything synchronously (force refresh). The
HTTP layer only translates the results produced here.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool

from app.config import CAMPAIGN_REPORTS, FORCE_REFRESH
from app.integrations.base import ReportSource
from app.jobs.refill_job import RefillJob
from app.jobs.refill_worker import BackgroundRefillWorker, RefillRegistry
from app.models.db.enums import CacheSource, ReportKind
from app.models.domain import ReportItem, ReportRecord
from app.services.rate_limit_ledger import RateLimitLedger
from app.services.report_cache import PartialCacheStore
from app.services.report_fetcher import ReportFetcher
from app.utils import get_logger
from app.utils.time import age_minutes, isoformat

logger = get_logger(__name__)


class InvalidItemsError(ValueError):
    """Every requested item was malformed."""

    def __init__(self, invalid_count: int):
        super().__init__("No valid items provided. Each item must have an id and type (campaign or journey)")
        self.invalid_count = invalid_count


def parse_items(raw_items: Iterable[Any]) -> tuple[list[ReportItem], int]:
    """Valid items (first occurrence per id wins) and the number dropped as malformed."""
    items: list[ReportItem] = []
    seen: set[str] = set()
    invalid = 0
    for raw in raw_items:
        item = ReportItem.from_payload(raw)
        if item is None:
            invalid += 1
            logger.warning("Dropping invalid report item", item=raw)
            continue
        if item.id not in seen:
            seen.add(item.id)
            items.append(item)
    return items, invalid


@dataclass
class DashboardResult:
    reports: List[ReportRecord] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    partial: bool = False
    rate_limited: List[str] = field(default_factory=list)
    message: str = ""
    source: CacheSource = CacheSource.EMPTY
    total: int = 0

    def to_dict(self) -> dict:
        return {
            "reports": [r.to_dict() for r in self.reports],
            "pending": self.pending,
            "partial": self.partial,
            "rateLimited": self.rate_limited,
            "message": self.message,
            "summary": {
                "total": self.total,
                "fetched": len(self.reports),
                "pending": len(self.pending),
                "rateLimited": len(self.rate_limited),
                "source": self.source.value,
            },
        }


class DashboardReportService:
    def __init__(
        self,
        source: ReportSource,
        cache: PartialCacheStore,
        ledger: RateLimitLedger,
        registry: RefillRegistry,
        *,
        worker_factory: Optional[Callable[[], BackgroundRefillWorker]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.cache = cache
        self.ledger = ledger
        self.registry = registry
        self._worker_factory = worker_factory or (lambda: BackgroundRefillWorker(source, cache, ledger))
        self._sleep = sleep

    # ----------------------------- dashboard ----------------------------- #
    async def dashboard_reports(
        self,
        user_id: str,
        raw_items: Sequence[Any],
        timeframe: str,
        *,
        force_refresh: bool = False,
        request_id: Optional[str] = None,
    ) -> DashboardResult:
        if not raw_items:
            return await self._full_cache(user_id, timeframe)

        items, invalid = parse_items(raw_items)
        if invalid:
            logger.warning("Filtered invalid items", invalid=invalid, total=len(raw_items), request_id=request_id)
        if not items:
            raise InvalidItemsError(invalid)

        if force_refresh:
            return await self._force_refresh(user_id, items, timeframe)

        cached = await run_in_threadpool(self.cache.read_partial, user_id, timeframe, items)
        if cached is not None and not cached.is_partial:
            return DashboardResult(
                reports=cached.reports,
                message=f"Loaded {len(cached.reports)} reports from cache",
                source=CacheSource.FIREBASE_CACHE,
                total=len(items),
            )

        reports = cached.reports if cached is not None else []
        missing = cached.missing_items if cached is not None else items
        quarantined = (await run_in_threadpool(self.ledger.filter, user_id, timeframe, missing)).blocked
        started = self.spawn_refill(user_id, timeframe, missing, request_id=request_id)

        if reports:
            placeholders = sum(1 for r in reports if r.is_placeholder)
            message = f"Using cached data for {len(reports)} reports"
            if placeholders:
                message += f" ({placeholders} placeholders)"
            message += f"; fetching {len(missing)} in background"
            source = CacheSource.PARTIAL_CACHE
        else:
            message = f"Fetching {len(missing)} reports in background"
            source = CacheSource.BACKGROUND_REFRESH
        if not started:
            message += " (refresh already running)"
        if quarantined:
            message += f"; {len(quarantined)} rate limited, retry in a few minutes"

        return DashboardResult(
            reports=reports,
            pending=[i.id for i in missing],
            partial=True,
            rate_limited=[i.id for i in quarantined],
            message=message,
            source=source,
            total=len(items),
        )

    async def _full_cache(self, user_id: str, timeframe: str) -> DashboardResult:
        document = await run_in_threadpool(self.cache.read_full, user_id, timeframe)
        if document is None or not document.records:
            return DashboardResult(message="No cached reports available", source=CacheSource.EMPTY)
        return DashboardResult(
            reports=list(document.records),
            message=f"Loaded {len(document.records)} cached reports",
            source=CacheSource.FIREBASE_CACHE,
            total=len(document.records),
        )

    async def _force_refresh(self, user_id: str, items: List[ReportItem], timeframe: str) -> DashboardResult:
        fetcher = ReportFetcher(self.source)
        batch_size = int(FORCE_REFRESH["batch_size"])
        records: list[ReportRecord] = []
        placeholders = 0
        for start in range(0, len(items), batch_size):
            chunk = items[start:start + batch_size]
            outcomes = await asyncio.gather(*(fetcher.fetch(item, timeframe) for item in chunk))
            for outcome in outcomes:
                if outcome.record is not None:
                    records.append(outcome.record)
                    placeholders += int(not outcome.success)
        await run_in_threadpool(self.cache.write, user_id, timeframe, records, refresh=True)
        message = f"Fetched {len(records) - placeholders} reports from Ortto"
        if placeholders:
            message += f"; {placeholders} unavailable and shown as placeholders"
        return DashboardResult(reports=records, message=message, source=CacheSource.ORTTO_API, total=len(items))

    def spawn_refill(
        self, user_id: str, timeframe: str, items: Sequence[ReportItem], *, request_id: Optional[str] = None
    ) -> bool:
        job = RefillJob(user_id=user_id, timeframe=timeframe, items=list(items), correlation_id=request_id)
        return self.registry.spawn(job, self._worker_factory())

    # ----------------------------- cache views ----------------------------- #
    def cached_reports(self, user_id: str, timeframe: str) -> dict:
        document = self.cache.read_full(user_id, timeframe)
        if document is None:
            return {"reports": [], "count": 0, "cacheAge": None, "lastUpdated": None, "message": "No cached reports found"}
        return {
            "reports": [r.to_dict() for r in document.records],
            "count": document.count,
            "cacheAge": age_minutes(document.fetched_at),
            "lastUpdated": isoformat(document.last_updated),
            "message": f"Found {document.count} cached reports",
        }

    def poll_cached_reports(self, user_id: str, timeframe: str, last_count: int = 0) -> dict:
        document = self.cache.read_full(user_id, timeframe)
        records = list(document.records) if document is not None else []
        return {
            "reports": [r.to_dict() for r in records],
            "count": len(records),
            "hasUpdates": len(records) > last_count,
            "refreshing": self.registry.is_running(user_id, timeframe),
        }

    async def restart_background(self, user_id: str, timeframe: str, request_id: Optional[str] = None) -> dict:
        """Refill everything in the upstream catalog that is not cached yet."""
        catalog = await self.source.get_categorized_assets()
        items = [ReportItem(a["id"], ReportKind.CAMPAIGN) for a in catalog.get("campaigns", []) if a.get("id")]
        items += [ReportItem(a["id"], ReportKind.JOURNEY) for a in catalog.get("journeys", []) if a.get("id")]

        document = await run_in_threadpool(self.cache.read_full, user_id, timeframe)
        cached_ids = {r.id for r in document.records if not r.is_placeholder} if document is not None else set()
        missing = [i for i in items if i.id not in cached_ids]
        started = self.spawn_refill(user_id, timeframe, missing, request_id=request_id) if missing else False
        return {
            "message": f"Background refresh {'started' if started else 'not started'} for {len(missing)} reports",
            "total": len(items),
            "cached": len(items) - len(missing),
            "missing": len(missing),
            "started": started,
        }


async def fetch_campaign_reports(
    source: ReportSource,
    campaign_ids: Sequence[str],
    timeframe: str,
    *,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> list[ReportRecord]:
    """Campaign reports in fixed batches with a pause between them. Failed ids are dropped."""
    fetcher = ReportFetcher(source, placeholder_on_failure=False)
    batch_size = int(CAMPAIGN_REPORTS["batch_size"])
    pause = float(CAMPAIGN_REPORTS["batch_pause_seconds"])
    items = [ReportItem(cid, ReportKind.CAMPAIGN) for cid in campaign_ids]
    records: list[ReportRecord] = []
    for start in range(0, len(items), batch_size):
        if start:
            await sleep(pause)
        outcomes = await asyncio.gather(*(fetcher.fetch(item, timeframe) for item in items[start:start + batch_size]))
        records.extend(o.record for o in outcomes if o.success and o.record is not None)
    return records


__all__ = [
    "DashboardReportService",
    "DashboardResult",
    "InvalidItemsError",
    "parse_items",
    "fetch_campaign_reports",
]
