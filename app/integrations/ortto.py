"""
Ortto reporting API client.

All outbound calls go through an ``UpstreamRequestQueue`` so the account-wide
rate limit is respected no matter how many callers are waiting. Successful
report fetches are kept in a short-lived in-process cache, and concurrent
callers asking for the same report share one in-flight request.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from app.config import ORTTO_SETTINGS, UPSTREAM_RATE_LIMIT, REPORT_CACHE_SETTINGS
from app.integrations.base import (
    InvalidUpstreamResponse,
    ReportSource,
    UpstreamAPIError,
    UpstreamNotFoundError,
    UpstreamRateLimitError,
)
from app.jobs.queue import UpstreamRequestQueue
from app.models.db.enums import ReportKind
from app.models.domain import ReportItem, ReportRecord, counter_keys, default_name
from app.utils import get_logger
from app.utils.backoff import parse_retry_after
from app.utils.ratelimiter import UpstreamRateLimiter

logger = get_logger(__name__)

REPORTS_ENDPOINT = "/v1/campaign/reports/get"
CALENDAR_ENDPOINT = "/v1/campaign/calendar"
CAMPAIGN_ENDPOINT = "/v1/campaign/get"

# Ortto performance field -> our counter name, where they differ.
_FIELD_ALIASES = {
    "bounces": "bounced",
    "unsubscribes": "unsubscribed",
    "spam_reports": "spam",
    "total_recipients": "sent",
}


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


def map_performance(kind: ReportKind, performance: Dict[str, Any]) -> Dict[str, float]:
    """Translate an Ortto ``performance`` block into our counter set."""
    counters: Dict[str, float] = {}
    for key in counter_keys(kind):
        counters[key] = _number(performance.get(_FIELD_ALIASES.get(key, key)))
    if kind == ReportKind.JOURNEY:
        # A journey's audience is everyone who entered it.
        counters["total_recipients"] = _number(performance.get("entered"))
    return counters


def categorize_asset(asset: Dict[str, Any]) -> Dict[str, Any]:
    name = asset.get("name") or ""
    is_journey = asset.get("type") == "journey" or "journey" in name.lower()
    kind = "journey" if is_journey else "campaign"
    return {
        "id": asset.get("id"),
        "name": name or f"Unnamed {kind}",
        "type": kind,
        "created_at": asset.get("created_at"),
        "updated_at": asset.get("updated_at"),
        "status": asset.get("status") or "active",
    }


class OrttoClient(ReportSource):
    """Async client for the Ortto campaign reporting endpoints."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        queue: Optional[UpstreamRequestQueue] = None,
        cache_ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else ORTTO_SETTINGS["api_key"]
        self.base_url = str(base_url or ORTTO_SETTINGS["base_url"]).rstrip("/")
        self.timeout_seconds = float(timeout_seconds or ORTTO_SETTINGS["timeout_seconds"])  # type: ignore[arg-type]
        self.queue = queue or UpstreamRequestQueue(UpstreamRateLimiter.from_config())
        self.cache_ttl_seconds = float(
            cache_ttl_seconds if cache_ttl_seconds is not None else UPSTREAM_RATE_LIMIT["response_cache_ttl_seconds"]
        )
        self._clock = clock
        self._session = session
        self._owns_session = session is None
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}

    # ----------------------------- short-TTL cache ----------------------------- #
    @staticmethod
    def cache_key(kind: str, ident: str, timeframe: Optional[str] = None) -> str:
        return f"{kind}:{ident}:{timeframe}" if timeframe is not None else f"{kind}:{ident}"

    def _cache_get(self, key: str) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if self._clock() - stored_at >= self.cache_ttl_seconds:
            del self._cache[key]
            return None
        return value

    def _cache_set(self, key: str, value: Any) -> None:
        self._cache[key] = (self._clock(), value)

    # ----------------------------- transport ----------------------------- #
    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
                headers={"X-API-Key": self.api_key or "", "Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def _post(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Single HTTP round trip. Status codes are mapped onto the error taxonomy."""
        if not self.api_key:
            raise UpstreamAPIError("ORTTO_API_KEY is not configured")
        session = await self._get_session()
        url = f"{self.base_url}{endpoint}"
        try:
            async with session.post(url, json=body) as response:
                if response.status == 429:
                    raise UpstreamRateLimitError(
                        retry_after=parse_retry_after(response.headers.get("Retry-After"), None),
                        body=await response.text(),
                    )
                if response.status == 404:
                    raise UpstreamNotFoundError(body=await response.text())
                if response.status >= 400:
                    raise UpstreamAPIError(
                        f"Ortto API returned status {response.status}",
                        status_code=response.status,
                        body=await response.text(),
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as exc:
                    raise InvalidUpstreamResponse("Ortto API returned a non-JSON body", status_code=response.status) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamAPIError(f"Ortto request to {endpoint} failed: {exc}") from exc

    async def _request(self, endpoint: str, body: Dict[str, Any], *, label: str = "") -> Dict[str, Any]:
        return await self.queue.submit(lambda: self._post(endpoint, body), label=label or endpoint)

    # ----------------------------- reports ----------------------------- #
    async def fetch_report(self, item: ReportItem, timeframe: str) -> ReportRecord:
        """Fetch one report, served from the TTL cache or a shared in-flight call when possible."""
        key = self.cache_key(item.kind.value, item.id, timeframe)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        inflight = self._inflight.get(key)
        if inflight is None:
            inflight = asyncio.ensure_future(self._fetch_uncached(item, timeframe, key))
            self._inflight[key] = inflight
            inflight.add_done_callback(lambda _fut: self._inflight.pop(key, None))
        return await asyncio.shield(inflight)

    async def _fetch_uncached(self, item: ReportItem, timeframe: str, key: str) -> ReportRecord:
        body: Dict[str, Any] = {"campaign_id": item.id}
        # Omitting the timeframe makes Ortto report all-time stats.
        if timeframe != REPORT_CACHE_SETTINGS["default_timeframe"]:
            body["timeframe"] = timeframe
        try:
            data = await self._request(REPORTS_ENDPOINT, body, label=key)
        except UpstreamNotFoundError:
            logger.info("No upstream report yet; using zeroed counters", report_id=item.id, kind=item.kind.value)
            record = ReportRecord.zeroed(item, name=self._cache_get(self.cache_key("name", item.id)))
            self._cache_set(key, record)
            return record

        record = await self._map_report(item, data)
        self._cache_set(key, record)
        logger.debug("Fetched report", report_id=item.id, kind=item.kind.value, timeframe=timeframe)
        return record

    async def _map_report(self, item: ReportItem, data: Any) -> ReportRecord:
        reports = data.get("reports") if isinstance(data, dict) else None
        if not isinstance(reports, dict):
            raise InvalidUpstreamResponse("Invalid response format from Ortto API", body=data)
        performance = reports.get("performance")
        if item.kind == ReportKind.CAMPAIGN and not isinstance(performance, dict):
            raise InvalidUpstreamResponse("Campaign report is missing performance data", body=data)

        name = data.get("campaign_name") or self._cache_get(self.cache_key("name", item.id))
        if not name and item.kind == ReportKind.JOURNEY:
            info = await self.get_journey_info(item.id)
            name = info.get("name")
        return ReportRecord(
            id=item.id,
            kind=item.kind,
            name=name or default_name(item.kind, item.id),
            counters=map_performance(item.kind, performance or {}),
            fetched_at=datetime.now(timezone.utc),
        )

    async def get_journey_info(self, journey_id: str) -> Dict[str, Any]:
        """Journey metadata from /campaign/get, then the calendar, then a default."""
        key = self.cache_key("journey_info", journey_id)
        cached = self._cache_get(key)
        if cached is not None:
            return cached

        info: Optional[Dict[str, Any]] = None
        try:
            response = await self._request(CAMPAIGN_ENDPOINT, {"campaign_id": journey_id}, label=key)
            campaign = response.get("campaign") if isinstance(response, dict) else None
            if isinstance(campaign, dict):
                info = {
                    "id": journey_id,
                    "name": campaign.get("name") or default_name(ReportKind.JOURNEY, journey_id),
                    "type": campaign.get("type") or "journey",
                }
        except UpstreamAPIError as exc:
            logger.info("Journey info lookup failed", journey_id=journey_id, error=str(exc))

        if info is None:
            try:
                calendar = await self.list_campaigns()
                match = next((a for a in calendar["assets"] if a.get("id") == journey_id), None)
                if match is not None:
                    info = {
                        "id": journey_id,
                        "name": match.get("name") or default_name(ReportKind.JOURNEY, journey_id),
                        "type": "journey",
                    }
            except UpstreamAPIError as exc:
                logger.info("Journey calendar lookup failed", journey_id=journey_id, error=str(exc))

        if info is None:
            info = {"id": journey_id, "name": default_name(ReportKind.JOURNEY, journey_id), "type": "journey"}
        self._cache_set(key, info)
        return info

    # ----------------------------- catalog ----------------------------- #
    async def list_campaigns(self, year: Optional[int] = None) -> Dict[str, Any]:
        """All calendar assets for ``year`` (defaults to the current UTC year)."""
        year = year or datetime.now(timezone.utc).year
        body = {
            "start": {"year": year, "month": 1, "day": 1},
            "end": {"year": year, "month": 12, "day": 31},
            "year": str(year),
            "timezone": "UTC",
        }
        response = await self._request(CALENDAR_ENDPOINT, body, label=f"calendar:{year}")
        assets = response.get("campaigns") if isinstance(response, dict) else None
        assets = assets or []
        logger.info("Listed upstream campaigns", year=year, count=len(assets))
        return {"assets": assets}

    def _remember_names(self, assets: List[Dict[str, Any]]) -> int:
        remembered = 0
        for asset in assets:
            if asset.get("id") and asset.get("name"):
                self._cache_set(self.cache_key("name", asset["id"]), asset["name"])
                remembered += 1
        return remembered

    async def prefetch_catalog(self) -> int:
        """Warm the name cache from the calendar. Returns the number of names cached."""
        calendar = await self.list_campaigns()
        count = self._remember_names(calendar["assets"])
        logger.info("Prefetched campaign names", count=count)
        return count

    async def discover_assets(self) -> Dict[str, List[Dict[str, Any]]]:
        calendar = await self.list_campaigns()
        self._remember_names(calendar["assets"])
        categorized: Dict[str, List[Dict[str, Any]]] = {"campaigns": [], "journeys": [], "all": []}
        for asset in calendar["assets"]:
            entry = categorize_asset(asset)
            categorized["all"].append(entry)
            categorized["journeys" if entry["type"] == "journey" else "campaigns"].append(entry)
        self._cache_set("categorized_assets", categorized)
        logger.info(
            "Categorized upstream assets",
            campaigns=len(categorized["campaigns"]),
            journeys=len(categorized["journeys"]),
        )
        return categorized

    async def get_categorized_assets(self, refresh: bool = False) -> Dict[str, List[Dict[str, Any]]]:
        if not refresh:
            cached = self._cache_get("categorized_assets")
            if cached is not None:
                return cached
        return await self.discover_assets()

    # ----------------------------- lifecycle ----------------------------- #
    async def close(self) -> None:
        await self.queue.shutdown()
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "configured": bool(self.api_key),
            "cache_entries": len(self._cache),
            "inflight": len(self._inflight),
            "queue": self.queue.snapshot(),
        }


__all__ = ["OrttoClient", "map_performance", "categorize_asset"]
