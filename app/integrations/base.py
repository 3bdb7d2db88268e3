"""Upstream report source contract and its error taxonomy."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from app.models.domain import ReportItem, ReportRecord


class UpstreamAPIError(Exception):
    """Any failed call to the reporting API. Not retried."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.body = body


class UpstreamRateLimitError(UpstreamAPIError):
    """HTTP 429 from upstream."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None, body: Any = None):
        super().__init__(message, status_code=429, body=body)
        self.retry_after = retry_after


class UpstreamNotFoundError(UpstreamAPIError):
    def __init__(self, message: str = "Report not found", body: Any = None):
        super().__init__(message, status_code=404, body=body)


class InvalidUpstreamResponse(UpstreamAPIError):
    """200 response without the expected report structure."""


class ReportSource(ABC):
    """Anything that can produce ReportRecords and list the upstream catalog."""

    @abstractmethod
    async def fetch_report(self, item: ReportItem, timeframe: str) -> ReportRecord:
        """Fetch the report for one item."""

    @abstractmethod
    async def get_categorized_assets(self, refresh: bool = False) -> Dict[str, List[Dict[str, Any]]]:
        """Return ``{"campaigns": [...], "journeys": [...]}`` from the upstream catalog."""

    async def list_campaigns(self, year: Optional[int] = None) -> Dict[str, Any]:
        return {"assets": []}

    async def prefetch_catalog(self) -> int:
        return 0

    async def close(self) -> None:
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {}


__all__ = [
    "ReportSource",
    "UpstreamAPIError",
    "UpstreamRateLimitError",
    "UpstreamNotFoundError",
    "InvalidUpstreamResponse",
]
