"""Single-item report fetch with failure classification.

Wraps a ``ReportSource`` call and turns every outcome into a ``FetchOutcome``
tagged as available, placeholder or unavailable. Throttling (429) is kept
distinct from other upstream failures because only throttled items belong
in the rate-limit ledger.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from app.integrations.base import ReportSource, UpstreamAPIError, UpstreamRateLimitError
from app.models.domain import ReportItem, ReportRecord
from app.services.placeholder_reports import build_placeholder
from app.utils import get_logger

logger = get_logger(__name__)


class FetchStatus(str, enum.Enum):
    AVAILABLE = "available"
    PLACEHOLDER = "placeholder"
    UNAVAILABLE = "unavailable"


@dataclass
class FetchOutcome:
    item: ReportItem
    status: FetchStatus
    record: Optional[ReportRecord] = None
    error_code: str | None = None
    error_message: str | None = None
    rate_limited: bool = False

    @property
    def success(self) -> bool:
        return self.status == FetchStatus.AVAILABLE


class ReportFetcher:
    """Fetches one report and classifies the result.

    With ``placeholder_on_failure`` a failed fetch still yields a synthetic
    record (tagged placeholder); without it the outcome is unavailable.
    """

    def __init__(self, source: ReportSource, *, placeholder_on_failure: bool = True):
        self.source = source
        self.placeholder_on_failure = placeholder_on_failure

    def _failed(self, item: ReportItem, code: str, message: str, rate_limited: bool) -> FetchOutcome:
        if self.placeholder_on_failure:
            return FetchOutcome(
                item=item,
                status=FetchStatus.PLACEHOLDER,
                record=build_placeholder(item),
                error_code=code,
                error_message=message,
                rate_limited=rate_limited,
            )
        return FetchOutcome(item=item, status=FetchStatus.UNAVAILABLE, error_code=code, error_message=message, rate_limited=rate_limited)

    async def fetch(self, item: ReportItem, timeframe: str) -> FetchOutcome:
        try:
            record = await self.source.fetch_report(item, timeframe)
        except UpstreamRateLimitError as e:
            logger.warning("Report fetch throttled", report_id=item.id, kind=item.kind.value, timeframe=timeframe)
            return self._failed(item, "rate_limited", str(e), rate_limited=True)
        except UpstreamAPIError as e:
            logger.warning(
                "Report fetch failed",
                report_id=item.id,
                kind=item.kind.value,
                timeframe=timeframe,
                status_code=e.status_code,
                error=str(e),
            )
            return self._failed(item, "upstream_error", str(e), rate_limited=False)
        except Exception as e:  # one bad item must not abort a batch
            logger.error("Unexpected report fetch failure", report_id=item.id, error=str(e), exc_info=True)
            return self._failed(item, "unexpected_error", str(e), rate_limited=False)
        return FetchOutcome(item=item, status=FetchStatus.AVAILABLE, record=record)


__all__ = ["ReportFetcher", "FetchOutcome", "FetchStatus"]
