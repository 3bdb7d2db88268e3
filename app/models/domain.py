"""Immutable report value objects shared by the client, cache and worker."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Mapping, Optional

from app.models.db.enums import RecordStatus, ReportKind
from app.utils.time import ensure_utc, isoformat, utc_now

CAMPAIGN_COUNTERS: tuple[str, ...] = (
    "opens",
    "clicks",
    "deliveries",
    "bounces",
    "unsubscribes",
    "spam_reports",
    "unique_opens",
    "unique_clicks",
    "total_recipients",
    "invalid",
    "forwarded",
    "reacted",
    "replied",
    "viewed_online",
)
JOURNEY_COUNTERS: tuple[str, ...] = ("entered", "in_journey", "exited", "revenue") + CAMPAIGN_COUNTERS


def counter_keys(kind: ReportKind) -> tuple[str, ...]:
    return JOURNEY_COUNTERS if kind == ReportKind.JOURNEY else CAMPAIGN_COUNTERS


def default_name(kind: ReportKind, report_id: str) -> str:
    return f"{'Journey' if kind == ReportKind.JOURNEY else 'Campaign'} {report_id}"


@dataclass(frozen=True)
class ReportItem:
    id: str
    kind: ReportKind

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["ReportItem"]:
        """Build from a wire dict ``{id, type}``; None when malformed."""
        if not isinstance(payload, Mapping):
            return None
        raw_id = payload.get("id")
        raw_kind = payload.get("type", payload.get("kind"))
        # numeric ids are accepted as their string form
        if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
            return None
        report_id = str(raw_id).strip()
        if not report_id:
            return None
        try:
            kind = ReportKind(raw_kind)
        except ValueError:
            return None
        return cls(id=report_id, kind=kind)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "type": self.kind.value}


@dataclass(frozen=True)
class ReportRecord:
    id: str
    kind: ReportKind
    name: str
    counters: Mapping[str, float] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=utc_now)
    status: RecordStatus = RecordStatus.AVAILABLE

    def __post_init__(self) -> None:
        object.__setattr__(self, "counters", MappingProxyType(dict(self.counters)))
        object.__setattr__(self, "fetched_at", ensure_utc(self.fetched_at))

    @property
    def is_placeholder(self) -> bool:
        return self.status == RecordStatus.PLACEHOLDER

    @classmethod
    def zeroed(cls, item: ReportItem, name: Optional[str] = None) -> "ReportRecord":
        return cls(
            id=item.id,
            kind=item.kind,
            name=name or default_name(item.kind, item.id),
            counters={key: 0 for key in counter_keys(item.kind)},
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "type": self.kind.value, "name": self.name}
        payload.update(self.counters)
        payload["fetchedAt"] = isoformat(self.fetched_at)
        payload["status"] = self.status.value
        if self.is_placeholder:
            payload["synthetic"] = True
        return payload


__all__ = [
    "CAMPAIGN_COUNTERS",
    "JOURNEY_COUNTERS",
    "counter_keys",
    "default_name",
    "ReportItem",
    "ReportRecord",
]
