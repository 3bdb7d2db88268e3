"""Synthetic report rows used when upstream cannot deliver a report.

Values are seeded from the report id so the same item always renders the
same numbers. Records are tagged ``placeholder`` and serialise with
``synthetic: true`` so clients can tell them apart from real data.
"""
from __future__ import annotations

import random

from app.models.db.enums import RecordStatus, ReportKind
from app.models.domain import ReportItem, ReportRecord, default_name

# counter -> (base, spread)
_CAMPAIGN_RANGES = {
    "opens": (1250, 500),
    "clicks": (89, 50),
    "deliveries": (1500, 300),
    "bounces": (25, 20),
    "unsubscribes": (12, 10),
    "spam_reports": (2, 3),
    "unique_opens": (1100, 400),
    "unique_clicks": (75, 40),
    "total_recipients": (1500, 500),
    "invalid": (0, 5),
    "forwarded": (15, 15),
    "reacted": (8, 10),
    "replied": (3, 5),
    "viewed_online": (45, 30),
}
_JOURNEY_RANGES = {
    "entered": (500, 200),
    "in_journey": (300, 150),
    "exited": (200, 100),
    "revenue": (1000, 500),
    "opens": (800, 300),
    "clicks": (50, 30),
    "deliveries": (1000, 200),
    "bounces": (20, 10),
    "unsubscribes": (10, 5),
    "spam_reports": (0, 3),
    "unique_opens": (700, 250),
    "unique_clicks": (40, 25),
    "invalid": (0, 5),
    "forwarded": (5, 10),
    "reacted": (3, 5),
    "replied": (1, 3),
    "viewed_online": (20, 15),
}


def build_placeholder(item: ReportItem, name: str | None = None) -> ReportRecord:
    rng = random.Random(f"{item.kind.value}:{item.id}")
    ranges = _JOURNEY_RANGES if item.kind == ReportKind.JOURNEY else _CAMPAIGN_RANGES
    counters = {key: base + rng.randrange(spread) if spread else base for key, (base, spread) in ranges.items()}
    if item.kind == ReportKind.JOURNEY:
        counters["total_recipients"] = counters["entered"]
    return ReportRecord(
        id=item.id,
        kind=item.kind,
        name=name or default_name(item.kind, item.id),
        counters=counters,
        status=RecordStatus.PLACEHOLDER,
    )


__all__ = ["build_placeholder"]
