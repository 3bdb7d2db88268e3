"""Background refill job payload structure."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.models.domain import ReportItem


@dataclass(slots=True)
class RefillJob:
    user_id: str
    timeframe: str
    items: list[ReportItem] = field(default_factory=list)
    correlation_id: Optional[str] = None
    cursor: int = 0  # index of the next item to hand out

    def __post_init__(self) -> None:
        unique: dict[str, ReportItem] = {}
        for item in self.items:
            unique.setdefault(item.id, item)
        self.items = list(unique.values())

    def key(self) -> str:
        return f"refill:{self.user_id}:{self.timeframe}"

    def extend(self, items: Iterable[ReportItem]) -> int:
        """Queue items not already part of this job. Returns how many were added."""
        known = {i.id for i in self.items}
        added = 0
        for item in items:
            if item.id not in known:
                self.items.append(item)
                known.add(item.id)
                added += 1
        return added

    def next_batch(self, size: int) -> list[ReportItem]:
        batch = self.items[self.cursor:self.cursor + size]
        self.cursor += len(batch)
        return batch

    @property
    def remaining(self) -> int:
        return len(self.items) - self.cursor


__all__ = ["RefillJob"]
