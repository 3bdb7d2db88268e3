"""Central Enum definitions for report domain states.

These replace scattered string literals to ensure consistency across
DB models, schemas, and business logic.
"""
from __future__ import annotations
import enum


class ReportKind(str, enum.Enum):
    CAMPAIGN = "campaign"
    JOURNEY = "journey"


class RecordStatus(str, enum.Enum):
    AVAILABLE = "available"
    # Synthetic metrics substituted when upstream could not deliver.
    PLACEHOLDER = "placeholder"


class CacheSource(str, enum.Enum):
    """Where the reports in a dashboard response came from."""
    FIREBASE_CACHE = "firebase_cache"
    PARTIAL_CACHE = "partial_cache"
    BACKGROUND_REFRESH = "background_refresh"
    EMPTY = "empty"
    ORTTO_API = "ortto_api"


__all__ = [
    "ReportKind",
    "RecordStatus",
    "CacheSource",
]
