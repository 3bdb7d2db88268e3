from .users import User
from .report_cache import ReportCacheDocument, CachedReport
from .rate_limits import RateLimitEntry
from .enums import ReportKind, RecordStatus, CacheSource

__all__ = [
    "User",
    "ReportCacheDocument",
    "CachedReport",
    "RateLimitEntry",
    "ReportKind",
    "RecordStatus",
    "CacheSource",
]
