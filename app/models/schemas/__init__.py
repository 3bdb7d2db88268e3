from .base import ResponseBase
from .reports import (
    DashboardReportsRequest,
    DashboardReportsResponse,
    DashboardSummary,
    CachedReportsResponse,
    PollCachedReportsResponse,
    RestartBackgroundRequest,
)

__all__ = [
    "ResponseBase",
    "DashboardReportsRequest",
    "DashboardReportsResponse",
    "DashboardSummary",
    "CachedReportsResponse",
    "PollCachedReportsResponse",
    "RestartBackgroundRequest",
]
