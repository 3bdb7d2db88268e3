"""
Integrations package initialization.
Exports the report source interface and the upstream error taxonomy.
"""
from .base import (
    ReportSource,
    UpstreamAPIError,
    UpstreamRateLimitError,
    UpstreamNotFoundError,
    InvalidUpstreamResponse,
)

__all__ = [
    "ReportSource",
    "UpstreamAPIError",
    "UpstreamRateLimitError",
    "UpstreamNotFoundError",
    "InvalidUpstreamResponse",
]
