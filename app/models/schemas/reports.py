"""
Pydantic schemas for the report endpoints.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

class DashboardReportsRequest(BaseModel):
    # Items stay loosely typed so malformed entries can be dropped instead of failing the request.
    items: List[Any] = Field(default_factory=list, description="[{id, type: campaign|journey}]")
    timeframe: str = Field("all-time", min_length=1, max_length=64)
    force_refresh: bool = Field(False, alias="forceRefresh")

    model_config = ConfigDict(populate_by_name=True, json_schema_extra={
        "example": {
            "items": [
                {"id": "0663a1f2c0b1d2e3f4a5b6c7", "type": "campaign"},
                {"id": "0663a1f2c0b1d2e3f4a5b6c8", "type": "journey"}
            ],
            "timeframe": "all-time",
            "forceRefresh": False
        }
    })

class DashboardSummary(BaseModel):
    total: int
    fetched: int
    pending: int
    rate_limited: int = Field(alias="rateLimited")
    source: str

    model_config = ConfigDict(populate_by_name=True)

class DashboardReportsResponse(BaseModel):
    reports: List[Dict[str, Any]]
    pending: List[str]
    partial: bool
    rate_limited: List[str] = Field(alias="rateLimited")
    message: str
    summary: DashboardSummary

    model_config = ConfigDict(populate_by_name=True)

class CachedReportsResponse(BaseModel):
    reports: List[Dict[str, Any]]
    count: int
    cache_age: Optional[int] = Field(None, alias="cacheAge", description="Minutes since the cache was filled")
    last_updated: Optional[str] = Field(None, alias="lastUpdated")
    message: str

    model_config = ConfigDict(populate_by_name=True)

class PollCachedReportsResponse(BaseModel):
    reports: List[Dict[str, Any]]
    count: int
    has_updates: bool = Field(alias="hasUpdates")
    refreshing: bool

    model_config = ConfigDict(populate_by_name=True)

class RestartBackgroundRequest(BaseModel):
    timeframe: str = Field("all-time", min_length=1, max_length=64)
