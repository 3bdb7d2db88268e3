"""
Campaign catalog endpoints backed by the Ortto calendar.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
import time
from app.api.deps import Principal, get_current_user, get_report_source
from app.config import REPORT_CACHE_SETTINGS
from app.integrations.base import ReportSource, UpstreamAPIError
from app.services.dashboard_reports import fetch_campaign_reports
from app.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)

@router.get(
    "/list",
    summary="List campaigns",
    description="All campaigns and journeys on the Ortto calendar for a year"
)
async def list_campaigns(
    request: Request,
    year: Optional[int] = Query(None, ge=2000, le=2100),
    user: Principal = Depends(get_current_user),
    source: ReportSource = Depends(get_report_source)
):
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        return await source.list_campaigns(year)
    except UpstreamAPIError as e:
        logger.error(
            "Campaign listing failed",
            user_id=user.uid,
            year=year,
            error=str(e),
            status_code=e.status_code,
            request_id=request_id
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to list campaigns from Ortto"
        )

@router.get(
    "/reports",
    summary="Campaign reports",
    description="Reports for a comma separated list of campaign ids; ids that fail are left out"
)
async def campaign_reports(
    request: Request,
    campaign_ids: str = Query(..., alias="campaignIds", min_length=1),
    timeframe: str = Query(str(REPORT_CACHE_SETTINGS["default_timeframe"]), min_length=1),
    user: Principal = Depends(get_current_user),
    source: ReportSource = Depends(get_report_source)
):
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")
    ids = list(dict.fromkeys(cid.strip() for cid in campaign_ids.split(",") if cid.strip()))
    if not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="campaignIds must list at least one campaign id"
        )

    records = await fetch_campaign_reports(source, ids, timeframe)
    if not records:
        logger.warning(
            "No campaign reports could be fetched",
            user_id=user.uid,
            requested=len(ids),
            request_id=request_id
        )
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No reports found for the requested campaigns"
        )

    log_performance(
        operation="campaign_reports",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"requested": len(ids), "fetched": len(records)}
    )
    return {"reports": [r.to_dict() for r in records], "count": len(records), "requested": len(ids)}

@router.get(
    "/discover",
    summary="Discover assets",
    description="Calendar assets split into campaigns and journeys"
)
async def discover_assets(
    request: Request,
    refresh: bool = Query(False),
    user: Principal = Depends(get_current_user),
    source: ReportSource = Depends(get_report_source)
):
    request_id = request.headers.get("X-Request-ID", "unknown")
    try:
        assets = await source.get_categorized_assets(refresh=refresh)
    except UpstreamAPIError as e:
        logger.error(
            "Asset discovery failed",
            user_id=user.uid,
            error=str(e),
            status_code=e.status_code,
            request_id=request_id
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to discover assets from Ortto"
        )
    return {
        **assets,
        "summary": {
            "campaigns": len(assets.get("campaigns", [])),
            "journeys": len(assets.get("journeys", [])),
            "total": len(assets.get("all", [])),
        }
    }
