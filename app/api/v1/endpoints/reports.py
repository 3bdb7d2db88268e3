"""
Report endpoints: dashboard orchestration, cache inspection and maintenance.
"""
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status, Query, Request
from fastapi.responses import JSONResponse
import time
from app.api.deps import (
    Principal,
    get_current_user,
    get_dashboard_service,
    get_rate_limit_ledger,
    get_report_cache,
)
from app.config import REPORT_CACHE_SETTINGS
from app.integrations.base import UpstreamAPIError
from app.models.schemas.base import ResponseBase
from app.models.schemas.reports import (
    CachedReportsResponse,
    DashboardReportsRequest,
    DashboardReportsResponse,
    PollCachedReportsResponse,
    RestartBackgroundRequest,
)
from app.services.dashboard_reports import DashboardReportService, InvalidItemsError
from app.services.rate_limit_ledger import RateLimitLedger
from app.services.report_cache import PartialCacheStore
from app.utils import get_logger, log_business_event, log_performance

router = APIRouter()
logger = get_logger(__name__)

DEFAULT_TIMEFRAME = str(REPORT_CACHE_SETTINGS["default_timeframe"])

@router.post(
    "/dashboard-reports",
    response_model=DashboardReportsResponse,
    summary="Dashboard reports",
    description="Serve campaign and journey reports from cache, refilling missing ones in the background"
)
async def dashboard_reports(
    payload: DashboardReportsRequest,
    request: Request,
    user: Principal = Depends(get_current_user),
    service: DashboardReportService = Depends(get_dashboard_service)
):
    start_time = time.time()
    request_id = request.headers.get("X-Request-ID", "unknown")

    logger.info(
        "Dashboard reports requested",
        user_id=user.uid,
        items=len(payload.items),
        timeframe=payload.timeframe,
        force_refresh=payload.force_refresh,
        request_id=request_id
    )

    try:
        result = await service.dashboard_reports(
            user.uid,
            payload.items,
            payload.timeframe,
            force_refresh=payload.force_refresh,
            request_id=request_id,
        )
    except InvalidItemsError as e:
        logger.warning(
            "Dashboard reports rejected: no valid items",
            user_id=user.uid,
            invalid_items=e.invalid_count,
            request_id=request_id
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": str(e), "invalidItems": e.invalid_count, "request_id": request_id}
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(
            "Dashboard reports failed with unexpected error",
            user_id=user.uid,
            error=str(e),
            request_id=request_id,
            exc_info=True
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error while loading dashboard reports"
        )

    duration_ms = (time.time() - start_time) * 1000
    log_performance(
        operation="dashboard_reports",
        duration_ms=duration_ms,
        additional_data={
            "source": result.source.value,
            "reports": len(result.reports),
            "pending": len(result.pending)
        }
    )
    logger.info(
        "Dashboard reports served",
        user_id=user.uid,
        source=result.source.value,
        reports=len(result.reports),
        pending=len(result.pending),
        rate_limited=len(result.rate_limited),
        request_id=request_id
    )
    return result.to_dict()

@router.get(
    "/cached-reports",
    response_model=CachedReportsResponse,
    summary="Cached reports",
    description="Everything cached for a timeframe, provided the cache has not expired"
)
def cached_reports(
    timeframe: str = Query(DEFAULT_TIMEFRAME, min_length=1),
    user: Principal = Depends(get_current_user),
    service: DashboardReportService = Depends(get_dashboard_service)
):
    return service.cached_reports(user.uid, timeframe)

@router.get(
    "/poll-cached-reports",
    response_model=PollCachedReportsResponse,
    summary="Poll cached reports",
    description="Progress of a background refill: current cache contents and whether it grew past lastCount"
)
def poll_cached_reports(
    timeframe: str = Query(DEFAULT_TIMEFRAME, min_length=1),
    last_count: int = Query(0, alias="lastCount", ge=0),
    user: Principal = Depends(get_current_user),
    service: DashboardReportService = Depends(get_dashboard_service)
):
    return service.poll_cached_reports(user.uid, timeframe, last_count)

@router.get(
    "/history",
    summary="Stored report document",
    description="The cached document for a timeframe regardless of its age"
)
def report_history(
    timeframe: str = Query(DEFAULT_TIMEFRAME, min_length=1),
    user: Principal = Depends(get_current_user),
    cache: PartialCacheStore = Depends(get_report_cache)
):
    document = cache.history(user.uid, timeframe)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No report history for timeframe '{timeframe}'"
        )
    return {"timeframe": timeframe, **document.to_dict()}

@router.get(
    "/timeframes",
    summary="Cached timeframes",
    description="Every timeframe with a cache document for the caller"
)
def list_timeframes(
    user: Principal = Depends(get_current_user),
    cache: PartialCacheStore = Depends(get_report_cache)
):
    return {"timeframes": cache.list_timeframes(user.uid)}

@router.delete(
    "/cache",
    response_model=ResponseBase,
    summary="Clear all cached reports"
)
def clear_all_cache(
    request: Request,
    user: Principal = Depends(get_current_user),
    cache: PartialCacheStore = Depends(get_report_cache)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    removed = cache.clear_all(user.uid)
    logger.info("Report cache cleared", user_id=user.uid, timeframes=removed, request_id=request_id)
    return ResponseBase(
        message=f"Cleared cached reports for {removed} timeframes",
        data={"timeframes": removed}
    )

@router.delete(
    "/cache/{timeframe}",
    response_model=ResponseBase,
    summary="Clear cached reports for one timeframe"
)
def clear_timeframe_cache(
    timeframe: str,
    request: Request,
    user: Principal = Depends(get_current_user),
    cache: PartialCacheStore = Depends(get_report_cache)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    removed = cache.clear(user.uid, timeframe)
    logger.info("Report cache cleared", user_id=user.uid, timeframe=timeframe, removed=removed, request_id=request_id)
    return ResponseBase(
        message=f"Cleared cached reports for timeframe '{timeframe}'" if removed else f"No cached reports for timeframe '{timeframe}'",
        data={"timeframe": timeframe, "removed": removed}
    )

@router.get(
    "/rate-limits",
    summary="Rate-limited items",
    description="Items currently quarantined after upstream throttling"
)
def get_rate_limits(
    timeframe: str = Query(DEFAULT_TIMEFRAME, min_length=1),
    user: Principal = Depends(get_current_user),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger)
):
    entry = ledger.get(user.uid, timeframe)
    if entry is None:
        return {"rateLimited": False, "items": [], "rateLimitedAt": None, "expiresAt": None}
    return {"rateLimited": True, **entry.to_dict()}

@router.delete(
    "/rate-limits",
    response_model=ResponseBase,
    summary="Clear rate-limited items"
)
def clear_rate_limits(
    request: Request,
    timeframe: str = Query(DEFAULT_TIMEFRAME, min_length=1),
    user: Principal = Depends(get_current_user),
    ledger: RateLimitLedger = Depends(get_rate_limit_ledger)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    removed = ledger.clear(user.uid, timeframe)
    log_business_event(
        event_type="rate_limits_cleared",
        details={"timeframe": timeframe, "removed": removed},
        user_id=user.uid,
        request_id=request_id
    )
    return ResponseBase(
        message="Rate limit tracking cleared" if removed else "No rate limit tracking to clear",
        data={"timeframe": timeframe, "removed": removed}
    )

@router.post(
    "/restart-background",
    response_model=ResponseBase,
    summary="Restart background refill",
    description="Compare the upstream catalog with the cache and refill whatever is missing"
)
async def restart_background(
    request: Request,
    payload: Optional[RestartBackgroundRequest] = None,
    user: Principal = Depends(get_current_user),
    service: DashboardReportService = Depends(get_dashboard_service)
) -> ResponseBase:
    request_id = request.headers.get("X-Request-ID", "unknown")
    timeframe = payload.timeframe if payload is not None else DEFAULT_TIMEFRAME
    try:
        outcome = await service.restart_background(user.uid, timeframe, request_id=request_id)
    except UpstreamAPIError as e:
        logger.error(
            "Restart background failed: catalog unavailable",
            user_id=user.uid,
            error=str(e),
            status_code=e.status_code,
            request_id=request_id
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not load the campaign catalog from Ortto"
        )
    logger.info(
        "Background refill restart requested",
        user_id=user.uid,
        timeframe=timeframe,
        missing=outcome["missing"],
        started=outcome["started"],
        request_id=request_id
    )
    return ResponseBase(message=outcome["message"], data=outcome)
