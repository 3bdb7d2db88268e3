"""
API router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import reports, campaigns

api_router = APIRouter()

api_router.include_router(
    reports.router,
    prefix="/reports",
    tags=["reports"]
)

api_router.include_router(
    campaigns.router,
    prefix="/campaigns",
    tags=["campaigns"]
)
