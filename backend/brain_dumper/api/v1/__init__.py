"""
API v1 router configuration.
"""
from fastapi import APIRouter

from .calendar import router as calendar_router
from .scheduling import router as scheduling_router
from .webhooks import router as webhooks_router

api_router = APIRouter()

api_router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(calendar_router, prefix="/calendar", tags=["calendar"])
api_router.include_router(scheduling_router, prefix="/scheduling", tags=["scheduling"])
