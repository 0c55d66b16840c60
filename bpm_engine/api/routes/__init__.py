"""API Routes module"""
from fastapi import APIRouter

from .definitions import router as definitions_router
from .processes import router as processes_router
from .tasks import router as tasks_router
from .events import router as events_router
from .sync import router as sync_router

# Main API router
api_router = APIRouter()

api_router.include_router(definitions_router, prefix="/definitions", tags=["Definitions"])
api_router.include_router(processes_router, prefix="/processes", tags=["Processes"])
api_router.include_router(tasks_router, prefix="/tasks", tags=["Tasks"])
api_router.include_router(events_router, prefix="/events", tags=["Events"])
api_router.include_router(sync_router, prefix="/sync", tags=["Sync"])

__all__ = ["api_router"]
