"""Service modules - Process lifecycle, tasks and sync"""
from .process_service import ProcessService
from .task_projector import TaskProjector
from .sync_coordinator import SyncCoordinator

__all__ = [
    "ProcessService",
    "TaskProjector",
    "SyncCoordinator",
]
