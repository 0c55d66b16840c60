"""Task API Routes - Projected human tasks"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..deps import ActorContext, get_actor_dep, get_correlation_id_dep, get_runtime_dep
from ...domain.errors import DomainError
from ...runtime import EngineRuntime
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class CompleteTaskRequest(BaseModel):
    """Completion payload; required keys depend on the task type"""
    data: Dict[str, Any] = Field(default_factory=dict)


@router.get("")
async def list_tasks(
    task_type: Optional[str] = Query(None, alias="type"),
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep)
):
    """
    Tasks visible to the caller

    Without an X-User-Id header every projected task is returned.
    """
    if actor.user_id:
        tasks = runtime.tasks.get_user_tasks(actor.user_id, actor.role)
    else:
        tasks = runtime.tasks.get_all_tasks()
    if task_type:
        tasks = [t for t in tasks if t.type == task_type]
    return [t.model_dump(mode="json", by_alias=True) for t in tasks]


@router.get("/statistics")
async def get_task_statistics(
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep)
):
    return runtime.tasks.get_task_statistics(actor.user_id, actor.role)


@router.get("/{task_id}")
async def get_task(
    task_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return runtime.tasks.get_task(task_id).model_dump(mode="json", by_alias=True)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.post("/{task_id}/complete")
async def complete_task(
    task_id: str,
    request: CompleteTaskRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    try:
        result = await runtime.tasks.complete_task(task_id, actor.user_id, actor.role, request.data)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
