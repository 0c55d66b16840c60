"""Process API Routes - Instance lifecycle, queries and history"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..deps import ActorContext, get_actor_dep, get_correlation_id_dep, get_runtime_dep
from ...domain.models import ProcessInstance, ProcessQuery
from ...domain.enums import ProcessStatus, SortOrder, SyncStatus
from ...domain.errors import DomainError
from ...runtime import EngineRuntime
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateProcessRequest(BaseModel):
    """Request to start a process instance"""
    definition_id: str = Field(..., alias="definitionId", min_length=1)
    process_type: Optional[str] = Field(None, alias="processType")
    variables: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    """Request to move a process to another state"""
    target_state: str = Field(..., alias="targetState", min_length=1)
    context: Dict[str, Any] = Field(default_factory=dict)


class ReasonRequest(BaseModel):
    """Optional reason for cancel / suspend"""
    reason: Optional[str] = Field(None, max_length=2000)


class ProcessListResponse(BaseModel):
    """One page of processes"""
    items: List[Dict[str, Any]]
    total: int
    offset: int
    limit: Optional[int] = None
    has_more: bool = Field(False, alias="hasMore")


def _dump(instance: ProcessInstance) -> Dict[str, Any]:
    return instance.model_dump(mode="json", by_alias=True, exclude_none=True)


def _raise(e: DomainError):
    raise HTTPException(status_code=e.http_status, detail=e.to_dict())


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_process(
    request: CreateProcessRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Start a process instance

    The caller's id is recorded as ``metadata.createdBy`` unless given.
    """
    metadata = dict(request.metadata)
    if actor.user_id:
        metadata.setdefault("createdBy", actor.user_id)
    try:
        instance = await runtime.service.create_process(
            request.definition_id,
            process_type=request.process_type,
            variables=request.variables,
            metadata=metadata,
            context={"userId": actor.user_id}
        )
        return _dump(instance)
    except DomainError as e:
        _raise(e)


@router.get("", response_model=ProcessListResponse)
async def list_processes(
    definition_id: Optional[str] = Query(None, alias="definitionId"),
    process_type: Optional[str] = Query(None, alias="processType"),
    status_filter: Optional[ProcessStatus] = Query(None, alias="status"),
    current_state: Optional[str] = Query(None, alias="currentState"),
    category: Optional[str] = Query(None),
    sync_status: Optional[SyncStatus] = Query(None, alias="syncStatus"),
    created_from: Optional[datetime] = Query(None, alias="createdFrom"),
    created_to: Optional[datetime] = Query(None, alias="createdTo"),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: SortOrder = Query(SortOrder.DESC, alias="sortOrder"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=1000),
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    """Filter, sort and page processes"""
    query = ProcessQuery(
        definition_id=definition_id,
        process_type=process_type,
        status=status_filter,
        current_state=current_state,
        category=category,
        sync_status=sync_status,
        created_from=created_from,
        created_to=created_to,
        sort_by=sort_by,
        sort_order=sort_order,
        offset=offset,
        limit=limit,
    )
    page = runtime.service.query_processes(query)
    return ProcessListResponse(
        items=[_dump(p) for p in page.items],
        total=page.total,
        offset=page.offset,
        limit=page.limit,
        hasMore=page.has_more,
    )


@router.get("/statistics")
async def get_statistics(runtime: EngineRuntime = Depends(get_runtime_dep)):
    return runtime.service.get_statistics()


@router.get("/{process_id}")
async def get_process(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return _dump(runtime.service.get_process(process_id))
    except DomainError as e:
        _raise(e)


@router.get("/{process_id}/transitions")
async def get_available_transitions(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    """Declared next states (guards are not evaluated)"""
    try:
        return [
            {"targetState": t.target_state, "description": t.target_config.description}
            for t in runtime.service.get_available_transitions(process_id)
        ]
    except DomainError as e:
        _raise(e)


@router.post("/{process_id}/transitions")
async def transition_process(
    process_id: str,
    request: TransitionRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    context = {"userId": actor.user_id, "userRole": actor.role, **request.context}
    try:
        instance = await runtime.service.transition_state(process_id, request.target_state, context)
        return _dump(instance)
    except DomainError as e:
        _raise(e)


@router.post("/{process_id}/cancel")
async def cancel_process(
    process_id: str,
    request: ReasonRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep),
    actor: ActorContext = Depends(get_actor_dep)
):
    try:
        instance = await runtime.service.cancel_process(
            process_id, request.reason, {"userId": actor.user_id}
        )
        return _dump(instance)
    except DomainError as e:
        _raise(e)


@router.post("/{process_id}/suspend")
async def suspend_process(
    process_id: str,
    request: ReasonRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return _dump(await runtime.service.suspend_process(process_id, request.reason))
    except DomainError as e:
        _raise(e)


@router.post("/{process_id}/resume")
async def resume_process(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return _dump(await runtime.service.resume_process(process_id))
    except DomainError as e:
        _raise(e)


@router.patch("/{process_id}/variables")
async def update_variables(
    process_id: str,
    updates: Dict[str, Any],
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return _dump(await runtime.service.update_process_variables(process_id, updates))
    except DomainError as e:
        _raise(e)


@router.patch("/{process_id}/metadata")
async def update_metadata(
    process_id: str,
    updates: Dict[str, Any],
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return _dump(await runtime.service.update_process_metadata(process_id, updates))
    except DomainError as e:
        _raise(e)


@router.get("/{process_id}/history")
async def get_history(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        history = runtime.service.get_process_history(process_id)
        return [entry.model_dump(mode="json", by_alias=True) for entry in history]
    except DomainError as e:
        _raise(e)


@router.get("/{process_id}/audit")
async def get_audit_log(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        audit_log = runtime.service.get_process_audit_log(process_id)
        return [entry.model_dump(mode="json", by_alias=True) for entry in audit_log]
    except DomainError as e:
        _raise(e)


@router.get("/{process_id}/tasks")
async def get_process_tasks(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return [t.model_dump(mode="json", by_alias=True) for t in runtime.tasks.get_process_tasks(process_id)]
    except DomainError as e:
        _raise(e)


@router.delete("/{process_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_process(
    process_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    """Remove locally and from the remote store"""
    runtime.engine.clear_handles(process_id)
    if not await runtime.sync.delete_process(process_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": {"code": "PROCESS_NOT_FOUND", "message": f"Process {process_id} not found"}}
        )
