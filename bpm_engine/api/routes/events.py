"""Event API Routes - External events for event auto-transitions"""
from typing import Any, Dict
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from ..deps import get_correlation_id_dep, get_runtime_dep
from ...runtime import EngineRuntime
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


class EmitEventRequest(BaseModel):
    """An event name and its payload"""
    event: str = Field(..., min_length=1, max_length=200)
    payload: Dict[str, Any] = Field(default_factory=dict)


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def emit_event(
    request: EmitEventRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """Deliver an event to every process listening for it"""
    listeners = runtime.bus.handler_count(request.event)
    await runtime.engine.emit_event(request.event, request.payload)
    logger.info(f"Event emitted: {request.event} ({listeners} listeners)", extra={"action": "emit_event"})
    return {"event": request.event, "listeners": listeners}
