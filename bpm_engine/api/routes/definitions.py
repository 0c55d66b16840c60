"""Definition API Routes - Register and inspect process definitions"""
from typing import Any, Dict, List
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..deps import get_correlation_id_dep, get_runtime_dep
from ...domain.errors import DomainError
from ...engine.registry import ProcessRegistry
from ...runtime import EngineRuntime
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class DefinitionListResponse(BaseModel):
    """Registered definitions"""
    items: List[Dict[str, Any]]
    total: int


class ValidationResult(BaseModel):
    """Validation result"""
    is_valid: bool
    errors: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Routes
# ============================================================================

@router.post("", status_code=status.HTTP_201_CREATED)
async def register_definition(
    definition: Dict[str, Any],
    runtime: EngineRuntime = Depends(get_runtime_dep),
    correlation_id: str = Depends(get_correlation_id_dep)
):
    """
    Register a process definition

    Re-registering an existing id replaces it. Only declarative hooks and
    conditions can be sent over HTTP; callables are registered in code.
    """
    try:
        registered = runtime.service.register_definition(definition)
        logger.info(
            f"Registered definition: {registered.id}",
            extra={"definition_id": registered.id}
        )
        return registered.to_public_dict()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.get("", response_model=DefinitionListResponse)
async def list_definitions(runtime: EngineRuntime = Depends(get_runtime_dep)):
    """List registered definitions"""
    items = [d.to_public_dict() for d in runtime.service.get_definitions()]
    return DefinitionListResponse(items=items, total=len(items))


@router.post("/validate", response_model=ValidationResult)
async def validate_definition(
    definition: Dict[str, Any],
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    """Dry-run validation (nothing is registered)"""
    scratch = ProcessRegistry(runtime.evaluator, runtime.hooks)
    try:
        scratch.register_definition(definition)
    except DomainError as e:
        return ValidationResult(
            is_valid=False,
            errors=e.details.get("errors") or [{"path": "", "message": e.message}]
        )
    return ValidationResult(is_valid=True)


@router.get("/{definition_id}")
async def get_definition(
    definition_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    try:
        return runtime.service.get_definition(definition_id).to_public_dict()
    except DomainError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())


@router.delete("/{definition_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unregister_definition(
    definition_id: str,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    """Existing instances keep their data; they can no longer transition but can still be cancelled"""
    if not runtime.registry.unregister_definition(definition_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": {"code": "UNKNOWN_DEFINITION", "message": f"Definition {definition_id} not found"}}
        )
