"""Sync API Routes - Replication status and control"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..deps import get_runtime_dep
from ...domain.models import RemoteCredentials
from ...runtime import EngineRuntime

router = APIRouter()


class ForceSyncRequest(BaseModel):
    full: bool = False


class SwitchOrganizationRequest(BaseModel):
    """Tenant to load; remote settings fall back to configuration"""
    org_id: str = Field(..., alias="orgId", min_length=1)
    remote_url: Optional[str] = Field(None, alias="remoteUrl")
    credentials: Optional[RemoteCredentials] = None


class SyncIntervalRequest(BaseModel):
    seconds: float = Field(..., gt=0)


@router.get("/status")
async def get_sync_status(runtime: EngineRuntime = Depends(get_runtime_dep)):
    return runtime.sync.get_sync_status()


@router.post("")
async def force_sync(
    request: ForceSyncRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    result = await runtime.sync.force_sync(full=request.full)
    return result.model_dump(by_alias=True)


@router.put("/interval")
async def set_sync_interval(
    request: SyncIntervalRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    runtime.sync.set_sync_interval(request.seconds)
    return runtime.sync.get_sync_status()


@router.get("/info")
async def get_database_info(runtime: EngineRuntime = Depends(get_runtime_dep)):
    return await runtime.sync.get_database_info()


@router.post("/organization")
async def switch_organization(
    request: SwitchOrganizationRequest,
    runtime: EngineRuntime = Depends(get_runtime_dep)
):
    await runtime.switch_organization(request.org_id, request.remote_url, request.credentials)
    return runtime.sync.get_sync_status()
