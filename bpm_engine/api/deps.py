"""API Dependencies - Common dependencies for routes"""
from typing import Optional
from fastapi import Header, Request
from pydantic import BaseModel

from ..runtime import EngineRuntime
from ..utils.logger import set_correlation_id
from ..utils.idgen import generate_correlation_id


class ActorContext(BaseModel):
    """
    Caller identity as forwarded by the host application

    Authentication happens upstream; the engine only needs an id for
    audit fields and a role for task checks.
    """
    user_id: Optional[str] = None
    role: Optional[str] = None


async def get_correlation_id_dep(
    x_correlation_id: Optional[str] = Header(None, alias="X-Correlation-Id")
) -> str:
    """Use the client's X-Correlation-Id or generate one"""
    correlation_id = x_correlation_id or generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


async def get_actor_dep(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role")
) -> ActorContext:
    return ActorContext(user_id=x_user_id, role=x_user_role.lower() if x_user_role else None)


def get_runtime_dep(request: Request) -> EngineRuntime:
    """The runtime created by the application lifespan"""
    return request.app.state.runtime
