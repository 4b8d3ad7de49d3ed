"""
Instancer - API dependencies
Identity and service lookups from application state
"""

from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from instancer.domain.instances import UserInfo
from instancer.infrastructure.database import DatabaseManager
from instancer.infrastructure.orchestrator import (
    FlagProvisioner,
    InstanceManager,
    SweepCoordinator,
)


async def get_db_manager(request: Request) -> DatabaseManager:
    """Get database manager from app state."""
    return request.app.state.db


async def get_instance_manager(request: Request) -> InstanceManager:
    return request.app.state.instance_manager


async def get_sweep_coordinator(request: Request) -> SweepCoordinator:
    return request.app.state.sweeper


async def get_flag_provisioner(request: Request) -> FlagProvisioner:
    return request.app.state.flags


async def get_current_user_id(request: Request) -> int:
    """User id placed on the request by the authentication layer."""
    user_id = getattr(request.state, "user_id", None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user_id


async def require_admin(
    user_id: Annotated[int, Depends(get_current_user_id)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> UserInfo:
    """Require an administrator account."""
    user = await manager.catalog.get_user(user_id)
    if user is None or not user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
