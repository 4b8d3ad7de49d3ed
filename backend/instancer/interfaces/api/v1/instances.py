"""
Instancer - Team Instance Endpoints

- POST   /contests/{contest_id}/challenges/{challenge_id}/instance         - Start
- GET    /contests/{contest_id}/challenges/{challenge_id}/instance         - Status
- DELETE /contests/{contest_id}/challenges/{challenge_id}/instance         - Destroy
- POST   /contests/{contest_id}/challenges/{challenge_id}/instance/extend  - Renew
"""

from typing import Annotated, Any, Dict

import structlog
from fastapi import APIRouter, Depends, Query, Request, status

from instancer.infrastructure.orchestrator import InstanceManager
from instancer.interfaces.api.deps import (
    client_ip,
    get_current_user_id,
    get_instance_manager,
)

logger = structlog.get_logger(__name__)
router = APIRouter()

INSTANCE_PATH = "/contests/{contest_id}/challenges/{challenge_id}/instance"


@router.post(
    INSTANCE_PATH,
    status_code=status.HTTP_201_CREATED,
    summary="Start Instance",
    description="Start a sandbox of the challenge for the current user's team",
)
async def create_instance(
    contest_id: int,
    challenge_id: int,
    request: Request,
    user_id: Annotated[int, Depends(get_current_user_id)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
    force: Annotated[bool, Query(description="Replace your own instance when at the team limit")] = False,
) -> Dict[str, Any]:
    descriptor = await manager.create(
        user_id,
        contest_id,
        challenge_id,
        force_destroy_existing=force,
        source_ip=client_ip(request),
    )
    return {**descriptor.to_dict(), "message": "Instance started"}


@router.get(
    INSTANCE_PATH,
    summary="Get Instance",
    description="The team's running instance of the challenge",
)
async def get_instance(
    contest_id: int,
    challenge_id: int,
    user_id: Annotated[int, Depends(get_current_user_id)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> Dict[str, Any]:
    view = await manager.get(user_id, contest_id, challenge_id)
    return view.to_dict()


@router.delete(
    INSTANCE_PATH,
    summary="Destroy Instance",
    description="Destroy the team's instance. Only the member who started it may do this",
)
async def destroy_instance(
    contest_id: int,
    challenge_id: int,
    request: Request,
    user_id: Annotated[int, Depends(get_current_user_id)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> Dict[str, Any]:
    instance = await manager.destroy(user_id, contest_id, challenge_id, source_ip=client_ip(request))
    return {"message": "Instance destroyed", "instance_id": instance.id}


@router.post(
    INSTANCE_PATH + "/extend",
    summary="Extend Instance",
    description="Renew the team's instance during the final minutes before expiry",
)
async def extend_instance(
    contest_id: int,
    challenge_id: int,
    request: Request,
    user_id: Annotated[int, Depends(get_current_user_id)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> Dict[str, Any]:
    result = await manager.extend(user_id, contest_id, challenge_id, source_ip=client_ip(request))
    return result.to_dict()
