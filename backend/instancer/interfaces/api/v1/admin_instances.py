"""
Instancer - Admin Instance Endpoints

Instance oversight and bulk actions for administrators, plus per-team flag
listing and generation.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from instancer.domain.instances import UserInfo
from instancer.infrastructure.orchestrator import (
    FlagProvisioner,
    InstanceManager,
    SweepCoordinator,
)
from instancer.interfaces.api.deps import (
    client_ip,
    get_flag_provisioner,
    get_instance_manager,
    get_sweep_coordinator,
    require_admin,
)

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class BatchDestroyBody(BaseModel):
    """Request body for destroying several instances."""
    ids: List[int] = Field(..., min_length=1, description="Instance ids to destroy")


# ============================================================================
# Instances
# ============================================================================

@router.get(
    "/instances",
    summary="List Instances",
)
async def list_instances(
    admin: Annotated[UserInfo, Depends(require_admin)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
    status: Literal["running", "all"] = "running",
    contest_id: Optional[int] = None,
    search: Optional[str] = Query(None, max_length=128),
) -> Dict[str, Any]:
    instances = await manager.list_instances(status=status, contest_id=contest_id, search=search)
    return {"instances": instances, "total": len(instances)}


@router.get(
    "/instances/stats",
    summary="Instance Statistics",
)
async def instance_stats(
    admin: Annotated[UserInfo, Depends(require_admin)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> Dict[str, Any]:
    return await manager.stats()


@router.post(
    "/instances/clean-expired",
    summary="Destroy Expired Instances",
)
async def clean_expired(
    admin: Annotated[UserInfo, Depends(require_admin)],
    sweeper: Annotated[SweepCoordinator, Depends(get_sweep_coordinator)],
) -> Dict[str, Any]:
    report = await sweeper.clean_expired(actor_id=admin.id)
    return report.to_dict()


@router.post(
    "/instances/batch-destroy",
    summary="Destroy Selected Instances",
)
async def batch_destroy(
    body: BatchDestroyBody,
    admin: Annotated[UserInfo, Depends(require_admin)],
    sweeper: Annotated[SweepCoordinator, Depends(get_sweep_coordinator)],
) -> Dict[str, Any]:
    report = await sweeper.batch_destroy(body.ids, actor_id=admin.id)
    return report.to_dict()


@router.delete(
    "/instances/{instance_id}",
    summary="Destroy Instance",
)
async def destroy_instance(
    instance_id: int,
    request: Request,
    admin: Annotated[UserInfo, Depends(require_admin)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
) -> Dict[str, Any]:
    await manager.admin_destroy(instance_id, actor_id=admin.id, source_ip=client_ip(request))
    return {"message": "Instance destroyed", "instance_id": instance_id}


@router.get(
    "/instances/{instance_id}/logs",
    summary="Instance Logs",
)
async def instance_logs(
    instance_id: int,
    admin: Annotated[UserInfo, Depends(require_admin)],
    manager: Annotated[InstanceManager, Depends(get_instance_manager)],
    lines: str = "100",
) -> Dict[str, Any]:
    try:
        tail: Optional[int] = int(lines)
    except ValueError:
        tail = None
    return await manager.logs(instance_id, tail)


# ============================================================================
# Flags
# ============================================================================

@router.get(
    "/contests/{contest_id}/challenges/{challenge_id}/flags",
    summary="List Challenge Flags",
    description="Flags of every qualifying team, generated on demand",
)
async def list_flags(
    contest_id: int,
    challenge_id: int,
    admin: Annotated[UserInfo, Depends(require_admin)],
    flags: Annotated[FlagProvisioner, Depends(get_flag_provisioner)],
) -> Dict[str, Any]:
    items = await flags.list_for_challenge(contest_id, challenge_id)
    return {"flags": items, "total": len(items)}


@router.post(
    "/contests/{contest_id}/teams/{team_id}/flags",
    summary="Generate Team Flags",
    description="Ensure the team has a flag for every public challenge",
)
async def generate_team_flags(
    contest_id: int,
    team_id: int,
    admin: Annotated[UserInfo, Depends(require_admin)],
    flags: Annotated[FlagProvisioner, Depends(get_flag_provisioner)],
) -> Dict[str, Any]:
    generated = await flags.generate_all_for_contest(contest_id, team_id)
    logger.info(
        "Team flags generated",
        contest_id=contest_id,
        team_id=team_id,
        count=len(generated),
        admin_id=admin.id,
    )
    return {"team_id": team_id, "count": len(generated)}
