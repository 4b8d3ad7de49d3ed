"""
Instancer - Health Check Endpoints
"""

import time
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from instancer.domain.instances import utc_now
from instancer.infrastructure.database import DatabaseManager
from instancer.interfaces.api.deps import get_db_manager

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any]


@router.get(
    "",
    response_model=HealthStatus,
    summary="Health Check",
)
async def health_check(
    request: Request,
    db: DatabaseManager = Depends(get_db_manager),
) -> HealthStatus:
    start = time.monotonic()
    db_health = await db.health_check()
    db_latency = (time.monotonic() - start) * 1000

    checks: Dict[str, Any] = {
        "database": {
            **db_health,
            "latency_ms": round(db_latency, 2),
        },
    }
    overall_status = "healthy" if db_health["status"] == "healthy" else "degraded"

    return HealthStatus(
        status=overall_status,
        timestamp=utc_now().isoformat(),
        version=request.app.state.settings.app_version,
        checks=checks,
    )


@router.get(
    "/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness Probe",
)
async def liveness() -> Dict[str, str]:
    return {"status": "alive"}
