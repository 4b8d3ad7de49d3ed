"""
Instancer - API v1 Router
Aggregates all API endpoints
"""

from fastapi import APIRouter

from instancer.interfaces.api.v1.admin_instances import router as admin_router
from instancer.interfaces.api.v1.health import router as health_router
from instancer.interfaces.api.v1.instances import router as instances_router

api_router = APIRouter()

# Health check endpoints
api_router.include_router(
    health_router,
    prefix="/health",
    tags=["Health"],
)

# Team instance endpoints
api_router.include_router(
    instances_router,
    tags=["Instances"],
)

# Administration endpoints
api_router.include_router(
    admin_router,
    prefix="/admin",
    tags=["Admin"],
)
