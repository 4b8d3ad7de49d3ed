"""
Instancer - FastAPI Application Factory
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI

from instancer.core.config import OrchestratorConfig, Settings, get_settings
from instancer.core.exceptions import InstanceError
from instancer.core.logging import setup_logging
from instancer.infrastructure.database import DatabaseManager
from instancer.infrastructure.orchestrator import (
    AuditSink,
    ContainerRuntime,
    DockerRuntime,
    FlagProvisioner,
    InstanceManager,
    PoolPortAllocator,
    SweepCoordinator,
)
from instancer.infrastructure.repositories import (
    AuditRepository,
    CatalogRepository,
    FlagRepository,
    InstanceRepository,
)
from instancer.interfaces.api.v1 import api_router
from instancer.interfaces.middleware import (
    ErrorHandlerMiddleware,
    TrustedIdentityMiddleware,
    instance_error_handler,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    settings: Settings = app.state.settings

    setup_logging(settings.log_level, settings.log_format)

    logger.info("Starting Instancer", version=settings.app_version)

    # Initialize database connection pool
    db_manager = DatabaseManager(settings)
    await db_manager.connect()
    if settings.database_auto_create:
        await db_manager.create_all()
    app.state.db = db_manager

    config = OrchestratorConfig.from_settings(settings)
    instances = InstanceRepository(db_manager)
    catalog = CatalogRepository(db_manager)

    runtime: ContainerRuntime = app.state.runtime or DockerRuntime(settings.docker_url)
    owns_runtime = app.state.runtime is None

    port_allocator: Optional[PoolPortAllocator] = None
    if settings.port_pool_enabled:
        port_allocator = PoolPortAllocator(
            instances.used_host_ports,
            start=settings.port_range_start,
            end=settings.port_range_end,
            check_host=settings.port_check_host,
        )

    audit = AuditSink(AuditRepository(db_manager))
    flags = FlagProvisioner(
        FlagRepository(db_manager),
        catalog,
        default_format=settings.default_flag_format,
    )
    manager = InstanceManager(
        config,
        instances,
        catalog,
        flags,
        runtime,
        audit,
        port_allocator=port_allocator,
    )
    sweeper = SweepCoordinator(
        manager,
        interval_seconds=settings.sweep_interval_seconds,
        sweep_timeout=settings.sweep_timeout,
    )

    app.state.audit = audit
    app.state.flags = flags
    app.state.instance_manager = manager
    app.state.sweeper = sweeper

    if settings.auto_destroy_expired:
        await sweeper.start()

    logger.info("All services initialized successfully")

    yield

    logger.info("Shutting down Instancer")

    if settings.auto_destroy_expired:
        await sweeper.stop()
    await audit.drain()
    if owns_runtime:
        await runtime.close()
    await db_manager.disconnect()
    logger.info("Shutdown complete")


def create_app(
    settings: Settings | None = None,
    runtime: ContainerRuntime | None = None,
) -> FastAPI:
    """
    Application factory pattern for FastAPI.

    Args:
        settings: Optional settings override for testing
        runtime: Optional container runtime; Docker is used when omitted

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Instancer",
        description="Per-team challenge sandbox lifecycle orchestrator",
        version=settings.app_version,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.runtime = runtime

    app.add_exception_handler(InstanceError, instance_error_handler)

    # Add middleware (order matters - last added is first executed)
    if settings.trusted_user_header:
        app.add_middleware(TrustedIdentityMiddleware, header_name=settings.trusted_user_header)

    # Error handler (outermost)
    app.add_middleware(ErrorHandlerMiddleware)

    app.include_router(api_router, prefix="/api/v1")

    return app
