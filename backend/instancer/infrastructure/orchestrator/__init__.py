"""
Instancer - Sandbox Orchestrator

Lifecycle management for per-team challenge containers:
- Instance create/get/destroy/extend with team limits
- Flag provisioning and injection
- Host port pool allocation
- Expired-instance sweeping
"""

from .models import (
    ContainerRuntime,
    ContainerRuntimeError,
    ExecResult,
    PortAllocator,
    PortBinding,
    PortPoolExhausted,
    RuntimeHandle,
    RuntimeStartRequest,
    RuntimeState,
)
from .services.audit import AuditEventType, AuditLevel, AuditSink
from .services.flag_provisioner import FlagProvisioner
from .services.instance_manager import InstanceManager
from .services.port_allocator import PoolPortAllocator
from .services.sandbox_docker import DockerRuntime
from .services.sweep_coordinator import SweepCoordinator

__all__ = [
    "ContainerRuntime",
    "ContainerRuntimeError",
    "ExecResult",
    "PortAllocator",
    "PortBinding",
    "PortPoolExhausted",
    "RuntimeHandle",
    "RuntimeStartRequest",
    "RuntimeState",
    "AuditEventType",
    "AuditLevel",
    "AuditSink",
    "FlagProvisioner",
    "InstanceManager",
    "PoolPortAllocator",
    "DockerRuntime",
    "SweepCoordinator",
]
