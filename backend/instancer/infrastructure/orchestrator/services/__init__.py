"""Orchestrator services."""

from .audit import AuditSink
from .flag_provisioner import FlagProvisioner
from .instance_manager import InstanceManager
from .port_allocator import PoolPortAllocator
from .sandbox_docker import DockerRuntime
from .sweep_coordinator import SweepCoordinator

__all__ = [
    "AuditSink",
    "FlagProvisioner",
    "InstanceManager",
    "PoolPortAllocator",
    "DockerRuntime",
    "SweepCoordinator",
]
