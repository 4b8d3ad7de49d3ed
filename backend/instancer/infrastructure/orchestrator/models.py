"""
Orchestrator Models - Runtime and port allocation contracts

The instance manager drives sandboxes only through these protocols, so a
Docker engine, a remote agent or a test double can sit behind them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


class ContainerRuntimeError(Exception):
    """Raised by a runtime when an operation on a workload fails."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.message = message
        self.output = output

    def diagnostics(self) -> str:
        if self.output:
            return f"{self.message}\n{self.output}"
        return self.message


class PortPoolExhausted(Exception):
    """Raised when the allocator cannot find enough free host ports."""

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Requested {requested} ports but only {available} are free"
        )
        self.requested = requested
        self.available = available


@dataclass
class PortBinding:
    """Container port exposed on the host. host_port None lets the runtime pick."""
    container_port: str
    host_port: Optional[int] = None


@dataclass
class RuntimeStartRequest:
    """Everything a runtime needs to launch one sandbox."""
    name: str
    image: str
    ports: List[PortBinding] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    args: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Env values carry the flag; only their names are exposed
        return {
            "name": self.name,
            "image": self.image,
            "ports": [
                {"container_port": p.container_port, "host_port": p.host_port}
                for p in self.ports
            ],
            "env": sorted(self.env),
            "has_args": bool(self.args),
            "labels": self.labels,
            "cpu_limit": self.cpu_limit,
            "memory_limit": self.memory_limit,
        }


@dataclass
class RuntimeHandle:
    """A started workload: opaque reference plus whatever ports are known."""
    ref: str
    port_map: Dict[str, int] = field(default_factory=dict)


@dataclass
class RuntimeState:
    running: bool
    port_map: Dict[str, int] = field(default_factory=dict)


@dataclass
class ExecResult:
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class ContainerRuntime(Protocol):
    """Start, stop, inspect and talk to sandbox workloads."""

    async def start(self, request: RuntimeStartRequest) -> RuntimeHandle:
        ...

    async def stop(self, ref: str) -> None:
        """Remove the workload. Unknown references are not an error."""
        ...

    async def inspect(self, ref: str) -> RuntimeState:
        ...

    async def logs(self, ref: str, max_lines: int) -> str:
        ...

    async def exec(self, ref: str, command: str, args: List[str]) -> ExecResult:
        ...


@runtime_checkable
class PortAllocator(Protocol):
    """Hands out host ports that no other live instance holds."""

    async def allocate(self, count: int) -> List[int]:
        ...

    async def release(self, ports: List[int]) -> None:
        ...
