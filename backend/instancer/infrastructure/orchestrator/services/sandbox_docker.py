"""
Docker Sandbox - Container runtime backed by the Docker Engine API

Features:
- Containers created and started through aiodocker, never the docker CLI
- Explicit host port bindings, or runtime-assigned ports when none are given
- CPU (NanoCpus) and memory limits from the challenge definition
- Flag delivery through environment variables or a trailing argument
- Missing images are pulled once before the create is retried
"""

import os
from typing import Any, Dict, List, Optional

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from ..models import (
    ContainerRuntimeError,
    ExecResult,
    RuntimeHandle,
    RuntimeStartRequest,
    RuntimeState,
)

logger = structlog.get_logger(__name__)

# Length of the short container id used as the runtime reference
SHORT_ID_LENGTH = 12


class DockerRuntime:
    """
    Docker-based runtime for per-team challenge sandboxes.

    Implements the ContainerRuntime protocol.
    """

    def __init__(self, docker_url: Optional[str] = None):
        self.docker_url = docker_url or os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")
        self._docker: Optional[aiodocker.Docker] = None

    async def _get_docker(self) -> aiodocker.Docker:
        """Get or create Docker client."""
        if self._docker is None:
            self._docker = aiodocker.Docker(url=self.docker_url)
        return self._docker

    async def close(self) -> None:
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    async def start(self, request: RuntimeStartRequest) -> RuntimeHandle:
        """
        Create and start a container.

        Args:
            request: Container description built by the instance manager

        Returns:
            RuntimeHandle with the short container id and known port mappings
        """
        docker = await self._get_docker()
        config = self.build_container_config(request)

        logger.info(
            "Creating Docker container",
            name=request.name,
            image=request.image,
        )

        try:
            try:
                container = await docker.containers.create(config=config, name=request.name)
            except DockerError as e:
                if e.status != 404:
                    raise
                logger.info("Image not present locally, pulling", image=request.image)
                await docker.images.pull(request.image)
                container = await docker.containers.create(config=config, name=request.name)

            await container.start()
            info = await container.show()

        except DockerError as e:
            logger.error(
                "Docker error starting container",
                name=request.name,
                status=e.status,
                error=e.message,
            )
            raise ContainerRuntimeError(f"Docker error: {e.message}", output=str(e)) from e

        ref = container.id[:SHORT_ID_LENGTH]
        port_map = self.extract_port_map(info)

        logger.info(
            "Docker container started",
            name=request.name,
            container_id=ref,
            ports=port_map,
        )

        return RuntimeHandle(ref=ref, port_map=port_map)

    async def stop(self, ref: str) -> None:
        """Force-remove a container. A container that is already gone is fine."""
        docker = await self._get_docker()
        container = docker.containers.container(ref)
        try:
            await container.delete(force=True, v=True)
        except DockerError as e:
            if e.status == 404:
                logger.debug("Container already removed", container_id=ref)
                return
            logger.error(
                "Docker error destroying container",
                container_id=ref,
                error=e.message,
            )
            raise ContainerRuntimeError(f"Docker error: {e.message}", output=str(e)) from e

        logger.info("Docker container destroyed", container_id=ref)

    async def inspect(self, ref: str) -> RuntimeState:
        docker = await self._get_docker()
        container = docker.containers.container(ref)
        try:
            info = await container.show()
        except DockerError as e:
            if e.status == 404:
                return RuntimeState(running=False)
            raise ContainerRuntimeError(f"Docker error: {e.message}", output=str(e)) from e

        running = bool(info.get("State", {}).get("Running", False))
        return RuntimeState(running=running, port_map=self.extract_port_map(info))

    async def logs(self, ref: str, max_lines: int) -> str:
        """Get the tail of the container's combined stdout/stderr."""
        docker = await self._get_docker()
        container = docker.containers.container(ref)
        try:
            lines = await container.log(stdout=True, stderr=True, tail=max_lines)
        except DockerError as e:
            raise ContainerRuntimeError(f"Docker error: {e.message}", output=str(e)) from e

        if isinstance(lines, str):
            return lines
        return "".join(lines)

    async def exec(self, ref: str, command: str, args: List[str]) -> ExecResult:
        """Run a command inside the container and collect its output."""
        docker = await self._get_docker()
        container = docker.containers.container(ref)
        cmd = [command, *args]

        try:
            exec_ = await container.exec(cmd=cmd, stdout=True, stderr=True)
            chunks: List[bytes] = []
            async with exec_.start(detach=False) as stream:
                while True:
                    message = await stream.read_out()
                    if message is None:
                        break
                    chunks.append(message.data)
            details = await exec_.inspect()

        except DockerError as e:
            logger.error(
                "Failed to exec command in container",
                container_id=ref,
                command=command,
                error=e.message,
            )
            raise ContainerRuntimeError(f"Docker error: {e.message}", output=str(e)) from e

        output = b"".join(chunks).decode("utf-8", errors="replace")
        exit_code = details.get("ExitCode")
        return ExecResult(exit_code=-1 if exit_code is None else int(exit_code), output=output)

    def build_container_config(self, request: RuntimeStartRequest) -> Dict[str, Any]:
        """Translate a start request into a Docker Engine create payload."""
        port_bindings: Dict[str, List[Dict[str, str]]] = {}
        exposed_ports: Dict[str, Dict[str, Any]] = {}
        for binding in request.ports:
            key = self._port_key(binding.container_port)
            host_port = "" if binding.host_port is None else str(binding.host_port)
            port_bindings[key] = [{"HostPort": host_port}]
            exposed_ports[key] = {}

        host_config: Dict[str, Any] = {"PortBindings": port_bindings}
        if request.cpu_limit:
            host_config["NanoCpus"] = self._parse_cpus(request.cpu_limit)
        if request.memory_limit:
            host_config["Memory"] = self._parse_memory(request.memory_limit)

        config: Dict[str, Any] = {
            "Image": request.image,
            "Env": [f"{k}={v}" for k, v in request.env.items()],
            "ExposedPorts": exposed_ports,
            "Labels": dict(request.labels),
            "HostConfig": host_config,
        }
        if request.args:
            # Appended after the image, like `docker run IMAGE ARG`
            config["Cmd"] = list(request.args)

        return config

    def extract_port_map(self, container_info: Dict[str, Any]) -> Dict[str, int]:
        """Map container ports (without protocol) to published host ports."""
        port_map: Dict[str, int] = {}
        ports = container_info.get("NetworkSettings", {}).get("Ports") or {}
        for container_port, host_bindings in ports.items():
            if not host_bindings:
                continue
            port_num = container_port.split("/")[0]
            for binding in host_bindings:
                host_port = binding.get("HostPort")
                if host_port:
                    port_map[port_num] = int(host_port)
                    break
        return port_map

    @staticmethod
    def _port_key(container_port: str) -> str:
        return container_port if "/" in container_port else f"{container_port}/tcp"

    def _parse_cpus(self, cpus: str) -> int:
        """Parse a fractional CPU count ("0.5") to NanoCpus."""
        try:
            return int(float(cpus) * 1_000_000_000)
        except ValueError as e:
            raise ContainerRuntimeError(f"Invalid CPU limit: {cpus}") from e

    def _parse_memory(self, memory: str) -> int:
        """Parse memory string to bytes."""
        if isinstance(memory, int):
            return memory

        memory = memory.strip().lower()
        multipliers = {
            "b": 1,
            "k": 1024,
            "kb": 1024,
            "m": 1024 ** 2,
            "mb": 1024 ** 2,
            "g": 1024 ** 3,
            "gb": 1024 ** 3,
        }

        try:
            for suffix, multiplier in sorted(multipliers.items(), key=lambda x: -len(x[0])):
                if memory.endswith(suffix):
                    return int(float(memory[:-len(suffix)]) * multiplier)
            return int(memory)
        except ValueError as e:
            raise ContainerRuntimeError(f"Invalid memory limit: {memory}") from e
