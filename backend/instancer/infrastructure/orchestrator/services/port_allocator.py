"""
Port Allocator - Exclusive host ports from a configured range

A port is in use when a running instance has it in its port map or when it
was handed out in this process and not yet released. Candidates may also be
checked with a socket bind so ports taken by unrelated host services are
skipped.
"""

import asyncio
import socket
from typing import Awaitable, Callable, List, Set

import structlog

from ..models import PortPoolExhausted

logger = structlog.get_logger(__name__)


class PoolPortAllocator:
    """
    PortAllocator over a fixed range.

    Reservations are held until the instance manager releases them, which
    it does once the instance row (carrying the ports) is persisted or the
    create has failed.
    """

    def __init__(
        self,
        used_ports: Callable[[], Awaitable[Set[int]]],
        start: int = 49152,
        end: int = 65535,
        check_host: bool = True,
    ):
        if start > end:
            raise ValueError("Port range start must not exceed end")
        self._used_ports = used_ports
        self.start = start
        self.end = end
        self.check_host = check_host
        self._reserved: Set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def reserved(self) -> Set[int]:
        return set(self._reserved)

    async def allocate(self, count: int) -> List[int]:
        if count <= 0:
            return []

        async with self._lock:
            taken = await self._used_ports() | self._reserved
            picked: List[int] = []

            for port in range(self.start, self.end + 1):
                if port in taken:
                    continue
                if self.check_host and not await asyncio.to_thread(self._is_bindable, port):
                    continue
                picked.append(port)
                if len(picked) == count:
                    break

            if len(picked) < count:
                logger.warning(
                    "Port pool exhausted",
                    requested=count,
                    available=len(picked),
                    range_start=self.start,
                    range_end=self.end,
                )
                raise PortPoolExhausted(count, len(picked))

            self._reserved.update(picked)

        logger.debug("Ports allocated", ports=picked)
        return picked

    async def release(self, ports: List[int]) -> None:
        async with self._lock:
            self._reserved.difference_update(ports)

    @staticmethod
    def _is_bindable(port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("0.0.0.0", port))
            except OSError:
                return False
        return True
