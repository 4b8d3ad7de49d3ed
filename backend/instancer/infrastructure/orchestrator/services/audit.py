"""
Audit Sink - Fire-and-forget lifecycle events into system_logs
"""

import asyncio
from enum import Enum
from typing import Any, Dict, Optional, Set

import structlog

from instancer.infrastructure.repositories import AuditRepository

logger = structlog.get_logger(__name__)


class AuditEventType(str, Enum):
    CONTAINER_CREATE = "container_create"
    CONTAINER_DESTROY = "container_destroy"
    CONTAINER_EXTEND = "container_extend"


class AuditLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class AuditSink:
    """
    Records audit events without blocking the caller.

    Each event is written by its own task. Write failures are logged and
    never propagate.
    """

    def __init__(self, repository: AuditRepository):
        self.repository = repository
        self._pending: Set[asyncio.Task] = set()

    def record(
        self,
        event_type: AuditEventType,
        level: AuditLevel,
        message: str,
        actor_id: Optional[int] = None,
        team_id: Optional[int] = None,
        contest_id: Optional[int] = None,
        challenge_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        fields = {
            "type": AuditEventType(event_type).value,
            "level": AuditLevel(level).value,
            "user_id": actor_id,
            "team_id": team_id,
            "contest_id": contest_id,
            "challenge_id": challenge_id,
            "ip_address": source_ip,
            "message": message,
            "details": details,
        }
        task = asyncio.create_task(self._write(fields))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, fields: Dict[str, Any]) -> None:
        try:
            await self.repository.insert(**fields)
        except Exception as e:
            logger.error(
                "Failed to record audit event",
                event_type=fields["type"],
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
