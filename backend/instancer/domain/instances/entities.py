"""
Instancer - Instance Domain Entities
Sandbox instances, challenge runtime specs and contest policies
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# Markers in a challenge's flag env list meaning "pass the flag as argv"
CMDARG_MARKERS = frozenset({"CMDARG", "$1"})
DEFAULT_FLAG_ENV = "FLAG"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class InstanceStatus(str, Enum):
    """Instance lifecycle statuses. DESTROYED is terminal."""
    RUNNING = "running"
    DESTROYED = "destroyed"


class ContestMode(str, Enum):
    """Contest formats."""
    JEOPARDY = "jeopardy"
    AWD = "awd"
    AWD_F = "awd-f"

    @property
    def allows_manual_instances(self) -> bool:
        # AWD-F instances are provisioned by the platform at contest start
        return self is not ContestMode.AWD_F


@dataclass
class ContestPolicy:
    """Per-contest settings the orchestrator consults."""
    id: int
    name: str = ""
    mode: ContestMode = ContestMode.JEOPARDY
    container_limit: Optional[int] = None
    flag_format: Optional[str] = None
    instance_ttl_minutes: Optional[int] = None
    organization_ids: List[int] = field(default_factory=list)

    @property
    def has_organization_limit(self) -> bool:
        return bool(self.organization_ids)

    def admits_organization(self, organization_id: Optional[int]) -> bool:
        """A team qualifies if no allow-list is set or its organization is on it."""
        if not self.organization_ids:
            return True
        return organization_id in self.organization_ids


@dataclass
class FlagInjection:
    """How a flag reaches the sandbox."""
    env_vars: List[str] = field(default_factory=list)
    as_argument: bool = False
    script: Optional[str] = None

    @classmethod
    def parse(cls, flag_env: Optional[str], flag_script: Optional[str] = None) -> "FlagInjection":
        """
        Build from the catalog's comma-separated env list.

        ``CMDARG`` or ``$1`` in the list means the flag is appended as the
        trailing process argument. With nothing declared at all, the flag
        goes into ``FLAG``.
        """
        env_vars: List[str] = []
        as_argument = False
        for name in (flag_env or "").split(","):
            name = name.strip()
            if not name:
                continue
            if name in CMDARG_MARKERS:
                as_argument = True
            elif name not in env_vars:
                env_vars.append(name)

        script = (flag_script or "").strip() or None
        if not env_vars and not as_argument and script is None:
            env_vars = [DEFAULT_FLAG_ENV]
        return cls(env_vars=env_vars, as_argument=as_argument, script=script)


@dataclass
class ChallengeSpec:
    """Runtime description of a contest challenge, read from the catalog."""
    id: int
    contest_id: int
    title: str = ""
    image: Optional[str] = None
    ports: List[str] = field(default_factory=list)
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    injection: FlagInjection = field(default_factory=FlagInjection)
    container_limit: Optional[int] = None
    ssh_password_env: Optional[str] = None

    @property
    def has_image(self) -> bool:
        return bool(self.image and self.image.strip())


@dataclass
class UserInfo:
    """Identity details consumed from the user directory."""
    id: int
    display_name: str = ""
    team_id: Optional[int] = None
    is_admin: bool = False


@dataclass
class Instance:
    """
    One sandbox deployment for one (team, challenge) pair.

    At most one RUNNING instance exists per pair; destroyed rows are kept
    as history.
    """
    team_id: int
    contest_id: int
    challenge_id: int
    runtime_ref: str
    display_name: str
    expires_at: datetime
    created_by: Optional[int] = None
    id: Optional[int] = None
    port_map: Dict[str, int] = field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.RUNNING
    credentials: Optional[Dict[str, str]] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: Optional[datetime] = None

    def remaining(self, now: Optional[datetime] = None) -> float:
        """Seconds until expiry; negative once expired."""
        now = now or utc_now()
        return (as_utc(self.expires_at) - now).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.remaining(now) < 0


@dataclass
class InstanceDescriptor:
    """Result of a successful create."""
    id: int
    runtime_ref: str
    display_name: str
    port_map: Dict[str, int]
    expires_at: datetime
    ttl_seconds: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance_id": self.id,
            "container_id": self.runtime_ref,
            "container_name": self.display_name,
            "ports": {k: str(v) for k, v in self.port_map.items()},
            "expires_at": self.expires_at.isoformat(),
            "ttl": self.ttl_seconds,
        }


@dataclass
class InstanceView:
    """What a team member sees when looking up their instance."""
    instance: Instance
    ttl_seconds: int
    is_owner: bool
    creator_name: str = ""
    credentials: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        inst = self.instance
        data: Dict[str, Any] = {
            "id": inst.id,
            "team_id": inst.team_id,
            "contest_id": inst.contest_id,
            "challenge_id": inst.challenge_id,
            "container_id": inst.runtime_ref,
            "container_name": inst.display_name,
            "ports": {k: str(v) for k, v in inst.port_map.items()},
            "status": inst.status.value,
            "expires_at": as_utc(inst.expires_at).isoformat(),
            "ttl": self.ttl_seconds,
            "created_at": as_utc(inst.created_at).isoformat() if inst.created_at else None,
            "is_owner": self.is_owner,
            "creator_name": self.creator_name,
        }
        if self.credentials:
            data["credentials"] = self.credentials
        return data


@dataclass
class ExtendResult:
    """Outcome of a successful renewal."""
    expires_at: datetime
    ttl_seconds: int
    extended_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": f"Extended by {self.extended_minutes} minutes",
            "expires_at": self.expires_at.isoformat(),
            "ttl": self.ttl_seconds,
        }


@dataclass
class SweepReport:
    """Counts from a bulk reclamation pass."""
    cleaned: int = 0
    failed: int = 0
    skipped: int = 0
    destroyed_ids: List[int] = field(default_factory=list)
    failed_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": f"Done: {self.cleaned} destroyed, {self.failed} failed",
            "cleaned": self.cleaned,
            "failed": self.failed,
            "skipped": self.skipped,
            "destroyed_ids": self.destroyed_ids,
            "failed_ids": self.failed_ids,
        }
