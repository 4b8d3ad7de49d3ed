"""
Test doubles and seed data for instance lifecycle tests.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from instancer.core.config import OrchestratorConfig, Settings
from instancer.infrastructure.database import DatabaseManager
from instancer.infrastructure.models import (
    ContestChallengeRow,
    ContestOrganizationRow,
    ContestRow,
    ContestTeamRow,
    TeamRow,
    TeamSolveRow,
    UserRow,
)
from instancer.infrastructure.orchestrator import (
    AuditSink,
    ContainerRuntimeError,
    ExecResult,
    FlagProvisioner,
    InstanceManager,
    PoolPortAllocator,
    RuntimeHandle,
    RuntimeStartRequest,
    RuntimeState,
    SweepCoordinator,
)
from instancer.infrastructure.repositories import (
    AuditRepository,
    CatalogRepository,
    FlagRepository,
    InstanceRepository,
)

# Users
ALICE = 1
BOB = 2  # Alice's teammate
CAROL = 3  # other team
DAVE = 4  # no team
ADMIN = 9

# Teams
TEAM_ALPHA = 1
TEAM_BRAVO = 2
TEAM_CHARLIE = 3  # pending in contest 1

# Contests
CONTEST = 1
AWDF_CONTEST = 2

# Challenges of CONTEST
WEB = 101  # one port, flag in FLAG env
PWN = 102  # flag as trailing argument
NO_IMAGE = 103
SCRIPTED = 104  # flag injected by script after start
SSH_BOX = 105  # generated SSH password
HIDDEN = 106  # not public
# Challenge of AWDF_CONTEST
AWDF_BOX = 201

START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class MutableClock:
    """Controllable replacement for utc_now."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeRuntime:
    """
    Recording ContainerRuntime.

    Containers "run" until stopped. Runtime-assigned ports show up on the
    handle unless ``publish_on_inspect`` is set, in which case they appear
    only after that many inspect calls.
    """

    def __init__(self, start_delay: float = 0.0, publish_on_inspect: Optional[int] = None):
        self.start_delay = start_delay
        self.publish_on_inspect = publish_on_inspect
        self.fail_start: Optional[Exception] = None
        self.failing_stops: Set[str] = set()
        self.exec_result = ExecResult(exit_code=0, output="")
        self.log_text = "booting\nready\n"

        self.started: List[RuntimeStartRequest] = []
        self.stopped: List[str] = []
        self.execs: List[Tuple[str, str, List[str]]] = []
        self.log_requests: List[Tuple[str, int]] = []
        self.running: Dict[str, RuntimeStartRequest] = {}
        self.inspect_calls = 0
        self._counter = 0

    async def start(self, request: RuntimeStartRequest) -> RuntimeHandle:
        self.started.append(request)
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.fail_start is not None:
            raise self.fail_start

        self._counter += 1
        ref = f"{self._counter:012x}"
        self.running[ref] = request

        port_map = {b.container_port: b.host_port for b in request.ports if b.host_port is not None}
        if not port_map and request.ports and self.publish_on_inspect is None:
            port_map = self._assigned_ports(request)
        return RuntimeHandle(ref=ref, port_map=port_map)

    async def stop(self, ref: str) -> None:
        if ref in self.failing_stops:
            raise ContainerRuntimeError("Docker error: device busy", output="cannot remove")
        self.stopped.append(ref)
        self.running.pop(ref, None)

    async def inspect(self, ref: str) -> RuntimeState:
        self.inspect_calls += 1
        request = self.running.get(ref)
        if request is None:
            return RuntimeState(running=False)
        if self.publish_on_inspect is not None and self.inspect_calls < self.publish_on_inspect:
            return RuntimeState(running=True)
        return RuntimeState(running=True, port_map=self._assigned_ports(request))

    async def logs(self, ref: str, max_lines: int) -> str:
        self.log_requests.append((ref, max_lines))
        return self.log_text

    async def exec(self, ref: str, command: str, args: List[str]) -> ExecResult:
        self.execs.append((ref, command, list(args)))
        return self.exec_result

    @staticmethod
    def _assigned_ports(request: RuntimeStartRequest) -> Dict[str, int]:
        return {b.container_port: 32768 + i for i, b in enumerate(request.ports)}


def catalog_rows() -> List[Any]:
    """Users, teams, contests and challenges shared by most tests."""
    return [
        TeamRow(id=TEAM_ALPHA, name="Alpha", organization_id=10),
        TeamRow(id=TEAM_BRAVO, name="Bravo", organization_id=20),
        TeamRow(id=TEAM_CHARLIE, name="Charlie", organization_id=10),
        UserRow(id=ALICE, display_name="alice", team_id=TEAM_ALPHA),
        UserRow(id=BOB, display_name="bob", team_id=TEAM_ALPHA),
        UserRow(id=CAROL, display_name="carol", team_id=TEAM_BRAVO),
        UserRow(id=DAVE, display_name="dave", team_id=None),
        UserRow(id=ADMIN, display_name="root", team_id=None, is_admin=True),
        ContestRow(id=CONTEST, name="Autumn CTF", mode="jeopardy", flag_format="ctf{[GUID]}"),
        ContestRow(id=AWDF_CONTEST, name="Defense Cup", mode="awd-f"),
        ContestTeamRow(contest_id=CONTEST, team_id=TEAM_ALPHA, status="approved"),
        ContestTeamRow(contest_id=CONTEST, team_id=TEAM_BRAVO, status="approved"),
        ContestTeamRow(contest_id=CONTEST, team_id=TEAM_CHARLIE, status="pending"),
        ContestChallengeRow(
            id=WEB, contest_id=CONTEST, title="Web 1", status="public",
            docker_image="ctf/web:latest", ports=["80"], cpu_limit="0.5", memory_limit="256m",
        ),
        ContestChallengeRow(
            id=PWN, contest_id=CONTEST, title="Pwn 1", status="public",
            docker_image="ctf/pwn:latest", ports=["9999"], flag_env="CMDARG",
        ),
        ContestChallengeRow(
            id=NO_IMAGE, contest_id=CONTEST, title="Broken", status="public",
            docker_image="  ", ports=["80"],
        ),
        ContestChallengeRow(
            id=SCRIPTED, contest_id=CONTEST, title="Scripted", status="public",
            docker_image="ctf/scripted:latest", ports=[], flag_script="/opt/set_flag.sh",
        ),
        ContestChallengeRow(
            id=SSH_BOX, contest_id=CONTEST, title="Shell", status="public",
            docker_image="ctf/ssh:latest", ports=["22"], ssh_password_env="ROOT_PASSWORD",
        ),
        ContestChallengeRow(
            id=HIDDEN, contest_id=CONTEST, title="Hidden", status="hidden",
            docker_image="ctf/hidden:latest", ports=["80"],
        ),
        ContestChallengeRow(
            id=AWDF_BOX, contest_id=AWDF_CONTEST, title="Defend me", status="public",
            docker_image="ctf/awdf:latest", ports=["80"],
        ),
    ]


async def seed(db: DatabaseManager, *rows: Any) -> None:
    async with db.session() as session:
        session.add_all(list(rows))
        await session.commit()


async def update_row(db: DatabaseManager, model, key: Any, **values: Any) -> None:
    async with db.session() as session:
        row = await session.get(model, key)
        for name, value in values.items():
            setattr(row, name, value)
        await session.commit()


def make_settings(db_path: Path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{db_path}",
        "database_auto_create": True,
        "auto_destroy_expired": False,
        "port_check_host": False,
        "port_range_start": 50000,
        "port_range_end": 50100,
        "port_discovery_backoff": 0.0,
        "flag_script_delay_seconds": 0.0,
        "log_format": "console",
        "trusted_user_header": "X-User-Id",
    }
    values.update(overrides)
    return Settings(**values)


@dataclass
class Harness:
    """Every orchestrator component wired over a temporary SQLite database."""
    db: DatabaseManager
    runtime: FakeRuntime
    clock: MutableClock
    instances: InstanceRepository
    catalog: CatalogRepository
    flag_repo: FlagRepository
    audit_repo: AuditRepository
    audit: AuditSink
    flags: FlagProvisioner
    manager: InstanceManager
    sweeper: SweepCoordinator
    allocator: Optional[PoolPortAllocator] = None
    extra_managers: List[InstanceManager] = field(default_factory=list)

    def second_manager(self, runtime: Optional[FakeRuntime] = None) -> InstanceManager:
        """Another manager over the same database, as a separate process would have."""
        manager = InstanceManager(
            self.manager.config,
            self.instances,
            self.catalog,
            self.flags,
            runtime or self.runtime,
            self.audit,
            port_allocator=None,
            clock=self.clock,
        )
        self.extra_managers.append(manager)
        return manager

    async def close(self) -> None:
        await self.audit.drain()
        await self.db.disconnect()


async def build_harness(
    db_path: Path,
    runtime: Optional[FakeRuntime] = None,
    use_allocator: bool = True,
    seed_catalog: bool = True,
    config: Optional[OrchestratorConfig] = None,
    **settings_overrides: Any,
) -> Harness:
    settings = make_settings(db_path, **settings_overrides)
    db = DatabaseManager(settings)
    await db.connect()
    await db.create_all()
    if seed_catalog:
        await seed(db, *catalog_rows())

    if config is None:
        config = OrchestratorConfig.from_settings(settings)
    runtime = runtime or FakeRuntime()
    clock = MutableClock()

    instances = InstanceRepository(db)
    catalog = CatalogRepository(db)
    flag_repo = FlagRepository(db)
    audit_repo = AuditRepository(db)
    audit = AuditSink(audit_repo)
    flags = FlagProvisioner(flag_repo, catalog, default_format=settings.default_flag_format)

    allocator = None
    if use_allocator:
        allocator = PoolPortAllocator(
            instances.used_host_ports,
            start=settings.port_range_start,
            end=settings.port_range_end,
            check_host=False,
        )

    manager = InstanceManager(
        config,
        instances,
        catalog,
        flags,
        runtime,
        audit,
        port_allocator=allocator,
        clock=clock,
    )
    sweeper = SweepCoordinator(manager, sweep_timeout=settings.sweep_timeout)

    return Harness(
        db=db,
        runtime=runtime,
        clock=clock,
        instances=instances,
        catalog=catalog,
        flag_repo=flag_repo,
        audit_repo=audit_repo,
        audit=audit,
        flags=flags,
        manager=manager,
        sweeper=sweeper,
        allocator=allocator,
    )


def run_scenario(
    db_path: Path,
    scenario: Callable[[Harness], Awaitable[Any]],
    **harness_kwargs: Any,
) -> Any:
    """Build a harness, run the scenario on a fresh event loop, clean up."""

    async def main():
        harness = await build_harness(db_path, **harness_kwargs)
        try:
            return await scenario(harness)
        finally:
            await harness.close()

    return asyncio.run(main())


def with_config(harness_config: OrchestratorConfig, **changes: Any) -> OrchestratorConfig:
    return replace(harness_config, **changes)


__all__ = [
    "ALICE",
    "BOB",
    "CAROL",
    "DAVE",
    "ADMIN",
    "TEAM_ALPHA",
    "TEAM_BRAVO",
    "TEAM_CHARLIE",
    "CONTEST",
    "AWDF_CONTEST",
    "WEB",
    "PWN",
    "NO_IMAGE",
    "SCRIPTED",
    "SSH_BOX",
    "HIDDEN",
    "AWDF_BOX",
    "START",
    "ContestOrganizationRow",
    "ContestRow",
    "ContestChallengeRow",
    "TeamSolveRow",
    "FakeRuntime",
    "Harness",
    "MutableClock",
    "build_harness",
    "catalog_rows",
    "make_settings",
    "run_scenario",
    "seed",
    "update_row",
    "with_config",
]
