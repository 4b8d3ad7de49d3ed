"""
Instance Manager - Lifecycle management for per-team challenge sandboxes

Handles:
- Create with team limits, flag injection and port allocation
- Conflict resolution through the one-running-per-(team, challenge) index
- Rollback of runtime resources and ports on every failed create
- Owner-checked destroy, renewal inside the trailing window
- Admin views: listing, stats and runtime logs
"""

import asyncio
import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from instancer.core.config import OrchestratorConfig
from instancer.core.exceptions import (
    AlreadyExists,
    ChallengeNotFound,
    ConfirmationRequired,
    ContestNotFound,
    InstanceError,
    LimitReached,
    ManualCreateForbidden,
    NoInstance,
    NoTeam,
    NotInRenewalWindow,
    NotOwner,
    OwnedByTeammate,
    PersistenceFailed,
    PortAllocationFailed,
    RuntimeSpecMissing,
    RuntimeStartFailed,
)
from instancer.domain.instances import (
    ChallengeSpec,
    ContestPolicy,
    ExpirationPolicy,
    ExtendResult,
    Instance,
    InstanceDescriptor,
    InstanceView,
    UserInfo,
    utc_now,
)
from instancer.infrastructure.repositories import CatalogRepository, InstanceRepository

from ..models import (
    ContainerRuntime,
    ContainerRuntimeError,
    PortAllocator,
    PortBinding,
    PortPoolExhausted,
    RuntimeStartRequest,
)
from .audit import AuditEventType, AuditLevel, AuditSink
from .flag_provisioner import FlagProvisioner

logger = structlog.get_logger(__name__)

DEFAULT_LOG_LINES = 100
MAX_LOG_LINES = 500

# Credentials handed out for challenges that expose an SSH login
SSH_USER = "root"
SSH_PORT = "22"

DisclosurePredicate = Callable[[Instance], Awaitable[bool]]


class PortsPending(Exception):
    """Runtime has not published the container's ports yet."""


def clamp_log_lines(lines: Optional[int]) -> int:
    if lines is None or lines <= 0:
        return DEFAULT_LOG_LINES
    return min(lines, MAX_LOG_LINES)


class InstanceManager:
    """
    Central manager for the instance lifecycle.

    The partial unique index on running instances is the cross-process
    serialization point; creates for one team are also serialized in this
    process so the limit check and the insert see a consistent count.
    """

    def __init__(
        self,
        config: OrchestratorConfig,
        instances: InstanceRepository,
        catalog: CatalogRepository,
        flags: FlagProvisioner,
        runtime: ContainerRuntime,
        audit: AuditSink,
        port_allocator: Optional[PortAllocator] = None,
        disclosure: Optional[DisclosurePredicate] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.instances = instances
        self.catalog = catalog
        self.flags = flags
        self.runtime = runtime
        self.audit = audit
        self.port_allocator = port_allocator
        self.expiration = ExpirationPolicy(config)
        self._disclosure = disclosure or self._team_has_solved
        self.clock = clock

        self._team_locks: Dict[int, asyncio.Lock] = {}
        self._team_lock_users: Dict[int, int] = {}

    @asynccontextmanager
    async def _team_lock(self, team_id: int) -> AsyncIterator[None]:
        """Hold the create-lock for a team; dropped once nobody uses it."""
        lock = self._team_locks.setdefault(team_id, asyncio.Lock())
        self._team_lock_users[team_id] = self._team_lock_users.get(team_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._team_lock_users[team_id] -= 1
            if self._team_lock_users[team_id] == 0:
                del self._team_lock_users[team_id]
                del self._team_locks[team_id]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: int,
        contest_id: int,
        challenge_id: int,
        force_destroy_existing: bool = False,
        source_ip: Optional[str] = None,
    ) -> InstanceDescriptor:
        """
        Start a sandbox for the user's team.

        Args:
            user_id: Requesting user
            contest_id: Contest the challenge belongs to
            challenge_id: Contest challenge to deploy
            force_destroy_existing: Replace the requester's own instance when
                the team is at its limit
            source_ip: Client address, recorded in the audit trail only

        Returns:
            InstanceDescriptor of the new running instance
        """
        user = await self._require_team_member(user_id)

        async with self._team_lock(user.team_id):
            return await self._create_locked(
                user,
                contest_id,
                challenge_id,
                force_destroy_existing,
                source_ip,
            )

    async def _create_locked(
        self,
        user: UserInfo,
        contest_id: int,
        challenge_id: int,
        force: bool,
        source_ip: Optional[str],
    ) -> InstanceDescriptor:
        team_id = user.team_id

        existing = await self.instances.get_running(team_id, challenge_id)
        if existing is not None:
            raise await self._conflict_error(existing, user.id)

        contest = await self.catalog.get_contest(contest_id)
        if contest is None:
            raise ContestNotFound(contest_id)

        if not contest.mode.allows_manual_instances:
            raise ManualCreateForbidden(contest.mode.value)

        spec = await self.catalog.get_challenge(contest_id, challenge_id)
        if spec is None:
            raise ChallengeNotFound(challenge_id)
        if not spec.has_image:
            raise RuntimeSpecMissing(challenge_id)
        await self._enforce_challenge_limit(spec)

        # May retire the requester's own instance, so every rejection comes first
        await self._enforce_team_limit(user, contest, force, source_ip)

        flag = await self.flags.get_or_create(team_id, contest_id, challenge_id, contest)

        host_ports = await self._allocate_ports(len(spec.ports))
        try:
            instance = await self._launch(user, contest, spec, flag, host_ports, source_ip)
        finally:
            if host_ports:
                await self.port_allocator.release(host_ports)

        ttl = self.expiration.ttl_seconds(instance.expires_at, self.clock())

        logger.info(
            "Instance created",
            instance_id=instance.id,
            team_id=team_id,
            challenge_id=challenge_id,
            container_id=instance.runtime_ref,
        )
        self.audit.record(
            AuditEventType.CONTAINER_CREATE,
            AuditLevel.SUCCESS,
            f"{user.display_name} started an instance of [{spec.title}]",
            actor_id=user.id,
            team_id=team_id,
            contest_id=contest_id,
            challenge_id=challenge_id,
            source_ip=source_ip,
            details={"container_id": instance.runtime_ref, "ports": instance.port_map},
        )

        return InstanceDescriptor(
            id=instance.id,
            runtime_ref=instance.runtime_ref,
            display_name=instance.display_name,
            port_map=instance.port_map,
            expires_at=instance.expires_at,
            ttl_seconds=ttl,
        )

    async def _launch(
        self,
        user: UserInfo,
        contest: ContestPolicy,
        spec: ChallengeSpec,
        flag: str,
        host_ports: List[int],
        source_ip: Optional[str],
    ) -> Instance:
        """Start the workload and persist it. Must hold the team lock."""
        team_id = user.team_id
        request, credentials = self._build_start_request(team_id, spec, flag, host_ports)

        logger.info(
            "Starting instance",
            team_id=team_id,
            challenge_id=spec.id,
            request=request.to_dict(),
        )

        try:
            handle = await asyncio.wait_for(
                self.runtime.start(request),
                timeout=self.config.create_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("Instance start timeout", name=request.name)
            await self._teardown_ref(request.name)
            raise RuntimeStartFailed("Timed out starting the container") from e
        except asyncio.CancelledError:
            await self._teardown_ref(request.name)
            raise
        except Exception as e:
            diagnostics = e.diagnostics() if isinstance(e, ContainerRuntimeError) else str(e)
            logger.error("Instance start failed", name=request.name, error=diagnostics)
            await self._teardown_ref(request.name)
            self.audit.record(
                AuditEventType.CONTAINER_CREATE,
                AuditLevel.ERROR,
                f"Failed to start an instance of [{spec.title}]",
                actor_id=user.id,
                team_id=team_id,
                contest_id=contest.id,
                challenge_id=spec.id,
                source_ip=source_ip,
                details={"error": diagnostics},
            )
            raise RuntimeStartFailed(diagnostics) from e

        # The container is running from here on; any failure below removes it
        try:
            if host_ports:
                port_map = {p: host for p, host in zip(spec.ports, host_ports)}
            elif handle.port_map or not spec.ports:
                port_map = dict(handle.port_map)
            else:
                port_map = await self._discover_ports(handle.ref)

            if spec.injection.script:
                await self._run_flag_script(user, contest, spec, handle.ref, flag, source_ip)

            now = self.clock()
            instance = Instance(
                team_id=team_id,
                contest_id=contest.id,
                challenge_id=spec.id,
                runtime_ref=handle.ref,
                display_name=request.name,
                port_map=port_map,
                credentials=credentials,
                expires_at=self.expiration.initial_expiry(contest, now),
                created_by=user.id,
                created_at=now,
            )
            stored, created = await self.instances.insert_running(instance)
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error("Failed to persist instance", name=request.name, error=str(e))
            await self._teardown_ref(handle.ref)
            raise PersistenceFailed(str(e)) from e
        except BaseException:
            logger.error("Create aborted after start", name=request.name, container_id=handle.ref)
            await self._teardown_ref(handle.ref)
            raise

        if not created:
            logger.info(
                "Lost create race, removing own container",
                team_id=team_id,
                challenge_id=spec.id,
                winner_id=stored.id,
            )
            await self._teardown_ref(handle.ref)
            raise await self._conflict_error(stored, user.id)

        return stored

    def _build_start_request(
        self,
        team_id: int,
        spec: ChallengeSpec,
        flag: str,
        host_ports: List[int],
    ):
        name = (
            f"{self.config.container_name_prefix}_{team_id}_{spec.id}_"
            f"{int(self.clock().timestamp())}"
        )

        if host_ports:
            bindings = [PortBinding(p, host) for p, host in zip(spec.ports, host_ports)]
        else:
            bindings = [PortBinding(p) for p in spec.ports]

        env = {var: flag for var in spec.injection.env_vars}
        credentials = None
        if spec.ssh_password_env:
            password = secrets.token_urlsafe(12)
            env[spec.ssh_password_env] = password
            credentials = {"user": SSH_USER, "password": password, "port": SSH_PORT}

        request = RuntimeStartRequest(
            name=name,
            image=spec.image.strip(),
            ports=bindings,
            env=env,
            args=[flag] if spec.injection.as_argument else [],
            labels={
                "instancer.type": "team",
                "instancer.team_id": str(team_id),
                "instancer.contest_id": str(spec.contest_id),
                "instancer.challenge_id": str(spec.id),
            },
            cpu_limit=spec.cpu_limit or None,
            memory_limit=spec.memory_limit or None,
        )
        return request, credentials

    async def _enforce_team_limit(
        self,
        user: UserInfo,
        contest: ContestPolicy,
        force: bool,
        source_ip: Optional[str],
    ) -> None:
        limit = contest.container_limit
        if limit is None:
            limit = self.config.default_container_limit
        if limit <= 0:
            return

        running = await self.instances.count_running_for_team(user.team_id, contest.id)
        if running < limit:
            return

        own = await self.instances.oldest_running_owned_by(user.team_id, contest.id, user.id)
        if own is None:
            raise LimitReached(limit)

        if not force:
            title = await self.catalog.challenge_title(own.challenge_id)
            raise ConfirmationRequired(title, own.challenge_id)

        logger.info(
            "Replacing own instance to stay within team limit",
            instance_id=own.id,
            team_id=user.team_id,
            limit=limit,
        )
        await self._retire(own, actor_id=user.id, source_ip=source_ip, reason="replaced")

    async def _enforce_challenge_limit(self, spec: ChallengeSpec) -> None:
        if not spec.container_limit or spec.container_limit <= 0:
            return
        running = await self.instances.count_running_for_challenge(spec.contest_id, spec.id)
        if running >= spec.container_limit:
            raise LimitReached(
                spec.container_limit,
                message=f"This challenge allows at most {spec.container_limit} running instances",
            )

    async def _allocate_ports(self, count: int) -> List[int]:
        if count == 0 or self.port_allocator is None:
            return []
        try:
            return await asyncio.wait_for(
                self.port_allocator.allocate(count),
                timeout=self.config.port_allocation_timeout,
            )
        except PortPoolExhausted as e:
            raise PortAllocationFailed(str(e)) from e
        except asyncio.TimeoutError as e:
            raise PortAllocationFailed("timed out") from e

    async def _discover_ports(self, ref: str) -> Dict[str, int]:
        """Poll the runtime for published ports. Best effort: {} on failure."""
        try:
            async for attempt in AsyncRetrying(
                stop=(
                    stop_after_attempt(self.config.port_discovery_attempts)
                    | stop_after_delay(self.config.port_discovery_deadline)
                ),
                wait=wait_exponential(multiplier=self.config.port_discovery_backoff, max=2),
                retry=retry_if_exception_type((PortsPending, asyncio.TimeoutError)),
                reraise=True,
            ):
                with attempt:
                    state = await asyncio.wait_for(
                        self.runtime.inspect(ref),
                        timeout=self.config.inspect_timeout,
                    )
                    if state.port_map or not state.running:
                        return dict(state.port_map)
                    raise PortsPending(ref)
        except Exception as e:
            logger.warning("Port discovery gave up", container_id=ref, error=repr(e))
        return {}

    async def _run_flag_script(
        self,
        user: UserInfo,
        contest: ContestPolicy,
        spec: ChallengeSpec,
        ref: str,
        flag: str,
        source_ip: Optional[str],
    ) -> None:
        """Inject the flag after start. Failures are reported, never fatal."""
        await asyncio.sleep(self.config.flag_script_delay)
        error: Optional[str] = None
        try:
            result = await asyncio.wait_for(
                self.runtime.exec(ref, "sh", [spec.injection.script, flag]),
                timeout=self.config.exec_timeout,
            )
            if not result.ok:
                error = f"exit code {result.exit_code}: {result.output}"
        except asyncio.TimeoutError:
            error = "timed out"
        except ContainerRuntimeError as e:
            error = e.diagnostics()
        except Exception as e:
            error = repr(e)

        if error is None:
            logger.debug("Flag script executed", container_id=ref)
            return

        logger.warning("Flag script failed", container_id=ref, script=spec.injection.script, error=error)
        self.audit.record(
            AuditEventType.CONTAINER_CREATE,
            AuditLevel.WARNING,
            f"Flag script failed for [{spec.title}]",
            actor_id=user.id,
            team_id=user.team_id,
            contest_id=contest.id,
            challenge_id=spec.id,
            source_ip=source_ip,
            details={"container_id": ref, "error": error},
        )

    # ------------------------------------------------------------------
    # Get / destroy / extend
    # ------------------------------------------------------------------

    async def get(self, user_id: int, contest_id: int, challenge_id: int) -> InstanceView:
        user = await self._require_team_member(user_id)
        instance = await self._require_running(user.team_id, contest_id, challenge_id)

        is_owner = instance.created_by == user.id
        creator_name = "" if is_owner else await self.catalog.display_name(instance.created_by)

        credentials = None
        if instance.credentials and await self._disclosure(instance):
            credentials = instance.credentials

        return InstanceView(
            instance=instance,
            ttl_seconds=self.expiration.ttl_seconds(instance.expires_at, self.clock()),
            is_owner=is_owner,
            creator_name=creator_name,
            credentials=credentials,
        )

    async def destroy(
        self,
        user_id: int,
        contest_id: int,
        challenge_id: int,
        source_ip: Optional[str] = None,
    ) -> Instance:
        """Destroy the team's instance. Only its creator may, unless none is recorded."""
        user = await self._require_team_member(user_id)
        instance = await self._require_running(user.team_id, contest_id, challenge_id)

        if instance.created_by is not None and instance.created_by != user.id:
            raise NotOwner(await self.catalog.display_name(instance.created_by))

        if not await self._retire(instance, actor_id=user.id, source_ip=source_ip):
            raise NoInstance()
        return instance

    async def admin_destroy(
        self,
        instance_id: int,
        actor_id: Optional[int] = None,
        source_ip: Optional[str] = None,
    ) -> Instance:
        instance = await self.instances.get_running_by_id(instance_id)
        if instance is None:
            raise NoInstance()
        if not await self._retire(instance, actor_id=actor_id, source_ip=source_ip, reason="admin"):
            raise NoInstance()
        return instance

    async def extend(
        self,
        user_id: int,
        contest_id: int,
        challenge_id: int,
        source_ip: Optional[str] = None,
    ) -> ExtendResult:
        """Push expiry back by the configured increment, inside the renewal window."""
        user = await self._require_team_member(user_id)
        instance = await self._require_running(user.team_id, contest_id, challenge_id)

        now = self.clock()
        remaining = self.expiration.remaining(instance.expires_at, now)
        if not self.expiration.can_extend(instance.expires_at, now):
            raise NotInRenewalWindow(
                self.expiration.whole_minutes(remaining),
                self.expiration.whole_minutes(self.expiration.extend_window),
            )

        expires_at = self.expiration.extended(instance.expires_at)
        if not await self.instances.update_expiry(instance.id, expires_at):
            raise NoInstance()

        extended_minutes = self.expiration.whole_minutes(self.expiration.extend_increment)
        logger.info(
            "Instance extended",
            instance_id=instance.id,
            team_id=user.team_id,
            expires_at=expires_at.isoformat(),
        )
        self.audit.record(
            AuditEventType.CONTAINER_EXTEND,
            AuditLevel.INFO,
            f"{user.display_name} extended instance {instance.display_name} by {extended_minutes} minutes",
            actor_id=user.id,
            team_id=user.team_id,
            contest_id=instance.contest_id,
            challenge_id=instance.challenge_id,
            source_ip=source_ip,
            details={"expires_at": expires_at.isoformat()},
        )

        return ExtendResult(
            expires_at=expires_at,
            ttl_seconds=self.expiration.ttl_seconds(expires_at, now),
            extended_minutes=extended_minutes,
        )

    # ------------------------------------------------------------------
    # Destroy primitive
    # ------------------------------------------------------------------

    async def teardown(self, instance: Instance, timeout: Optional[float] = None) -> bool:
        """Stop the instance's workload. Returns False if the runtime failed."""
        try:
            await asyncio.wait_for(
                self.runtime.stop(instance.runtime_ref),
                timeout=timeout or self.config.destroy_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning("Runtime teardown timed out", instance_id=instance.id)
        except Exception as e:
            logger.warning(
                "Runtime teardown failed",
                instance_id=instance.id,
                container_id=instance.runtime_ref,
                error=str(e),
            )
        return False

    async def mark_destroyed(
        self,
        instance: Instance,
        actor_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        reason: str = "user",
    ) -> bool:
        """Flip the row to destroyed and audit it. False if it was no longer running."""
        flipped = await self.instances.mark_destroyed(instance.id)
        if not flipped:
            return False

        logger.info(
            "Instance destroyed",
            instance_id=instance.id,
            container_id=instance.runtime_ref,
            reason=reason,
        )
        self.audit.record(
            AuditEventType.CONTAINER_DESTROY,
            AuditLevel.INFO,
            f"Instance {instance.display_name} destroyed ({reason})",
            actor_id=actor_id,
            team_id=instance.team_id,
            contest_id=instance.contest_id,
            challenge_id=instance.challenge_id,
            source_ip=source_ip,
            details={"container_id": instance.runtime_ref, "reason": reason},
        )
        return True

    async def _retire(
        self,
        instance: Instance,
        actor_id: Optional[int] = None,
        source_ip: Optional[str] = None,
        reason: str = "user",
    ) -> bool:
        # Teardown is best effort here; the row flips regardless
        await self.teardown(instance)
        return await self.mark_destroyed(instance, actor_id, source_ip, reason)

    async def _teardown_ref(self, ref: str) -> None:
        """Remove a workload that never made it into the database."""
        try:
            await asyncio.wait_for(self.runtime.stop(ref), timeout=self.config.destroy_timeout)
        except Exception as e:
            logger.error("Rollback teardown failed", container=ref, error=str(e))

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def list_instances(
        self,
        status: str = "running",
        contest_id: Optional[int] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        return await self.instances.list_for_admin(status=status, contest_id=contest_id, search=search)

    async def stats(self) -> Dict[str, Any]:
        return await self.instances.stats(self.clock())

    async def logs(self, instance_id: int, lines: Optional[int] = None) -> Dict[str, Any]:
        """Tail of the runtime logs. Runtime errors are returned as the log text."""
        instance = await self.instances.get(instance_id)
        if instance is None:
            raise NoInstance()

        tail = clamp_log_lines(lines)
        try:
            text = await asyncio.wait_for(
                self.runtime.logs(instance.runtime_ref, tail),
                timeout=self.config.inspect_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Log fetch timed out", instance_id=instance_id)
            text = "Timed out fetching logs"
        except ContainerRuntimeError as e:
            logger.warning("Log fetch failed", instance_id=instance_id, error=e.message)
            text = e.diagnostics()

        return {"logs": text, "container_id": instance.runtime_ref, "lines": tail}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_team_member(self, user_id: int) -> UserInfo:
        user = await self.catalog.get_user(user_id)
        if user is None or user.team_id is None:
            raise NoTeam()
        return user

    async def _require_running(self, team_id: int, contest_id: int, challenge_id: int) -> Instance:
        instance = await self.instances.get_running(team_id, challenge_id)
        if instance is None or instance.contest_id != contest_id:
            raise NoInstance()
        return instance

    async def _conflict_error(self, existing: Instance, user_id: int) -> InstanceError:
        if existing.created_by == user_id:
            return AlreadyExists(existing.id)
        return OwnedByTeammate(await self.catalog.display_name(existing.created_by))

    async def _team_has_solved(self, instance: Instance) -> bool:
        return await self.catalog.has_solved(
            instance.team_id,
            instance.contest_id,
            instance.challenge_id,
        )
