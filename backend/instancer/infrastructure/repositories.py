"""
Instancer - Repositories
Persistence for instances, flags, audit events and catalog lookups
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import structlog
from sqlalchemy import and_, func, or_, select, update

from instancer.domain.instances.entities import (
    ChallengeSpec,
    ContestMode,
    ContestPolicy,
    FlagInjection,
    Instance,
    InstanceStatus,
    UserInfo,
    as_utc,
    utc_now,
)

from .database import DatabaseManager
from .models import (
    RUNNING_ONLY,
    ContestChallengeRow,
    ContestOrganizationRow,
    ContestRow,
    ContestTeamRow,
    SystemLogRow,
    TeamChallengeFlagRow,
    TeamInstanceRow,
    TeamRow,
    TeamSolveRow,
    UserRow,
)

logger = structlog.get_logger(__name__)


def dialect_insert(dialect_name: str, table):
    """Return an INSERT construct that supports ON CONFLICT for the dialect."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect_name}")
    return insert(table)


def _to_instance(row: TeamInstanceRow) -> Instance:
    return Instance(
        id=row.id,
        team_id=row.team_id,
        contest_id=row.contest_id,
        challenge_id=row.challenge_id,
        runtime_ref=row.container_id,
        display_name=row.container_name,
        port_map={str(k): int(v) for k, v in (row.ports or {}).items()},
        credentials=row.credentials,
        status=InstanceStatus(row.status),
        expires_at=as_utc(row.expires_at),
        created_by=row.created_by,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


class InstanceRepository:
    """Instance records. Destruction is a status flip, never a delete."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, instance_id: int) -> Optional[Instance]:
        async with self.db.session() as session:
            row = await session.get(TeamInstanceRow, instance_id)
            return _to_instance(row) if row else None

    async def get_running(self, team_id: int, challenge_id: int) -> Optional[Instance]:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(TeamInstanceRow).where(
                        TeamInstanceRow.team_id == team_id,
                        TeamInstanceRow.challenge_id == challenge_id,
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                )
            ).scalar_one_or_none()
            return _to_instance(row) if row else None

    async def get_running_by_id(self, instance_id: int) -> Optional[Instance]:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(TeamInstanceRow).where(
                        TeamInstanceRow.id == instance_id,
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                )
            ).scalar_one_or_none()
            return _to_instance(row) if row else None

    async def count_running_for_team(self, team_id: int, contest_id: int) -> int:
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(func.count()).select_from(TeamInstanceRow).where(
                        TeamInstanceRow.team_id == team_id,
                        TeamInstanceRow.contest_id == contest_id,
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                )
            ).scalar_one()

    async def count_running_for_challenge(self, contest_id: int, challenge_id: int) -> int:
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(func.count()).select_from(TeamInstanceRow).where(
                        TeamInstanceRow.contest_id == contest_id,
                        TeamInstanceRow.challenge_id == challenge_id,
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                )
            ).scalar_one()

    async def oldest_running_owned_by(
        self,
        team_id: int,
        contest_id: int,
        user_id: int,
    ) -> Optional[Instance]:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(TeamInstanceRow)
                    .where(
                        TeamInstanceRow.team_id == team_id,
                        TeamInstanceRow.contest_id == contest_id,
                        TeamInstanceRow.created_by == user_id,
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                    .order_by(TeamInstanceRow.created_at.asc(), TeamInstanceRow.id.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            return _to_instance(row) if row else None

    async def insert_running(self, instance: Instance) -> Tuple[Instance, bool]:
        """
        Insert a running instance unless one already exists for the pair.

        Returns the stored instance and whether this call created it. When
        another writer got there first, its row is returned instead.
        """
        now = utc_now()
        stmt = (
            dialect_insert(self.db.dialect, TeamInstanceRow)
            .values(
                team_id=instance.team_id,
                contest_id=instance.contest_id,
                challenge_id=instance.challenge_id,
                container_id=instance.runtime_ref,
                container_name=instance.display_name,
                ports=dict(instance.port_map),
                credentials=instance.credentials,
                status=InstanceStatus.RUNNING.value,
                expires_at=instance.expires_at,
                created_by=instance.created_by,
                created_at=instance.created_at or now,
                updated_at=now,
            )
            .on_conflict_do_nothing(
                index_elements=["team_id", "challenge_id"],
                index_where=RUNNING_ONLY,
            )
            .returning(TeamInstanceRow.id)
        )

        async with self.db.session() as session:
            new_id = (await session.execute(stmt)).scalar_one_or_none()
            await session.commit()

        if new_id is not None:
            stored = await self.get(new_id)
            return stored, True

        existing = await self.get_running(instance.team_id, instance.challenge_id)
        if existing is None:
            # The winner was destroyed between our insert and this read
            raise RuntimeError("Conflicting instance vanished during insert")
        return existing, False

    async def mark_destroyed(self, instance_id: int) -> bool:
        """Flip a running instance to destroyed. False if it was not running."""
        async with self.db.session() as session:
            result = await session.execute(
                update(TeamInstanceRow)
                .where(
                    TeamInstanceRow.id == instance_id,
                    TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                )
                .values(status=InstanceStatus.DESTROYED.value, updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def update_expiry(self, instance_id: int, expires_at: datetime) -> bool:
        async with self.db.session() as session:
            result = await session.execute(
                update(TeamInstanceRow)
                .where(
                    TeamInstanceRow.id == instance_id,
                    TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                )
                .values(expires_at=expires_at, updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def list_expired(self, now: Optional[datetime] = None) -> List[Instance]:
        now = now or utc_now()
        async with self.db.session() as session:
            rows = (
                await session.execute(
                    select(TeamInstanceRow)
                    .where(
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                        TeamInstanceRow.expires_at < now,
                    )
                    .order_by(TeamInstanceRow.expires_at.asc())
                )
            ).scalars().all()
            return [_to_instance(row) for row in rows]

    async def used_host_ports(self) -> Set[int]:
        """Host ports bound by running instances."""
        async with self.db.session() as session:
            rows = (
                await session.execute(
                    select(TeamInstanceRow.ports).where(
                        TeamInstanceRow.status == InstanceStatus.RUNNING.value,
                    )
                )
            ).scalars().all()

        used: Set[int] = set()
        for ports in rows:
            for host_port in (ports or {}).values():
                try:
                    used.add(int(host_port))
                except (TypeError, ValueError):
                    continue
        return used

    async def list_for_admin(
        self,
        status: str = "running",
        contest_id: Optional[int] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Instances joined with team, contest, challenge and creator names."""
        query = (
            select(
                TeamInstanceRow,
                TeamRow.name,
                ContestRow.name,
                ContestChallengeRow.title,
                UserRow.display_name,
            )
            .outerjoin(TeamRow, TeamInstanceRow.team_id == TeamRow.id)
            .outerjoin(ContestRow, TeamInstanceRow.contest_id == ContestRow.id)
            .outerjoin(ContestChallengeRow, TeamInstanceRow.challenge_id == ContestChallengeRow.id)
            .outerjoin(UserRow, TeamInstanceRow.created_by == UserRow.id)
        )
        if status != "all":
            query = query.where(TeamInstanceRow.status == InstanceStatus.RUNNING.value)
        if contest_id is not None:
            query = query.where(TeamInstanceRow.contest_id == contest_id)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(
                    TeamInstanceRow.container_id.ilike(pattern),
                    TeamInstanceRow.container_name.ilike(pattern),
                    TeamRow.name.ilike(pattern),
                    UserRow.display_name.ilike(pattern),
                    ContestChallengeRow.title.ilike(pattern),
                )
            )
        query = query.order_by(TeamInstanceRow.created_at.desc(), TeamInstanceRow.id.desc())

        now = utc_now()
        async with self.db.session() as session:
            rows = (await session.execute(query)).all()

        listing = []
        for row, team_name, contest_name, challenge_name, user_name in rows:
            instance = _to_instance(row)
            listing.append({
                "id": instance.id,
                "container_id": instance.runtime_ref,
                "container_name": instance.display_name,
                "team_id": instance.team_id,
                "team_name": team_name or "",
                "contest_id": instance.contest_id,
                "contest_name": contest_name or "",
                "challenge_id": instance.challenge_id,
                "challenge_name": challenge_name or "",
                "user_id": instance.created_by,
                "user_name": user_name or "",
                "ports": {k: str(v) for k, v in instance.port_map.items()},
                "status": instance.status.value,
                "expires_at": instance.expires_at.isoformat(),
                "created_at": instance.created_at.isoformat(),
                "is_expired": instance.is_expired(now),
            })
        return listing

    async def stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utc_now()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        running = TeamInstanceRow.status == InstanceStatus.RUNNING.value

        async with self.db.session() as session:
            async def count(*conditions) -> int:
                return (
                    await session.execute(
                        select(func.count()).select_from(TeamInstanceRow).where(*conditions)
                    )
                ).scalar_one()

            running_count = await count(running)
            expired_count = await count(running, TeamInstanceRow.expires_at < now)
            today_created = await count(TeamInstanceRow.created_at >= today)
            today_destroyed = await count(
                TeamInstanceRow.status == InstanceStatus.DESTROYED.value,
                TeamInstanceRow.updated_at >= today,
            )

            instance_count = func.count(TeamInstanceRow.id).label("count")
            contest_rows = (
                await session.execute(
                    select(ContestRow.id, ContestRow.name, instance_count)
                    .join(TeamInstanceRow, TeamInstanceRow.contest_id == ContestRow.id)
                    .where(running)
                    .group_by(ContestRow.id, ContestRow.name)
                    .order_by(instance_count.desc())
                    .limit(10)
                )
            ).all()

        return {
            "running_count": running_count,
            "expired_count": expired_count,
            "today_created": today_created,
            "today_destroyed": today_destroyed,
            "contest_stats": [
                {"id": cid, "title": name, "count": n} for cid, name, n in contest_rows
            ],
        }


class FlagRepository:
    """Per-(team, challenge) flags. Rows are immutable once written."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, team_id: int, challenge_id: int) -> Optional[str]:
        async with self.db.session() as session:
            return (
                await session.execute(
                    select(TeamChallengeFlagRow.flag).where(
                        TeamChallengeFlagRow.team_id == team_id,
                        TeamChallengeFlagRow.challenge_id == challenge_id,
                    )
                )
            ).scalar_one_or_none()

    async def insert_if_absent(
        self,
        team_id: int,
        contest_id: int,
        challenge_id: int,
        flag: str,
    ) -> None:
        stmt = (
            dialect_insert(self.db.dialect, TeamChallengeFlagRow)
            .values(
                team_id=team_id,
                contest_id=contest_id,
                challenge_id=challenge_id,
                flag=flag,
                created_at=utc_now(),
            )
            .on_conflict_do_nothing(index_elements=["team_id", "challenge_id"])
        )
        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def list_for_challenge(
        self,
        contest_id: int,
        challenge_id: int,
        team_ids: List[int],
    ) -> List[Dict[str, Any]]:
        if not team_ids:
            return []
        async with self.db.session() as session:
            rows = (
                await session.execute(
                    select(TeamChallengeFlagRow, TeamRow.name)
                    .join(TeamRow, TeamChallengeFlagRow.team_id == TeamRow.id)
                    .where(
                        TeamChallengeFlagRow.contest_id == contest_id,
                        TeamChallengeFlagRow.challenge_id == challenge_id,
                        TeamChallengeFlagRow.team_id.in_(team_ids),
                    )
                    .order_by(TeamRow.name)
                )
            ).all()
        return [
            {
                "id": row.id,
                "team_id": row.team_id,
                "team_name": team_name,
                "flag": row.flag,
                "created_at": as_utc(row.created_at).isoformat(),
            }
            for row, team_name in rows
        ]


class CatalogRepository:
    """Read-only lookups into users, teams, contests and challenges."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get_user(self, user_id: int) -> Optional[UserInfo]:
        async with self.db.session() as session:
            row = await session.get(UserRow, user_id)
            if row is None:
                return None
            return UserInfo(
                id=row.id,
                display_name=row.display_name,
                team_id=row.team_id,
                is_admin=row.is_admin,
            )

    async def display_name(self, user_id: Optional[int]) -> str:
        if user_id is None:
            return ""
        async with self.db.session() as session:
            name = (
                await session.execute(select(UserRow.display_name).where(UserRow.id == user_id))
            ).scalar_one_or_none()
            return name or ""

    async def get_contest(self, contest_id: int) -> Optional[ContestPolicy]:
        async with self.db.session() as session:
            row = await session.get(ContestRow, contest_id)
            if row is None:
                return None
            org_ids = (
                await session.execute(
                    select(ContestOrganizationRow.organization_id).where(
                        ContestOrganizationRow.contest_id == contest_id,
                    )
                )
            ).scalars().all()
        return ContestPolicy(
            id=row.id,
            name=row.name,
            mode=ContestMode(row.mode),
            container_limit=row.container_limit,
            flag_format=row.flag_format,
            instance_ttl_minutes=row.instance_ttl_minutes,
            organization_ids=list(org_ids),
        )

    async def get_challenge(self, contest_id: int, challenge_id: int) -> Optional[ChallengeSpec]:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(ContestChallengeRow).where(
                        ContestChallengeRow.id == challenge_id,
                        ContestChallengeRow.contest_id == contest_id,
                    )
                )
            ).scalar_one_or_none()
        if row is None:
            return None
        return ChallengeSpec(
            id=row.id,
            contest_id=row.contest_id,
            title=row.title,
            image=row.docker_image,
            ports=[str(p) for p in (row.ports or [])],
            cpu_limit=row.cpu_limit,
            memory_limit=row.memory_limit,
            injection=FlagInjection.parse(row.flag_env, row.flag_script),
            container_limit=row.container_limit,
            ssh_password_env=row.ssh_password_env,
        )

    async def challenge_title(self, challenge_id: int) -> str:
        async with self.db.session() as session:
            title = (
                await session.execute(
                    select(ContestChallengeRow.title).where(ContestChallengeRow.id == challenge_id)
                )
            ).scalar_one_or_none()
            return title or ""

    async def has_solved(self, team_id: int, contest_id: int, challenge_id: int) -> bool:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(TeamSolveRow.team_id).where(
                        TeamSolveRow.team_id == team_id,
                        TeamSolveRow.contest_id == contest_id,
                        TeamSolveRow.challenge_id == challenge_id,
                    )
                )
            ).first()
            return row is not None

    async def public_challenge_ids(self, contest_id: int) -> List[int]:
        async with self.db.session() as session:
            return list(
                (
                    await session.execute(
                        select(ContestChallengeRow.id)
                        .where(
                            ContestChallengeRow.contest_id == contest_id,
                            ContestChallengeRow.status == "public",
                        )
                        .order_by(ContestChallengeRow.id)
                    )
                ).scalars().all()
            )

    async def qualifying_team_ids(self, contest: ContestPolicy) -> List[int]:
        """Approved teams, restricted to participating organizations if any."""
        query = (
            select(ContestTeamRow.team_id)
            .join(TeamRow, ContestTeamRow.team_id == TeamRow.id)
            .where(
                ContestTeamRow.contest_id == contest.id,
                ContestTeamRow.status == "approved",
            )
            .order_by(ContestTeamRow.team_id)
        )
        if contest.has_organization_limit:
            query = query.where(TeamRow.organization_id.in_(contest.organization_ids))
        async with self.db.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def team_qualifies(self, contest: ContestPolicy, team_id: int) -> bool:
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(TeamRow.organization_id)
                    .join(ContestTeamRow, and_(
                        ContestTeamRow.team_id == TeamRow.id,
                        ContestTeamRow.contest_id == contest.id,
                    ))
                    .where(TeamRow.id == team_id, ContestTeamRow.status == "approved")
                )
            ).first()
        if row is None:
            return False
        return contest.admits_organization(row[0])


class AuditRepository:
    """Append-only system log."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def insert(self, **fields: Any) -> None:
        async with self.db.session() as session:
            session.add(SystemLogRow(**fields))
            await session.commit()

    async def recent(self, limit: int = 100) -> List[SystemLogRow]:
        async with self.db.session() as session:
            return list(
                (
                    await session.execute(
                        select(SystemLogRow).order_by(SystemLogRow.id.desc()).limit(limit)
                    )
                ).scalars().all()
            )
