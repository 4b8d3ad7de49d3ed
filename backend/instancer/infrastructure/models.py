"""
Instancer - ORM rows

Catalog tables (users, teams, contests, challenges, solves) are owned by the
wider platform and read here; instances, flags and system logs are written
by the orchestrator.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from instancer.domain.instances.entities import utc_now

from .database import Base, UTCDateTime

RUNNING_ONLY = text("status = 'running'")


# ============================================================================
# Catalog (read-only for the orchestrator)
# ============================================================================

class TeamRow(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    organization_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    team_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("teams.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ContestRow(Base):
    __tablename__ = "contests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="jeopardy")
    container_limit: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
        comment="Concurrent running instances per team; NULL = platform default, <= 0 = unlimited",
    )
    flag_format: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    instance_ttl_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


class ContestOrganizationRow(Base):
    __tablename__ = "contest_organizations"

    contest_id: Mapped[int] = mapped_column(
        ForeignKey("contests.id", ondelete="CASCADE"),
        primary_key=True,
    )
    organization_id: Mapped[int] = mapped_column(Integer, primary_key=True)


class ContestTeamRow(Base):
    __tablename__ = "contest_teams"

    contest_id: Mapped[int] = mapped_column(
        ForeignKey("contests.id", ondelete="CASCADE"),
        primary_key=True,
    )
    team_id: Mapped[int] = mapped_column(
        ForeignKey("teams.id", ondelete="CASCADE"),
        primary_key=True,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")


class ContestChallengeRow(Base):
    __tablename__ = "contest_challenges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contest_id: Mapped[int] = mapped_column(
        ForeignKey("contests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="hidden")
    docker_image: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    ports: Mapped[Optional[List[str]]] = mapped_column(
        JSON,
        nullable=True,
        comment='Container ports, e.g. ["80", "22"]',
    )
    cpu_limit: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    memory_limit: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    flag_env: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        comment="Comma-separated env names; CMDARG or $1 passes the flag as argv",
    )
    flag_script: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    container_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ssh_password_env: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class TeamSolveRow(Base):
    __tablename__ = "team_solves"

    team_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contest_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    challenge_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    solved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


# ============================================================================
# Orchestrator state
# ============================================================================

class TeamInstanceRow(Base):
    __tablename__ = "team_instances"
    __table_args__ = (
        # One running instance per (team, challenge); history rows are kept
        Index(
            "uq_team_instances_running",
            "team_id",
            "challenge_id",
            unique=True,
            postgresql_where=RUNNING_ONLY,
            sqlite_where=RUNNING_ONLY,
        ),
        Index("ix_team_instances_status_expires", "status", "expires_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    contest_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    container_id: Mapped[str] = mapped_column(String(128), nullable=False)
    container_name: Mapped[str] = mapped_column(String(255), nullable=False)
    ports: Mapped[Dict[str, int]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Port mappings: {container: host}",
    )
    credentials: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )


class TeamChallengeFlagRow(Base):
    __tablename__ = "team_challenge_flags"
    __table_args__ = (
        UniqueConstraint("team_id", "challenge_id", name="uq_team_challenge_flags"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    team_id: Mapped[int] = mapped_column(Integer, nullable=False)
    contest_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    challenge_id: Mapped[int] = mapped_column(Integer, nullable=False)
    flag: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)


class SystemLogRow(Base):
    __tablename__ = "system_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    level: Mapped[str] = mapped_column(String(16), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    team_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    contest_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    challenge_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
