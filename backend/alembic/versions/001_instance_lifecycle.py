"""
001_instance_lifecycle.py

Instance Lifecycle Migration

Catalog tables the orchestrator reads, plus team instances, team flags and
the system log it writes.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

RUNNING_ONLY = sa.text("status = 'running'")


def upgrade() -> None:
    """Create catalog and instance lifecycle tables."""

    # Catalog
    op.create_table(
        "teams",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("organization_id", sa.Integer(), nullable=True),
    )
    op.create_index("ix_teams_organization_id", "teams", ["organization_id"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("display_name", sa.String(128), nullable=False, server_default=""),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_users_team_id", "users", ["team_id"])

    op.create_table(
        "contests",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, server_default=""),
        sa.Column("mode", sa.String(16), nullable=False, server_default="jeopardy"),
        sa.Column(
            "container_limit",
            sa.Integer(),
            nullable=True,
            comment="Concurrent running instances per team; NULL = platform default, <= 0 = unlimited",
        ),
        sa.Column("flag_format", sa.String(255), nullable=True),
        sa.Column("instance_ttl_minutes", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )

    op.create_table(
        "contest_organizations",
        sa.Column(
            "contest_id",
            sa.Integer(),
            sa.ForeignKey("contests.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("organization_id", sa.Integer(), primary_key=True),
    )

    op.create_table(
        "contest_teams",
        sa.Column(
            "contest_id",
            sa.Integer(),
            sa.ForeignKey("contests.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "team_id",
            sa.Integer(),
            sa.ForeignKey("teams.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
    )

    op.create_table(
        "contest_challenges",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "contest_id",
            sa.Integer(),
            sa.ForeignKey("contests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="hidden"),
        sa.Column("docker_image", sa.String(255), nullable=True),
        sa.Column("ports", sa.JSON(), nullable=True, comment='Container ports, e.g. ["80", "22"]'),
        sa.Column("cpu_limit", sa.String(16), nullable=True),
        sa.Column("memory_limit", sa.String(16), nullable=True),
        sa.Column(
            "flag_env",
            sa.String(255),
            nullable=True,
            comment="Comma-separated env names; CMDARG or $1 passes the flag as argv",
        ),
        sa.Column("flag_script", sa.String(255), nullable=True),
        sa.Column("container_limit", sa.Integer(), nullable=True),
        sa.Column("ssh_password_env", sa.String(64), nullable=True),
    )
    op.create_index("ix_contest_challenges_contest_id", "contest_challenges", ["contest_id"])

    op.create_table(
        "team_solves",
        sa.Column("team_id", sa.Integer(), primary_key=True),
        sa.Column("contest_id", sa.Integer(), primary_key=True),
        sa.Column("challenge_id", sa.Integer(), primary_key=True),
        sa.Column(
            "solved_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )

    # Team instances
    op.create_table(
        "team_instances",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("contest_id", sa.Integer(), nullable=False),
        sa.Column("challenge_id", sa.Integer(), nullable=False),
        sa.Column("container_id", sa.String(128), nullable=False),
        sa.Column("container_name", sa.String(255), nullable=False),
        sa.Column("ports", sa.JSON(), nullable=False, comment="Port mappings: {container: host}"),
        sa.Column("credentials", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("expires_at", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index("ix_team_instances_team_id", "team_instances", ["team_id"])
    op.create_index("ix_team_instances_contest_id", "team_instances", ["contest_id"])
    op.create_index(
        "ix_team_instances_status_expires",
        "team_instances",
        ["status", "expires_at"],
    )
    # One running instance per (team, challenge); destroyed rows stay as history
    op.create_index(
        "uq_team_instances_running",
        "team_instances",
        ["team_id", "challenge_id"],
        unique=True,
        postgresql_where=RUNNING_ONLY,
        sqlite_where=RUNNING_ONLY,
    )

    # Team flags
    op.create_table(
        "team_challenge_flags",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("team_id", sa.Integer(), nullable=False),
        sa.Column("contest_id", sa.Integer(), nullable=False),
        sa.Column("challenge_id", sa.Integer(), nullable=False),
        sa.Column("flag", sa.String(255), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
        sa.UniqueConstraint("team_id", "challenge_id", name="uq_team_challenge_flags"),
    )
    op.create_index("ix_team_challenge_flags_contest_id", "team_challenge_flags", ["contest_id"])

    # System log
    op.create_table(
        "system_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("level", sa.String(16), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("team_id", sa.Integer(), nullable=True),
        sa.Column("contest_id", sa.Integer(), nullable=True),
        sa.Column("challenge_id", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("CURRENT_TIMESTAMP"),
            nullable=False,
        ),
    )
    op.create_index("ix_system_logs_type", "system_logs", ["type"])


def downgrade() -> None:
    """Drop instance lifecycle tables."""
    op.drop_index("ix_system_logs_type", table_name="system_logs")
    op.drop_table("system_logs")

    op.drop_index("ix_team_challenge_flags_contest_id", table_name="team_challenge_flags")
    op.drop_table("team_challenge_flags")

    op.drop_index("uq_team_instances_running", table_name="team_instances")
    op.drop_index("ix_team_instances_status_expires", table_name="team_instances")
    op.drop_index("ix_team_instances_contest_id", table_name="team_instances")
    op.drop_index("ix_team_instances_team_id", table_name="team_instances")
    op.drop_table("team_instances")

    op.drop_table("team_solves")
    op.drop_index("ix_contest_challenges_contest_id", table_name="contest_challenges")
    op.drop_table("contest_challenges")
    op.drop_table("contest_teams")
    op.drop_table("contest_organizations")
    op.drop_table("contests")
    op.drop_index("ix_users_team_id", table_name="users")
    op.drop_table("users")
    op.drop_index("ix_teams_organization_id", table_name="teams")
    op.drop_table("teams")
