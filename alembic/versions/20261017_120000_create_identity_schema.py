"""Create identity and game record schema

Creates users, player identities with their owned child tables (aliases,
name history, link records), the identity audit log, the propagation
outbox, and the table/Wizard game collections.

The two partial unique indexes on player_identities are what keep
concurrent resolves and registrations from creating duplicates:
- uq_identity_live_normalized_name: one active identity per name
- uq_identity_live_user_id: one active or linked identity per user

Revision ID: 3f1a9c2d7b40
Revises:
Create Date: 2026-10-17 12:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic.
revision: str = "3f1a9c2d7b40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _create_game_collection(prefix: str) -> None:
    """A game table plus its player and winner tables."""
    op.create_table(
        f"{prefix}_games",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("local_id", sa.String(100), nullable=True, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("game_type", sa.String(50), nullable=False),
        sa.Column("winner_identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True),
        sa.Column(
            "previous_winner_identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True
        ),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index(f"ix_{prefix}_games_winner_identity_id", f"{prefix}_games", ["winner_identity_id"])

    op.create_table(
        f"{prefix}_game_players",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "game_id", sa.Integer(), sa.ForeignKey(f"{prefix}_games.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("seat", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True),
        sa.Column("previous_identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True),
    )
    for column in ("game_id", "identity_id", "previous_identity_id"):
        op.create_index(f"ix_{prefix}_game_players_{column}", f"{prefix}_game_players", [column])

    op.create_table(
        f"{prefix}_game_winners",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "game_id", sa.Integer(), sa.ForeignKey(f"{prefix}_games.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=False),
        sa.Column("previous_identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True),
    )
    for column in ("game_id", "identity_id", "previous_identity_id"):
        op.create_index(f"ix_{prefix}_game_winners_{column}", f"{prefix}_game_winners", [column])


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(100), nullable=False, unique=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "player_identities",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("display_name", sa.String(100), nullable=False),
        sa.Column("normalized_name", sa.String(100), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("kind", sa.String(20), nullable=False, server_default="guest"),
        sa.Column("state", sa.String(20), nullable=False, server_default="active"),
        sa.Column("merged_into_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("total_games", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_wins", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_game_at", sa.DateTime(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("kind IN ('user', 'guest', 'imported')", name="ck_identity_kind"),
        sa.CheckConstraint("state IN ('active', 'linked', 'merged', 'deleted')", name="ck_identity_state"),
        sa.CheckConstraint(
            "(state IN ('linked', 'merged') AND merged_into_id IS NOT NULL) "
            "OR (state IN ('active', 'deleted') AND merged_into_id IS NULL)",
            name="ck_identity_merged_into_state",
        ),
        sa.CheckConstraint(
            "(state IN ('merged', 'deleted') AND deleted_at IS NOT NULL) "
            "OR (state IN ('active', 'linked') AND deleted_at IS NULL)",
            name="ck_identity_deleted_at_state",
        ),
        sa.CheckConstraint("merged_into_id IS NULL OR merged_into_id <> id", name="ck_identity_not_self"),
        sqlite_autoincrement=True,
    )
    op.create_index(
        "uq_identity_live_normalized_name",
        "player_identities",
        ["normalized_name"],
        unique=True,
        postgresql_where=sa.text("state = 'active'"),
        sqlite_where=sa.text("state = 'active'"),
    )
    op.create_index(
        "uq_identity_live_user_id",
        "player_identities",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("user_id IS NOT NULL AND state IN ('active', 'linked')"),
        sqlite_where=sa.text("user_id IS NOT NULL AND state IN ('active', 'linked')"),
    )
    op.create_index("idx_identity_normalized_name", "player_identities", ["normalized_name", "state"])
    op.create_index("idx_identity_kind_state", "player_identities", ["kind", "state"])
    op.create_index("idx_identity_merged_into", "player_identities", ["merged_into_id"])

    op.create_table(
        "identity_aliases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "identity_id",
            sa.Integer(),
            sa.ForeignKey("player_identities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("normalized_name", sa.String(100), nullable=False),
        sa.Column("origin_identity_id", sa.Integer(), nullable=True),
        sa.Column("added_by", sa.Integer(), nullable=True),
        sa.Column("added_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("identity_id", "normalized_name", name="uq_identity_alias_name"),
    )
    op.create_index("idx_identity_aliases_normalized", "identity_aliases", ["normalized_name"])

    op.create_table(
        "identity_name_history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "identity_id",
            sa.Integer(),
            sa.ForeignKey("player_identities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("normalized_name", sa.String(100), nullable=False),
        sa.Column("changed_by", sa.Integer(), nullable=True),
        sa.Column("changed_at", sa.DateTime(), nullable=True),
    )
    op.create_index("idx_identity_name_history_normalized", "identity_name_history", ["normalized_name"])

    op.create_table(
        "identity_links",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "owner_id",
            sa.Integer(),
            sa.ForeignKey("player_identities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("identity_id", sa.Integer(), sa.ForeignKey("player_identities.id"), nullable=False),
        sa.Column("original_display_name", sa.String(100), nullable=False),
        sa.Column("linked_by", sa.Integer(), nullable=True),
        sa.Column("linked_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("owner_id", "identity_id", name="uq_identity_link"),
    )
    op.create_index("idx_identity_links_identity", "identity_links", ["identity_id"])

    op.create_table(
        "identity_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("action", sa.String(30), nullable=False),
        sa.Column("identity_id", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("details", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("idx_identity_audit_identity", "identity_audit_log", ["identity_id", "created_at"])
    op.create_index("idx_identity_audit_action", "identity_audit_log", ["action", "created_at"])

    op.create_table(
        "propagation_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("old_identity_id", sa.Integer(), nullable=False),
        sa.Column("new_identity_id", sa.Integer(), nullable=False),
        sa.Column("collection", sa.String(50), nullable=False),
        sa.Column("operation", sa.String(20), nullable=False, server_default="replace"),
        sa.Column("stamp_previous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("games_updated", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("operation IN ('replace', 'restore')", name="ck_propagation_operation"),
    )
    op.create_index("idx_propagation_tasks_status", "propagation_tasks", ["status", "created_at"])

    _create_game_collection("table")
    _create_game_collection("wizard")


def downgrade() -> None:
    for prefix in ("wizard", "table"):
        op.drop_table(f"{prefix}_game_winners")
        op.drop_table(f"{prefix}_game_players")
        op.drop_table(f"{prefix}_games")

    op.drop_table("propagation_tasks")
    op.drop_table("identity_audit_log")
    op.drop_table("identity_links")
    op.drop_table("identity_name_history")
    op.drop_table("identity_aliases")
    op.drop_table("player_identities")
    op.drop_table("users")
