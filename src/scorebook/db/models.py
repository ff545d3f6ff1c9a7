"""
SQLAlchemy ORM models for Scorebook.

The schema is built around a canonical player identity: one row per
real-world player, whatever names they were typed in under and whether
or not they ever registered an account. Game records reference
identities by id, never by raw name.

Key design decisions:
- Aliases, name history and link records are owned child rows of the
  identity (no independent lifecycle, deleted with their parent)
- Identity state is a single column with four values instead of
  isDeleted/mergedInto flags, and a CHECK constraint ties merged_into_id
  to the states that need it
- Uniqueness that must hold under concurrent writers is enforced by
  partial unique indexes over live rows, not by application locks
- Identities are never hard-deleted; ids are never reused
- Propagation to game records goes through an outbox table

Tables:
- users: Registered accounts (only the fields the engine reads)
- player_identities: Canonical identities
- identity_aliases: Alternate names mapped to an identity
- identity_name_history: Previous display names (append-only)
- identity_links: Guest identities absorbed by a user identity
- identity_audit_log: Audit trail of structural identity changes
- propagation_tasks: Pending/failed game-record rewrites
- table_games, wizard_games (+ players, winners): Game record collections
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates

from scorebook.names import normalize_name


# =============================================================================
# Constants
# =============================================================================

IdentityKind = Literal["user", "guest", "imported"]
IdentityState = Literal["active", "linked", "merged", "deleted"]

KIND_USER = "user"
KIND_GUEST = "guest"
KIND_IMPORTED = "imported"

# active:  resolvable and writable
# linked:  guest absorbed by a user identity; reversible via unlink
# merged:  folded into another identity; terminal
# deleted: soft-deleted by an operator; restorable
STATE_ACTIVE = "active"
STATE_LINKED = "linked"
STATE_MERGED = "merged"
STATE_DELETED = "deleted"

# States that point at another identity through merged_into_id
POINTER_STATES = (STATE_LINKED, STATE_MERGED)
# States that count as deleted for callers (isDeleted in the old schema)
DELETED_STATES = (STATE_MERGED, STATE_DELETED)

NAME_LENGTH = 100

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


# =============================================================================
# User Model
# =============================================================================

class User(Base):
    """
    Registered account.

    Authentication lives elsewhere; the identity engine only needs the
    username (for claiming) and the role (guest accounts may have their
    identities taken over by a real account).
    """
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="user")  # 'user', 'admin', 'guest'
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"


# =============================================================================
# Identity Models
# =============================================================================

@dataclass(frozen=True)
class IdentityStats:
    """Cached aggregates; derived from game records, never authoritative."""
    total_games: int
    total_wins: int
    last_game_at: Optional[datetime]


class PlayerIdentity(Base):
    """
    Canonical player identity.

    display_name is what people see; normalized_name is what every lookup
    and uniqueness check uses. Setting display_name always recomputes
    normalized_name (see _sync_normalized_name).

    Only 'active' identities are resolvable. The partial unique indexes
    below make duplicate creation under concurrent writers fail at the
    database instead of silently producing two identities.
    """
    __tablename__ = "player_identities"

    id: Mapped[int] = mapped_column(primary_key=True)

    display_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)

    # Owning account (None for guest/imported identities)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False, default=KIND_GUEST)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=STATE_ACTIVE)

    # Set only in the 'linked' and 'merged' states
    merged_into_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Cached stats (recomputable from game records)
    total_games: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_wins: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_game_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    user: Mapped[Optional["User"]] = relationship()
    merged_into: Mapped[Optional["PlayerIdentity"]] = relationship(remote_side=[id])
    aliases: Mapped[list["IdentityAlias"]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
        order_by="IdentityAlias.id",
    )
    name_history: Mapped[list["IdentityNameHistory"]] = relationship(
        back_populates="identity",
        cascade="all, delete-orphan",
        order_by="IdentityNameHistory.id",
    )
    linked_identities: Mapped[list["IdentityLink"]] = relationship(
        back_populates="owner",
        cascade="all, delete-orphan",
        foreign_keys="IdentityLink.owner_id",
        order_by="IdentityLink.id",
    )

    __table_args__ = (
        CheckConstraint(
            "kind IN ('user', 'guest', 'imported')", name="ck_identity_kind"
        ),
        CheckConstraint(
            "state IN ('active', 'linked', 'merged', 'deleted')", name="ck_identity_state"
        ),
        CheckConstraint(
            "(state IN ('linked', 'merged') AND merged_into_id IS NOT NULL) "
            "OR (state IN ('active', 'deleted') AND merged_into_id IS NULL)",
            name="ck_identity_merged_into_state",
        ),
        CheckConstraint(
            "(state IN ('merged', 'deleted') AND deleted_at IS NOT NULL) "
            "OR (state IN ('active', 'linked') AND deleted_at IS NULL)",
            name="ck_identity_deleted_at_state",
        ),
        CheckConstraint("merged_into_id IS NULL OR merged_into_id <> id", name="ck_identity_not_self"),
        # One live identity per normalized name: concurrent resolves for the
        # same unseen name collide here
        Index(
            "uq_identity_live_normalized_name",
            "normalized_name",
            unique=True,
            postgresql_where=text("state = 'active'"),
            sqlite_where=text("state = 'active'"),
        ),
        # One non-deleted identity per user
        Index(
            "uq_identity_live_user_id",
            "user_id",
            unique=True,
            postgresql_where=text("user_id IS NOT NULL AND state IN ('active', 'linked')"),
            sqlite_where=text("user_id IS NOT NULL AND state IN ('active', 'linked')"),
        ),
        Index("idx_identity_normalized_name", "normalized_name", "state"),
        Index("idx_identity_kind_state", "kind", "state"),
        Index("idx_identity_merged_into", "merged_into_id"),
        {"sqlite_autoincrement": True},
    )

    @validates("display_name")
    def _sync_normalized_name(self, key: str, value: str) -> str:
        value = value.strip()
        self.normalized_name = normalize_name(value)
        return value

    @property
    def is_live(self) -> bool:
        """Resolvable and writable."""
        return self.state == STATE_ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.state in DELETED_STATES

    @property
    def stats(self) -> IdentityStats:
        return IdentityStats(
            total_games=self.total_games or 0,
            total_wins=self.total_wins or 0,
            last_game_at=self.last_game_at,
        )

    def alias_names(self) -> set[str]:
        """Normalized names of every alias on this identity."""
        return {alias.normalized_name for alias in self.aliases}

    def __repr__(self) -> str:
        return (
            f"<PlayerIdentity(id={self.id}, name='{self.display_name}', "
            f"kind='{self.kind}', state='{self.state}')>"
        )


class IdentityAlias(Base):
    """
    Alternate name mapped to an identity.

    origin_identity_id records which identity contributed the alias when it
    was copied in by a link or merge, so unlink can take it back out.
    """
    __tablename__ = "identity_aliases"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("player_identities.id", ondelete="CASCADE"), nullable=False
    )

    name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)

    origin_identity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    added_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    added_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    identity: Mapped["PlayerIdentity"] = relationship(back_populates="aliases")

    __table_args__ = (
        UniqueConstraint("identity_id", "normalized_name", name="uq_identity_alias_name"),
        Index("idx_identity_aliases_normalized", "normalized_name"),
    )

    @validates("name")
    def _sync_normalized_name(self, key: str, value: str) -> str:
        value = value.strip()
        self.normalized_name = normalize_name(value)
        return value

    def __repr__(self) -> str:
        return f"<IdentityAlias(identity_id={self.identity_id}, name='{self.name}')>"


class IdentityNameHistory(Base):
    """Previous display name of an identity. Rows are never updated."""
    __tablename__ = "identity_name_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("player_identities.id", ondelete="CASCADE"), nullable=False
    )

    name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)

    changed_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    identity: Mapped["PlayerIdentity"] = relationship(back_populates="name_history")

    __table_args__ = (
        Index("idx_identity_name_history_normalized", "normalized_name"),
    )

    def __repr__(self) -> str:
        return f"<IdentityNameHistory(identity_id={self.identity_id}, name='{self.name}')>"


class IdentityLink(Base):
    """
    A guest identity absorbed into a user identity.

    Kept on the user identity (the owner) so the link can be reversed:
    unlink looks the entry up, restores the guest and removes the row.
    """
    __tablename__ = "identity_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[int] = mapped_column(
        ForeignKey("player_identities.id", ondelete="CASCADE"), nullable=False
    )
    identity_id: Mapped[int] = mapped_column(ForeignKey("player_identities.id"), nullable=False)

    original_display_name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    linked_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    linked_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    owner: Mapped["PlayerIdentity"] = relationship(
        back_populates="linked_identities", foreign_keys=[owner_id]
    )
    identity: Mapped["PlayerIdentity"] = relationship(foreign_keys=[identity_id])

    __table_args__ = (
        UniqueConstraint("owner_id", "identity_id", name="uq_identity_link"),
        Index("idx_identity_links_identity", "identity_id"),
    )

    def __repr__(self) -> str:
        return f"<IdentityLink(owner_id={self.owner_id}, identity_id={self.identity_id})>"


class IdentityAuditLog(Base):
    """
    Audit trail of structural identity changes.

    Actions: 'merge', 'split', 'link', 'unlink', 'claim', 'assign',
    'detach', 'rename', 'soft_delete', 'restore', 'purge'.
    """
    __tablename__ = "identity_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    identity_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_identity_audit_identity", "identity_id", "created_at"),
        Index("idx_identity_audit_action", "action", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<IdentityAuditLog(action='{self.action}', identity_id={self.identity_id})>"


# =============================================================================
# Propagation Outbox
# =============================================================================

class PropagationTask(Base):
    """
    One pending rewrite of identity references in one game collection.

    Written in the same transaction as the identity change it reflects,
    then applied by the Propagator. Failed tasks are retried with
    exponential backoff until max_attempts, then left 'failed' for a
    manual re-propagation sweep.

    Operations:
    - 'replace': old_identity_id -> new_identity_id (merge, link, claim)
    - 'restore': entries stamped previous_identity_id = old_identity_id go
      back to old_identity_id (unlink)
    """
    __tablename__ = "propagation_tasks"

    id: Mapped[int] = mapped_column(primary_key=True)

    old_identity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    new_identity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    collection: Mapped[str] = mapped_column(String(50), nullable=False)
    operation: Mapped[str] = mapped_column(String(20), nullable=False, default="replace")
    stamp_previous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # 'pending', 'retry', 'completed', 'failed'
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    games_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_propagation_tasks_status", "status", "created_at"),
        CheckConstraint("operation IN ('replace', 'restore')", name="ck_propagation_operation"),
    )

    def __repr__(self) -> str:
        return (
            f"<PropagationTask(id={self.id}, {self.operation} {self.old_identity_id}"
            f"->{self.new_identity_id} in '{self.collection}', status='{self.status}')>"
        )


# =============================================================================
# Game Record Models
# =============================================================================
# Game schemas are owned by the game features; only the identity-reference
# fields matter here. Each collection is stored independently.

class GameRecordMixin:
    """Columns shared by every game collection."""

    id: Mapped[int] = mapped_column(primary_key=True)
    local_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True, nullable=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    game_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # Single-winner reference (multi-winner games use the winners table)
    winner_identity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True, index=True
    )
    previous_winner_identity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True
    )

    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class GamePlayerMixin:
    """A player entry inside a game record."""

    id: Mapped[int] = mapped_column(primary_key=True)
    seat: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(NAME_LENGTH), nullable=False)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Required once resolved; previous_identity_id is stamped by links
    identity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True, index=True
    )
    previous_identity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True, index=True
    )


class GameWinnerMixin:
    """One winner of a multi-winner game."""

    id: Mapped[int] = mapped_column(primary_key=True)
    identity_id: Mapped[int] = mapped_column(
        ForeignKey("player_identities.id"), nullable=False, index=True
    )
    previous_identity_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("player_identities.id"), nullable=True, index=True
    )


class TableGame(GameRecordMixin, Base):
    """Generic table game (flip-7, dutch, ...) scored round by round."""
    __tablename__ = "table_games"

    players: Mapped[list["TableGamePlayer"]] = relationship(
        back_populates="game", cascade="all, delete-orphan", order_by="TableGamePlayer.seat"
    )
    winners: Mapped[list["TableGameWinner"]] = relationship(
        back_populates="game", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<TableGame(id={self.id}, type='{self.game_type}')>"


class TableGamePlayer(GamePlayerMixin, Base):
    __tablename__ = "table_game_players"

    game_id: Mapped[int] = mapped_column(
        ForeignKey("table_games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game: Mapped["TableGame"] = relationship(back_populates="players")


class TableGameWinner(GameWinnerMixin, Base):
    __tablename__ = "table_game_winners"

    game_id: Mapped[int] = mapped_column(
        ForeignKey("table_games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game: Mapped["TableGame"] = relationship(back_populates="winners")


class WizardGame(GameRecordMixin, Base):
    """Ranked Wizard game."""
    __tablename__ = "wizard_games"

    players: Mapped[list["WizardGamePlayer"]] = relationship(
        back_populates="game", cascade="all, delete-orphan", order_by="WizardGamePlayer.seat"
    )
    winners: Mapped[list["WizardGameWinner"]] = relationship(
        back_populates="game", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<WizardGame(id={self.id})>"


class WizardGamePlayer(GamePlayerMixin, Base):
    __tablename__ = "wizard_game_players"

    game_id: Mapped[int] = mapped_column(
        ForeignKey("wizard_games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game: Mapped["WizardGame"] = relationship(back_populates="players")


class WizardGameWinner(GameWinnerMixin, Base):
    __tablename__ = "wizard_game_winners"

    game_id: Mapped[int] = mapped_column(
        ForeignKey("wizard_games.id", ondelete="CASCADE"), nullable=False, index=True
    )
    game: Mapped["WizardGame"] = relationship(back_populates="winners")
