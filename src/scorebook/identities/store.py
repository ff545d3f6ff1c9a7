"""
Entity-level operations on player identities.

IdentityStore owns every read and write of the identity tables that is
not itself a workflow: lookups over the live population, creation,
aliases, renames, state transitions, search and the audit trail. The
resolver, merge engine, linker and claim workflow are built on top of it.

Nothing here commits. Methods flush when a later query in the same
transaction needs to see the change (the session runs with autoflush
off).
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from scorebook.config import settings
from scorebook.db.models import (
    KIND_GUEST,
    STATE_ACTIVE,
    STATE_DELETED,
    STATE_LINKED,
    STATE_MERGED,
    IdentityAlias,
    IdentityAuditLog,
    IdentityNameHistory,
    PlayerIdentity,
)
from scorebook.identities.errors import ConflictError, NotFoundError
from scorebook.names import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class IdentityPage:
    """One page of search results."""
    items: list[PlayerIdentity]
    total: int
    page: int
    limit: int
    pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.pages = math.ceil(self.total / self.limit) if self.limit else 0


class IdentityStore:
    """
    Reads and writes player identities in the caller's transaction.

    Usage:
        store = IdentityStore(db_session)
        identity = store.find_by_name("Alice")
        if identity is None:
            identity = store.create("Alice")
        store.add_alias(identity, "Ali", added_by=user_id)
        db_session.commit()
    """

    def __init__(self, db: Session):
        """
        Initialize the store.

        Args:
            db: SQLAlchemy session for database operations
        """
        self.db = db

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, identity_id: int) -> Optional[PlayerIdentity]:
        """Fetch an identity in any state."""
        return self.db.query(PlayerIdentity).filter(PlayerIdentity.id == identity_id).first()

    def get_live(self, identity_id: int) -> PlayerIdentity:
        """
        Fetch an identity that is resolvable and writable.

        Raises:
            NotFoundError: If the identity doesn't exist or isn't active
        """
        identity = self.get(identity_id)
        if identity is None or not identity.is_live:
            raise NotFoundError("Identity", identity_id)
        return identity

    def find_by_name(self, name: str) -> Optional[PlayerIdentity]:
        """
        Find the live identity a name refers to.

        Checks, in order, the identity's own normalized name, its aliases,
        and finally its previous names. A previous name only counts when no
        live identity currently holds that name outright.

        Args:
            name: Raw name as typed in

        Returns:
            Matching live identity or None
        """
        normalized = normalize_name(name)
        if not normalized:
            return None

        identity = self._find_by_own_name(normalized)
        if identity:
            return identity

        identity = self._find_by_alias(normalized)
        if identity:
            return identity

        return self._find_by_history(normalized)

    def find_by_user(self, user_id: int) -> Optional[PlayerIdentity]:
        """Find the live identity owned by a user account."""
        return (
            self.db.query(PlayerIdentity)
            .filter(
                PlayerIdentity.user_id == user_id,
                PlayerIdentity.state == STATE_ACTIVE,
            )
            .first()
        )

    def find_name_holder(
        self, normalized_name: str, exclude_ids: Iterable[int] = ()
    ) -> Optional[PlayerIdentity]:
        """
        Find a live identity claiming a normalized name as own name or alias.

        Previous names are not claims: a name someone used to go by is free
        for anyone else to take.

        Args:
            normalized_name: Already-normalized name
            exclude_ids: Identities to ignore (usually the one being edited)
        """
        excluded = [i for i in exclude_ids if i is not None]

        query = self.db.query(PlayerIdentity).filter(
            PlayerIdentity.state == STATE_ACTIVE,
            or_(
                PlayerIdentity.normalized_name == normalized_name,
                PlayerIdentity.aliases.any(IdentityAlias.normalized_name == normalized_name),
            ),
        )
        if excluded:
            query = query.filter(PlayerIdentity.id.notin_(excluded))
        return query.order_by(PlayerIdentity.id).first()

    def find_by_alias_name(
        self, normalized_name: str, kind: Optional[str] = None
    ) -> list[PlayerIdentity]:
        """Live identities with an alias (not own name) equal to normalized_name."""
        query = self.db.query(PlayerIdentity).filter(
            PlayerIdentity.state == STATE_ACTIVE,
            PlayerIdentity.aliases.any(IdentityAlias.normalized_name == normalized_name),
        )
        if kind:
            query = query.filter(PlayerIdentity.kind == kind)
        return query.order_by(PlayerIdentity.id).all()

    def children_of(self, identity_id: int) -> list[PlayerIdentity]:
        """Identities currently merged or linked into identity_id."""
        return (
            self.db.query(PlayerIdentity)
            .filter(PlayerIdentity.merged_into_id == identity_id)
            .order_by(PlayerIdentity.id)
            .all()
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def create(
        self,
        display_name: str,
        kind: str = KIND_GUEST,
        user_id: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Insert a new active identity and flush it.

        Uniqueness is left to the database: a live identity with the same
        normalized name (or the same user) makes the flush raise
        IntegrityError, which the resolver and claim workflow recover from.

        Raises:
            ValueError: If the name normalizes to an empty string
        """
        if not normalize_name(display_name):
            raise ValueError("Identity name cannot be empty")

        identity = PlayerIdentity(
            display_name=display_name,
            kind=kind,
            user_id=user_id,
            state=STATE_ACTIVE,
            created_by=created_by,
        )
        self.db.add(identity)
        self.db.flush()

        logger.debug("Created %s identity %s '%s'", kind, identity.id, identity.display_name)
        return identity

    def add_alias(
        self,
        identity: PlayerIdentity,
        name: str,
        added_by: Optional[int] = None,
        origin_identity_id: Optional[int] = None,
        exclude_ids: Iterable[int] = (),
    ) -> Optional[IdentityAlias]:
        """
        Add an alternate name to an identity.

        Adding the identity's own name or an alias it already has is a
        no-op.

        Args:
            identity: Identity receiving the alias
            name: Raw alias name
            added_by: Acting user id
            origin_identity_id: Identity the alias was copied from (link/merge)
            exclude_ids: Other identities allowed to hold the same name, e.g.
                merge sources that are about to stop being live

        Returns:
            The new alias, or None if nothing was added

        Raises:
            ValueError: If the alias normalizes to an empty string
            ConflictError: If another live identity holds the name
        """
        normalized = normalize_name(name)
        if not normalized:
            raise ValueError("Alias cannot be empty")

        if normalized == identity.normalized_name or normalized in identity.alias_names():
            return None

        holder = self.find_name_holder(normalized, exclude_ids=[identity.id, *exclude_ids])
        if holder is not None:
            raise ConflictError(
                f"Name '{name}' is already used by identity {holder.id}",
                identity_id=holder.id,
            )

        alias = IdentityAlias(
            name=name,
            added_by=added_by,
            origin_identity_id=origin_identity_id,
        )
        identity.aliases.append(alias)
        self.db.flush()
        return alias

    def remove_alias(self, identity: PlayerIdentity, name: str) -> bool:
        """Remove an alias by name. Returns False if it wasn't there."""
        normalized = normalize_name(name)
        for alias in list(identity.aliases):
            if alias.normalized_name == normalized:
                identity.aliases.remove(alias)
                self.db.flush()
                return True
        return False

    def remove_aliases_from(self, identity: PlayerIdentity, origin_identity_id: int) -> list[str]:
        """Remove every alias that was copied in from origin_identity_id."""
        removed = []
        for alias in list(identity.aliases):
            if alias.origin_identity_id == origin_identity_id:
                identity.aliases.remove(alias)
                removed.append(alias.name)
        if removed:
            self.db.flush()
        return removed

    def record_name_history(
        self,
        identity: PlayerIdentity,
        name: str,
        changed_by: Optional[int] = None,
        changed_at: Optional[datetime] = None,
    ) -> IdentityNameHistory:
        """Append a previous name to an identity's history."""
        entry = IdentityNameHistory(
            name=name,
            normalized_name=normalize_name(name),
            changed_by=changed_by,
            changed_at=changed_at or datetime.utcnow(),
        )
        identity.name_history.append(entry)
        return entry

    def rename(
        self,
        identity: PlayerIdentity,
        new_name: str,
        changed_by: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Change an identity's display name.

        The old display name goes into name history. If the new name was an
        alias of this identity, that alias is dropped since it is now the
        identity's own name.

        Raises:
            ValueError: If the new name normalizes to an empty string
            ConflictError: If another live identity holds the new name
        """
        new_name = new_name.strip()
        normalized = normalize_name(new_name)
        if not normalized:
            raise ValueError("Identity name cannot be empty")

        if new_name == identity.display_name:
            return identity

        if normalized != identity.normalized_name:
            holder = self.find_name_holder(normalized, exclude_ids=[identity.id])
            if holder is not None:
                raise ConflictError(
                    f"Name '{new_name}' is already used by identity {holder.id}",
                    identity_id=holder.id,
                )

        old_name = identity.display_name
        self.record_name_history(identity, old_name, changed_by=changed_by)
        self.remove_alias(identity, new_name)
        identity.display_name = new_name
        self.db.flush()

        logger.info("Renamed identity %s: '%s' -> '%s'", identity.id, old_name, new_name)
        return identity

    # =========================================================================
    # State Transitions
    # =========================================================================

    def mark_merged(self, identity: PlayerIdentity, target_id: int) -> None:
        identity.state = STATE_MERGED
        identity.merged_into_id = target_id
        identity.deleted_at = identity.deleted_at or datetime.utcnow()

    def mark_linked(self, identity: PlayerIdentity, target_id: int) -> None:
        identity.state = STATE_LINKED
        identity.merged_into_id = target_id
        identity.deleted_at = None

    def mark_active(self, identity: PlayerIdentity) -> None:
        identity.state = STATE_ACTIVE
        identity.merged_into_id = None
        identity.deleted_at = None

    def soft_delete(self, identity: PlayerIdentity) -> PlayerIdentity:
        """
        Soft-delete an active identity. Deleting a deleted identity is a no-op.

        Raises:
            ConflictError: If the identity is merged or linked (those states
                are changed through merge/unlink, not deletion), or still
                has identities linked into it
        """
        if identity.state == STATE_DELETED:
            return identity
        if identity.state != STATE_ACTIVE:
            raise ConflictError(
                f"Identity {identity.id} is {identity.state} and cannot be deleted",
                identity_id=identity.id,
            )
        if identity.linked_identities:
            raise ConflictError(
                f"Identity {identity.id} has identities linked into it; unlink them first",
                identity_id=identity.id,
            )

        identity.state = STATE_DELETED
        identity.merged_into_id = None
        identity.deleted_at = datetime.utcnow()
        self.db.flush()
        return identity

    def restore(self, identity: PlayerIdentity) -> PlayerIdentity:
        """
        Bring a soft-deleted identity back.

        Raises:
            ConflictError: If the identity was merged (terminal), or its name
                or user account has been taken by another live identity
        """
        if identity.state == STATE_ACTIVE:
            return identity
        if identity.state != STATE_DELETED:
            raise ConflictError(
                f"Identity {identity.id} is {identity.state} and cannot be restored",
                identity_id=identity.id,
            )

        holder = self.find_name_holder(identity.normalized_name, exclude_ids=[identity.id])
        if holder is not None:
            raise ConflictError(
                f"Name '{identity.display_name}' is now used by identity {holder.id}",
                identity_id=holder.id,
            )
        if identity.user_id is not None:
            owner = self.find_by_user(identity.user_id)
            if owner is not None and owner.id != identity.id:
                raise ConflictError(
                    f"User {identity.user_id} already has identity {owner.id}",
                    identity_id=owner.id,
                )

        self.mark_active(identity)
        self.db.flush()
        return identity

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: Optional[str] = None,
        kind: Optional[str] = None,
        user_id: Optional[int] = None,
        include_deleted: bool = False,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> IdentityPage:
        """
        Search identities by name or alias substring.

        Page and limit are clamped to configured bounds rather than
        rejected, so a bad query string can't ask for an unbounded scan.

        Args:
            query: Case-insensitive substring of display name or alias
            kind: Restrict to one identity kind
            user_id: Restrict to one owning user
            include_deleted: Include merged/linked/deleted identities
            page: 1-based page number
            limit: Page size (default identity_search_default_limit)

        Returns:
            IdentityPage ordered by display name
        """
        limit = limit if limit is not None else settings.identity_search_default_limit
        limit = max(1, min(limit, settings.identity_search_max_limit))
        page = max(1, min(page, settings.identity_search_max_page))

        q = self.db.query(PlayerIdentity)
        if not include_deleted:
            q = q.filter(PlayerIdentity.state == STATE_ACTIVE)
        if kind:
            q = q.filter(PlayerIdentity.kind == kind)
        if user_id is not None:
            q = q.filter(PlayerIdentity.user_id == user_id)

        normalized = normalize_name(query)
        if normalized:
            q = q.filter(
                or_(
                    PlayerIdentity.normalized_name.contains(normalized, autoescape=True),
                    PlayerIdentity.aliases.any(
                        IdentityAlias.normalized_name.contains(normalized, autoescape=True)
                    ),
                )
            )

        total = q.count()
        items = (
            q.order_by(PlayerIdentity.normalized_name, PlayerIdentity.id)
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return IdentityPage(items=items, total=total, page=page, limit=limit)

    # =========================================================================
    # Audit
    # =========================================================================

    def audit(
        self,
        action: str,
        identity_id: Optional[int],
        actor_id: Optional[int] = None,
        **details,
    ) -> IdentityAuditLog:
        """Record a structural change in the audit log."""
        entry = IdentityAuditLog(
            action=action,
            identity_id=identity_id,
            actor_id=actor_id,
            details=details or None,
        )
        self.db.add(entry)
        return entry

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _find_by_own_name(self, normalized_name: str) -> Optional[PlayerIdentity]:
        return (
            self.db.query(PlayerIdentity)
            .filter(
                PlayerIdentity.normalized_name == normalized_name,
                PlayerIdentity.state == STATE_ACTIVE,
            )
            .first()
        )

    def _find_by_alias(self, normalized_name: str) -> Optional[PlayerIdentity]:
        matches = self.find_by_alias_name(normalized_name)
        return matches[0] if matches else None

    def _find_by_history(self, normalized_name: str) -> Optional[PlayerIdentity]:
        # Most recent rename wins when several identities once used the name
        return (
            self.db.query(PlayerIdentity)
            .join(IdentityNameHistory, IdentityNameHistory.identity_id == PlayerIdentity.id)
            .filter(
                IdentityNameHistory.normalized_name == normalized_name,
                PlayerIdentity.state == STATE_ACTIVE,
            )
            .order_by(IdentityNameHistory.changed_at.desc(), IdentityNameHistory.id.desc())
            .first()
        )
