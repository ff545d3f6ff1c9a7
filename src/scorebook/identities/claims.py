"""
Account lifecycle hooks: registration, username changes, deletion.

When someone registers, the games they already played as a guest under
their username should become theirs. The claim has to be safe against
two registrations racing for the same guest name, and it must never leave
one user owning two live identities.

Claiming runs in three steps:
1. Compare-and-swap the guest identity carrying the username: a
   conditional UPDATE that only succeeds while the row is still an
   unowned live guest. Zero rows updated means someone else got there
   first, and the next candidate is tried.
2. If nothing was claimed, get-or-create the user's identity (conditional
   insert on the live user id index).
3. Guests that only match by alias are linked onto that identity rather
   than given the user id.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorebook.db.models import (
    KIND_GUEST,
    KIND_USER,
    STATE_ACTIVE,
    PlayerIdentity,
    PropagationTask,
    User,
)
from scorebook.identities.errors import ConflictError, IdentityError, NotFoundError, RaceLostError
from scorebook.identities.linking import IdentityLinker, LinkResult
from scorebook.identities.merge import MergeEngine
from scorebook.identities.propagation import Propagator, PropagationResult
from scorebook.identities.resolver import IdentityResolver
from scorebook.identities.store import IdentityStore
from scorebook.names import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    """Outcome of claiming identities for a newly registered user."""
    identity: Optional[PlayerIdentity] = None
    claimed: list[int] = field(default_factory=list)
    created: bool = False
    links: list[LinkResult] = field(default_factory=list)
    propagation: PropagationResult = field(default_factory=PropagationResult)

    @property
    def tasks(self) -> list[PropagationTask]:
        return [task for link in self.links for task in link.tasks]

    def summary(self) -> str:
        return (
            f"Claimed: {len(self.claimed)} | Created: {self.created} | "
            f"Linked: {len(self.links)} | {self.propagation.summary()}"
        )


@dataclass
class UsernameChangeResult:
    """Outcome of renaming a user's identity after a username change."""
    identity: PlayerIdentity
    merged_ids: list[int] = field(default_factory=list)
    created: bool = False
    tasks: list[PropagationTask] = field(default_factory=list)


@dataclass
class AccountDeletionResult:
    """Outcome of releasing a deleted account's identities."""
    processed: int = 0
    unlinked: list[LinkResult] = field(default_factory=list)

    @property
    def tasks(self) -> list[PropagationTask]:
        return [task for link in self.unlinked for task in link.tasks]


class ClaimWorkflow:
    """
    Keeps identities in step with user accounts.

    Like the other engine components it never commits; propagation tasks
    are returned for the caller to run after commit.

    Usage:
        workflow = ClaimWorkflow(db_session, propagator=propagator)
        result = workflow.claim_on_registration(user)
        db_session.commit()
        propagator.run_tasks(result.tasks)
    """

    def __init__(
        self,
        db: Session,
        store: Optional[IdentityStore] = None,
        propagator: Optional[Propagator] = None,
    ):
        self.db = db
        self.store = store or IdentityStore(db)
        self.propagator = propagator
        self.resolver = IdentityResolver(db, store=self.store)
        self.linker = IdentityLinker(db, store=self.store, propagator=propagator)
        self.merger = MergeEngine(db, store=self.store, propagator=propagator)

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def claim_on_registration(self, user: User) -> ClaimResult:
        """
        Give a newly registered user the identities already played under
        their username.

        Safe to call more than once for the same user: a user who already
        has a live identity keeps it, and only new alias matches are linked.

        Args:
            user: The registered account

        Returns:
            ClaimResult with the user's identity, claimed ids and links

        Raises:
            ConflictError: The username is held by an identity that can't
                be claimed (e.g. another user's identity)
        """
        normalized = normalize_name(user.username)
        result = ClaimResult()

        identity = self.store.find_by_user(user.id)
        if identity is None:
            identity = self._claim_by_name(user, normalized)
            if identity is not None:
                result.claimed.append(identity.id)

        alias_guests = [
            guest
            for guest in self.store.find_by_alias_name(normalized, kind=KIND_GUEST)
            if guest.user_id is None and (identity is None or guest.id != identity.id)
        ]

        if identity is None:
            identity, result.created = self._ensure_identity(
                user, exclude_ids=[g.id for g in alias_guests]
            )
        result.identity = identity

        for guest in alias_guests:
            try:
                with self.db.begin_nested():
                    link = self.linker.link_guest_to_user(guest.id, user.id, actor_id=user.id)
                result.links.append(link)
                result.claimed.append(guest.id)
            except IdentityError as e:
                logger.warning(
                    "Could not link alias-matched identity %s to user %s: %s", guest.id, user.id, e
                )

        self.store.audit(
            "claim",
            identity.id,
            user.id,
            user_id=user.id,
            claimed=list(result.claimed),
            created=result.created,
        )
        logger.info(
            "Registration claim for user %s '%s': identity %s, claimed %s, created=%s",
            user.id,
            user.username,
            identity.id,
            result.claimed,
            result.created,
        )
        return result

    def handle_username_change(
        self,
        user: User,
        old_username: str,
        new_username: str,
    ) -> UsernameChangeResult:
        """
        Rename a user's identity to follow their new username.

        A guest identity already answering to the new name is merged into
        the user's identity first. If the user had no identity, one is
        created with the old username in its history.

        Raises:
            ConflictError: The new name belongs to another user's identity
        """
        normalized = normalize_name(new_username)
        identity = self.store.find_by_user(user.id)

        if identity is None:
            identity, created = self._ensure_identity(user, display_name=new_username)
            if normalize_name(old_username) != normalized:
                self.store.record_name_history(identity, old_username, changed_by=user.id)
            self.db.flush()
            logger.info("Created identity %s with history for user %s", identity.id, user.id)
            return UsernameChangeResult(identity=identity, created=created)

        result = UsernameChangeResult(identity=identity)

        holder = self.store.find_name_holder(normalized, exclude_ids=[identity.id])
        if holder is not None:
            if holder.user_id is not None and holder.user_id != user.id:
                raise ConflictError(
                    f"Username '{new_username}' is already in use by another player",
                    identity_id=holder.id,
                )
            merge = self.merger.merge(identity.id, [holder.id], actor_id=user.id)
            result.merged_ids = merge.merged_ids
            result.tasks = merge.tasks

        self.store.rename(identity, new_username, changed_by=user.id)
        logger.info(
            "Updated identity %s '%s' -> '%s' for user %s",
            identity.id,
            old_username,
            new_username,
            user.id,
        )
        return result

    def handle_account_deletion(
        self, user_id: int, delete_identities: bool = False
    ) -> AccountDeletionResult:
        """
        Release or soft-delete the identities of a deleted account.

        By default identities are kept for the game history and turned back
        into guests; their links are kept so linked games stay with them. With
        delete_identities they are soft-deleted instead; guests linked into
        them are unlinked first so they come back as live guests and get
        their games back (run result.tasks after commit).

        Raises:
            ConflictError: A linked guest's name has since been taken by
                another live identity, so it cannot be unlinked

        Returns:
            AccountDeletionResult with the number of identities processed
        """
        identities = (
            self.db.query(PlayerIdentity)
            .filter(PlayerIdentity.user_id == user_id, PlayerIdentity.state == STATE_ACTIVE)
            .all()
        )

        result = AccountDeletionResult(processed=len(identities))
        for identity in identities:
            if delete_identities:
                for link in list(identity.linked_identities):
                    result.unlinked.append(
                        self.linker.unlink_guest_from_user(link.identity_id, user_id)
                    )
                self.store.soft_delete(identity)
            else:
                self.detach_from_user(identity.id)

        logger.info(
            "Processed %s identities for deleted user %s (%s guests unlinked)",
            result.processed,
            user_id,
            len(result.unlinked),
        )
        return result

    def assign_to_user(
        self,
        identity_id: int,
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Admin: hand an unowned identity to a user account.

        Raises:
            NotFoundError: Identity not live, or user missing
            ConflictError: Identity already owned, or the user already has
                a live identity (merge or link instead)
        """
        identity = self.store.get_live(identity_id)
        if identity.user_id is not None:
            raise ConflictError(
                f"Identity {identity_id} is already linked to a user", identity_id=identity_id
            )

        if self.db.get(User, user_id) is None:
            raise NotFoundError("User", user_id)

        existing = self.store.find_by_user(user_id)
        if existing is not None:
            raise ConflictError(
                f"User {user_id} already has identity {existing.id}", identity_id=existing.id
            )

        identity.user_id = user_id
        identity.kind = KIND_USER
        self.store.record_name_history(identity, identity.display_name, changed_by=actor_id)
        self.db.flush()

        self.store.audit("assign", identity.id, actor_id, user_id=user_id)
        logger.info("Admin %s assigned identity %s to user %s", actor_id, identity_id, user_id)
        return identity

    def detach_from_user(self, identity_id: int, actor_id: Optional[int] = None) -> PlayerIdentity:
        """Turn a user's identity back into an unowned guest."""
        identity = self.store.get_live(identity_id)
        previous_user = identity.user_id

        identity.user_id = None
        identity.kind = KIND_GUEST
        self.db.flush()

        self.store.audit("detach", identity.id, actor_id, user_id=previous_user)
        logger.info("Detached identity %s from user %s", identity_id, previous_user)
        return identity

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _claim_by_name(self, user: User, normalized: str) -> Optional[PlayerIdentity]:
        """Compare-and-swap an unowned live guest carrying the username."""
        candidate_ids = [
            row[0]
            for row in self.db.query(PlayerIdentity.id)
            .filter(
                PlayerIdentity.normalized_name == normalized,
                PlayerIdentity.user_id.is_(None),
                PlayerIdentity.kind == KIND_GUEST,
                PlayerIdentity.state == STATE_ACTIVE,
            )
            .order_by(PlayerIdentity.id)
            .all()
        ]

        for candidate_id in candidate_ids:
            try:
                with self.db.begin_nested():
                    updated = (
                        self.db.query(PlayerIdentity)
                        .filter(
                            PlayerIdentity.id == candidate_id,
                            PlayerIdentity.user_id.is_(None),
                            PlayerIdentity.kind == KIND_GUEST,
                            PlayerIdentity.state == STATE_ACTIVE,
                        )
                        .update(
                            {"user_id": user.id, "kind": KIND_USER},
                            synchronize_session=False,
                        )
                    )
            except IntegrityError:
                # A concurrent registration gave this user an identity already
                logger.debug("Claim of identity %s for user %s lost to a concurrent claim", candidate_id, user.id)
                return None

            if updated:
                identity = self.store.get(candidate_id)
                self.db.refresh(identity)
                logger.info("Claimed identity %s '%s' for user %s", identity.id, identity.display_name, user.id)
                return identity

            logger.debug("Identity %s was claimed concurrently; trying next candidate", candidate_id)

        return None

    def _ensure_identity(
        self,
        user: User,
        display_name: Optional[str] = None,
        exclude_ids: Optional[list[int]] = None,
    ) -> tuple[PlayerIdentity, bool]:
        """
        Get or create the user's identity.

        Guests listed in exclude_ids hold the name only as an alias and are
        linked right after, so they don't block creation.
        """
        display_name = display_name or user.username
        normalized = normalize_name(display_name)

        existing = self.store.find_by_user(user.id)
        if existing is not None:
            return existing, False

        holder = self.store.find_name_holder(normalized, exclude_ids=exclude_ids or [])
        if holder is not None:
            if holder.user_id is None and holder.normalized_name == normalized:
                # Unowned identity already carrying the name: adopt it
                holder.user_id = user.id
                holder.kind = KIND_USER
                self.db.flush()
                return holder, False
            raise ConflictError(
                f"Name '{display_name}' is already used by identity {holder.id}",
                identity_id=holder.id,
            )

        try:
            identity = self.resolver.insert_identity(
                display_name, kind=KIND_USER, user_id=user.id, created_by=user.id
            )
            return identity, True
        except RaceLostError:
            winner = self.store.find_by_user(user.id)
            if winner is None:
                raise ConflictError(f"Name '{display_name}' was taken concurrently")
            return winner, False
