"""
Linking guest identities to registered users, and undoing it.

A guest identity is what a player gets when someone types their name into
a scoresheet before they have an account. Once they register, those games
should count as theirs: linking absorbs the guest into the user's identity
and rewrites game references, stamping each rewritten entry with the
guest's id so the link can be reversed exactly.

Unlike merge, a link is reversible. The guest row is kept intact in the
'linked' state, the aliases it contributed are tagged with its id, and the
user's identity keeps a link record with the guest's original name.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from scorebook.db.models import (
    KIND_GUEST,
    KIND_IMPORTED,
    KIND_USER,
    STATE_DELETED,
    STATE_LINKED,
    IdentityLink,
    PlayerIdentity,
    PropagationTask,
    User,
)
from scorebook.identities.errors import ConflictError, IdentityError, NotFoundError
from scorebook.identities.propagation import Propagator, PropagationResult
from scorebook.identities.resolver import IdentityResolver
from scorebook.identities.store import IdentityStore
from scorebook.names import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class LinkResult:
    """
    Outcome of a link or unlink.

    games_updated and errors are filled in per collection once the
    enqueued propagation tasks have run (see apply_propagation).
    """
    guest_identity: PlayerIdentity
    user_identity: PlayerIdentity
    games_updated: dict[str, int] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    aliases: list[str] = field(default_factory=list)
    tasks: list[PropagationTask] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.errors)

    def apply_propagation(self, propagation: PropagationResult) -> "LinkResult":
        for name, count in propagation.updated.items():
            self.games_updated[name] = self.games_updated.get(name, 0) + count
        self.errors.update(propagation.errors)
        return self


@dataclass
class BulkLinkResult:
    """Outcome of linking several guests to one user."""
    linked: list[LinkResult] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    @property
    def games_updated(self) -> dict[str, int]:
        totals: dict[str, int] = {}
        for result in self.linked:
            for name, count in result.games_updated.items():
                totals[name] = totals.get(name, 0) + count
        return totals

    @property
    def tasks(self) -> list[PropagationTask]:
        return [task for result in self.linked for task in result.tasks]

    def summary(self) -> str:
        return f"Linked: {len(self.linked)} | Failed: {len(self.failed)}"


class IdentityLinker:
    """
    Links and unlinks guest identities to user accounts.

    Nothing is committed here; propagation tasks are enqueued and returned
    on the result for the caller to run after commit.

    Usage:
        linker = IdentityLinker(db_session, propagator=propagator)
        result = linker.link_guest_to_user(guest_id, user_id, actor_id=user_id)
        db_session.commit()
        result.apply_propagation(propagator.run_tasks(result.tasks))
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

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def link_guest_to_user(
        self,
        guest_identity_id: int,
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> LinkResult:
        """
        Absorb a guest identity into a user's identity.

        Steps:
        1. Find or create the user's identity
        2. Copy the guest's display name and aliases onto it, tagged with
           the guest id so unlink can take them back
        3. Record the link (with the guest's original display name)
        4. Move the guest to state='linked', kind='imported'
        5. Enqueue guest -> user identity propagation, stamping previous ids

        If the user has no identity yet and the guest holds the username
        (as its name or an alias), the guest simply becomes the user's
        identity.

        Args:
            guest_identity_id: Live guest identity to link
            user_id: Account receiving the guest's games
            actor_id: Acting user id (defaults to user_id for the record)

        Returns:
            LinkResult with both identities and the enqueued tasks

        Raises:
            NotFoundError: Guest missing/not live, or user missing
            ConflictError: Guest belongs to another registered user, is
                already the user's own identity, or has identities of its
                own linked into it
        """
        actor_id = actor_id if actor_id is not None else user_id

        guest = self.store.get(guest_identity_id)
        if guest is None or not guest.is_live:
            raise NotFoundError("Identity", guest_identity_id)

        user = self.db.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        self._check_guest_owner(guest, user_id)
        if guest.linked_identities:
            # Game entries carry a single previous id, so links do not nest
            raise ConflictError(
                f"Identity {guest.id} has identities linked into it; unlink them first",
                identity_id=guest.id,
            )

        user_identity = self.store.find_by_user(user_id)
        if user_identity is None:
            holder = self.store.find_name_holder(normalize_name(user.username))
            if holder is not None and holder.id == guest.id:
                return self._adopt(guest, user, actor_id)
            user_identity, _ = self.resolver.ensure_user_identity(
                user_id, user.username, created_by=actor_id
            )

        if user_identity.id == guest.id:
            raise ConflictError(
                f"Identity {guest.id} is already user {user_id}'s own identity",
                identity_id=guest.id,
            )

        result = LinkResult(guest_identity=guest, user_identity=user_identity)

        # Guest stops being live first so its names can move to the user
        self.store.mark_linked(guest, user_identity.id)
        guest.kind = KIND_IMPORTED
        self.db.flush()

        for name in [guest.display_name, *(alias.name for alias in guest.aliases)]:
            added = self.store.add_alias(
                user_identity,
                name,
                added_by=actor_id,
                origin_identity_id=guest.id,
                exclude_ids=[guest.id],
            )
            if added:
                result.aliases.append(added.name)

        user_identity.linked_identities.append(
            IdentityLink(
                identity_id=guest.id,
                original_display_name=guest.display_name,
                linked_by=actor_id,
            )
        )
        self.db.flush()

        if self.propagator is not None:
            result.tasks = self.propagator.enqueue(guest.id, user_identity.id, stamp_previous=True)

        self.store.audit(
            "link",
            user_identity.id,
            actor_id,
            guest_identity_id=guest.id,
            guest_name=guest.display_name,
            user_id=user_id,
        )
        logger.info(
            "Linked guest identity %s '%s' to user %s (identity %s)",
            guest.id,
            guest.display_name,
            user_id,
            user_identity.id,
        )
        return result

    def unlink_guest_from_user(
        self,
        guest_identity_id: int,
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> LinkResult:
        """
        Reverse a link: the guest identity becomes a live guest again.

        Removes the link record and the aliases the guest contributed, then
        enqueues a restore so every game entry stamped with the guest's id
        points back at the guest.

        Raises:
            NotFoundError: User has no live identity, nothing is linked, or
                the guest row is gone
            ConflictError: The guest's name has since been taken by another
                live identity
        """
        actor_id = actor_id if actor_id is not None else user_id

        user_identity = self.store.find_by_user(user_id)
        if user_identity is None:
            raise NotFoundError("Identity for user", user_id)

        link = next(
            (entry for entry in user_identity.linked_identities if entry.identity_id == guest_identity_id),
            None,
        )
        if link is None:
            raise NotFoundError("Link to identity", guest_identity_id)

        guest = self.store.get(guest_identity_id)
        if guest is None:
            raise NotFoundError("Identity", guest_identity_id)

        result = LinkResult(guest_identity=guest, user_identity=user_identity)
        result.aliases = self.store.remove_aliases_from(user_identity, guest.id)
        user_identity.linked_identities.remove(link)
        self.db.flush()

        holder = self.store.find_name_holder(guest.normalized_name, exclude_ids=[guest.id])
        if holder is not None:
            raise ConflictError(
                f"Name '{guest.display_name}' is now used by identity {holder.id}",
                identity_id=holder.id,
            )

        self.store.mark_active(guest)
        guest.kind = KIND_GUEST
        self.db.flush()

        if self.propagator is not None:
            result.tasks = self.propagator.enqueue_restore(guest.id)

        self.store.audit(
            "unlink",
            user_identity.id,
            actor_id,
            guest_identity_id=guest.id,
            guest_name=guest.display_name,
            user_id=user_id,
        )
        logger.info(
            "Unlinked guest identity %s '%s' from user %s", guest.id, guest.display_name, user_id
        )
        return result

    def link_many(
        self,
        guest_identity_ids: Iterable[int],
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> BulkLinkResult:
        """
        Link several guests to one user.

        Each guest is linked in its own savepoint; one failing guest is
        reported and does not stop the others.
        """
        result = BulkLinkResult()
        for guest_id in guest_identity_ids:
            try:
                with self.db.begin_nested():
                    result.linked.append(self.link_guest_to_user(guest_id, user_id, actor_id))
            except IdentityError as e:
                logger.warning("Could not link identity %s to user %s: %s", guest_id, user_id, e)
                result.failed[guest_id] = str(e)
        return result

    def find_purgeable(self, linked_before: datetime) -> list[IdentityLink]:
        """Link records of imported identities linked before the cutoff."""
        return (
            self.db.query(IdentityLink)
            .join(PlayerIdentity, PlayerIdentity.id == IdentityLink.identity_id)
            .filter(
                IdentityLink.linked_at < linked_before,
                PlayerIdentity.state == STATE_LINKED,
                PlayerIdentity.kind == KIND_IMPORTED,
            )
            .order_by(IdentityLink.linked_at, IdentityLink.id)
            .all()
        )

    def purge(self, link: IdentityLink, actor_id: Optional[int] = None) -> PlayerIdentity:
        """
        Retire an imported identity for good.

        The link record goes and the identity is soft-deleted, so it can no
        longer be unlinked. Aliases it contributed stay on the owner and game
        records keep pointing at the owner.
        """
        identity = self.store.get(link.identity_id)
        owner_id = link.owner_id

        self.db.delete(link)
        self.db.flush()
        owner = self.store.get(owner_id)
        if owner is not None:
            self.db.expire(owner, ["linked_identities"])

        identity.state = STATE_DELETED
        identity.merged_into_id = None
        identity.deleted_at = datetime.utcnow()
        self.db.flush()

        self.store.audit("purge", identity.id, actor_id, owner_id=owner_id)
        logger.info("Purged imported identity %s (linked into %s)", identity.id, owner_id)
        return identity

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _check_guest_owner(self, guest: PlayerIdentity, user_id: int) -> None:
        if guest.user_id is None:
            return
        if guest.user_id == user_id:
            raise ConflictError(
                f"Identity {guest.id} is already user {user_id}'s own identity",
                identity_id=guest.id,
            )
        owner = self.db.get(User, guest.user_id)
        if owner is not None and owner.role != "guest":
            raise ConflictError(
                f"Identity {guest.id} belongs to registered user {guest.user_id}",
                identity_id=guest.id,
            )

    def _adopt(self, guest: PlayerIdentity, user: User, actor_id: Optional[int]) -> LinkResult:
        """The guest carries the user's name: make it the user's identity."""
        guest.user_id = user.id
        guest.kind = KIND_USER
        self.db.flush()

        self.store.audit("claim", guest.id, actor_id, user_id=user.id, via="link")
        logger.info("Identity %s '%s' adopted by user %s", guest.id, guest.display_name, user.id)
        return LinkResult(guest_identity=guest, user_identity=guest)

