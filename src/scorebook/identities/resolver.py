"""
Name -> identity resolution.

Every name typed into a scoresheet goes through IdentityResolver.resolve:
if a live identity already answers to the name (own name, alias or a
previous name) it is returned, otherwise a new guest identity is
created.

Two requests resolving the same unseen name at the same time both miss
the lookup and both try to insert. The partial unique index on live
normalized names lets exactly one insert through; the other fails inside
its savepoint, is rolled back to it, and re-reads the winner. No locks
are taken.
"""

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from scorebook.db.models import KIND_GUEST, KIND_USER, PlayerIdentity
from scorebook.identities.errors import ConflictError, RaceLostError
from scorebook.identities.store import IdentityStore
from scorebook.names import normalize_name

logger = logging.getLogger(__name__)

# Find-or-create rounds before giving up on a name that keeps changing hands
RESOLVE_ATTEMPTS = 3


class IdentityResolver:
    """
    Finds or creates the identity behind a player name.

    Usage:
        resolver = IdentityResolver(db_session)
        alice = resolver.resolve("Alice")
        assert resolver.resolve("  ALICE ").id == alice.id
    """

    def __init__(self, db: Session, store: Optional[IdentityStore] = None):
        self.db = db
        self.store = store or IdentityStore(db)

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def resolve(
        self,
        name: str,
        kind: str = KIND_GUEST,
        created_by: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Return the live identity for a name, creating one if none exists.

        Lookup order is own name, then alias, then name history, all on the
        normalized form. Resolving the same name twice returns the same
        identity; so does resolving it from two concurrent requests.

        Args:
            name: Raw player name
            kind: Kind for a newly created identity (default 'guest')
            created_by: Acting user id, recorded on creation

        Returns:
            Live PlayerIdentity

        Raises:
            ValueError: If the name is empty after normalization
            ConflictError: If every insert lost a race and the winner was
                gone again on re-read (RESOLVE_ATTEMPTS times in a row)

        Examples:
            >>> resolver.resolve("Bob").display_name
            'Bob'
            >>> resolver.resolve("bob ").id == resolver.resolve("Bob").id
            True
        """
        if not normalize_name(name):
            raise ValueError("Player name cannot be empty")

        last_error = None
        for attempt in range(1, RESOLVE_ATTEMPTS + 1):
            existing = self.store.find_by_name(name)
            if existing is not None:
                if attempt > 1:
                    logger.debug("Lost create race for '%s'; using identity %s", name, existing.id)
                return existing

            try:
                return self._create(name, kind=kind, created_by=created_by)
            except RaceLostError as exc:
                # The winner may be merged or deleted again before the re-read
                last_error = exc
                logger.debug("Create race for '%s' lost (attempt %s)", name, attempt)

        raise ConflictError(
            f"Could not resolve '{name}' after {RESOLVE_ATTEMPTS} attempts"
        ) from last_error

    def ensure_user_identity(
        self,
        user_id: int,
        display_name: str,
        created_by: Optional[int] = None,
    ) -> tuple[PlayerIdentity, bool]:
        """
        Get or create the live identity for a user account.

        The insert is conditional on the partial unique index over live
        user ids, so two concurrent callers end up with the same row.

        Returns:
            (identity, created) tuple

        Raises:
            ConflictError: If display_name is held by another live identity
                (the caller decides whether to claim, link or rename)
        """
        existing = self.store.find_by_user(user_id)
        if existing is not None:
            return existing, False

        holder = self.store.find_name_holder(normalize_name(display_name))
        if holder is not None:
            raise ConflictError(
                f"Name '{display_name}' is already used by identity {holder.id}",
                identity_id=holder.id,
            )

        try:
            identity = self.insert_identity(
                display_name, kind=KIND_USER, user_id=user_id, created_by=created_by
            )
            return identity, True
        except RaceLostError:
            winner = self.store.find_by_user(user_id)
            if winner is None:
                # Lost on the name index, not the user index
                raise ConflictError(f"Name '{display_name}' was taken concurrently")
            logger.debug("Lost user identity race for user %s; using %s", user_id, winner.id)
            return winner, False

    def insert_identity(
        self,
        name: str,
        kind: str,
        user_id: Optional[int] = None,
        created_by: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Insert a new identity inside a savepoint, so a uniqueness violation
        only undoes this row and the caller's transaction stays usable.

        Used by every workflow that needs a fresh identity without going
        through name lookup first (split, registration claims).

        Raises:
            RaceLostError: If a live identity with the same normalized name
                or user id was committed first
        """
        try:
            with self.db.begin_nested():
                identity = self.store.create(
                    name, kind=kind, user_id=user_id, created_by=created_by
                )
        except IntegrityError as exc:
            raise RaceLostError(
                f"Concurrent insert won for '{normalize_name(name)}' (user {user_id})"
            ) from exc
        return identity

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _create(
        self,
        name: str,
        kind: str = KIND_GUEST,
        created_by: Optional[int] = None,
    ) -> PlayerIdentity:
        identity = self.insert_identity(name, kind=kind, created_by=created_by)
        logger.info("Created %s identity %s for '%s'", kind, identity.id, identity.display_name)
        return identity
