"""
IdentityService - the single entry point for callers.

Routes, scripts and game-saving code talk to this class only. It wires
the engine components to one session and one set of game collections,
owns the transaction boundaries, and returns pydantic views instead of
ORM rows.

Every mutating operation follows the same shape:
1. Identity changes and propagation tasks are written in one transaction
2. The transaction commits (or rolls back entirely on error)
3. The propagation tasks run, each collection on its own
4. Per-collection failures are reported and left for the retry sweep

Store connectivity failures surface as StoreUnavailableError.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Generator, Iterable, Optional

from sqlalchemy.orm import Session

from scorebook.config import settings
from scorebook.db.models import (
    KIND_GUEST,
    STATE_ACTIVE,
    IdentityStats,
    PlayerIdentity,
    PropagationTask,
    User,
)
from scorebook.games.collections import GameCollection, default_collections
from scorebook.identities.claims import ClaimResult, ClaimWorkflow, UsernameChangeResult
from scorebook.identities.errors import NotFoundError, translate_store_errors
from scorebook.identities.linking import BulkLinkResult, IdentityLinker, LinkResult
from scorebook.identities.merge import MergeEngine
from scorebook.identities.propagation import PropagationResult, Propagator
from scorebook.identities.resolver import IdentityResolver
from scorebook.identities.schemas import (
    IdentityPageView,
    IdentityView,
    SuggestionsView,
    SuggestionView,
    UserIdentitiesView,
)
from scorebook.identities.store import IdentityStore
from scorebook.names import compare_names, normalize_name

logger = logging.getLogger(__name__)


class IdentityService:
    """
    Facade over the identity engine.

    Usage:
        with get_session() as session:
            service = IdentityService(session)

            alice = service.resolve("Alice")
            result = service.link_guest_to_user(alice.id, user_id=42)
            if result.is_partial:
                logger.warning("Some games not updated yet: %s", result.errors)
    """

    def __init__(self, db: Session, collections: Optional[Iterable[GameCollection]] = None):
        """
        Initialize the service.

        Args:
            db: SQLAlchemy session for database operations
            collections: Game collections to keep consistent (defaults to
                the built-in table and Wizard game collections)
        """
        self.db = db
        self.collections = list(collections) if collections is not None else default_collections(db)

        self.store = IdentityStore(db)
        self.propagator = Propagator(db, self.collections)
        self.resolver = IdentityResolver(db, store=self.store)
        self.merger = MergeEngine(db, store=self.store, propagator=self.propagator)
        self.linker = IdentityLinker(db, store=self.store, propagator=self.propagator)
        self.claims = ClaimWorkflow(db, store=self.store, propagator=self.propagator)

    # =========================================================================
    # Resolution & Lookup
    # =========================================================================

    def resolve(
        self,
        name: str,
        kind: str = KIND_GUEST,
        created_by: Optional[int] = None,
    ) -> IdentityView:
        """
        Resolve a player name to its identity, creating a guest if needed.

        Args:
            name: Raw player name
            kind: Kind for a newly created identity
            created_by: Acting user id

        Returns:
            IdentityView of the live identity

        Raises:
            ValueError: Empty name
            StoreUnavailableError: Database unreachable
        """
        with self._transaction():
            identity = self.resolver.resolve(name, kind=kind, created_by=created_by)
        return self._view(identity)

    def get_identity(self, identity_id: int, admin: bool = False) -> IdentityView:
        """
        Fetch one identity.

        Non-admins only see live identities; admins see every state.
        """
        with translate_store_errors():
            identity = self.store.get(identity_id)
            if identity is None or (not admin and not identity.is_live):
                raise NotFoundError("Identity", identity_id)
            return self._view(identity, admin=admin)

    def search(
        self,
        query: Optional[str] = None,
        filters: Optional[dict[str, Any]] = None,
        page: int = 1,
        limit: Optional[int] = None,
        admin: bool = False,
    ) -> IdentityPageView:
        """
        Search identities by name or alias.

        Args:
            query: Case-insensitive substring of a name or alias
            filters: Optional 'kind', 'user_id' and (admin only)
                'include_deleted'
            page: 1-based page, clamped to identity_search_max_page
            limit: Page size, clamped to identity_search_max_limit
            admin: Build admin views (and honour include_deleted)

        Returns:
            IdentityPageView
        """
        filters = filters or {}
        with translate_store_errors():
            result = self.store.search(
                query=query,
                kind=filters.get("kind"),
                user_id=filters.get("user_id"),
                include_deleted=bool(admin and filters.get("include_deleted")),
                page=page,
                limit=limit,
            )
            return IdentityPageView(
                items=[self._view(identity, admin=admin) for identity in result.items],
                total=result.total,
                page=result.page,
                limit=result.limit,
                pages=result.pages,
            )

    # =========================================================================
    # Merge & Split
    # =========================================================================

    def merge(
        self,
        target_id: int,
        source_ids: Iterable[int],
        actor_id: Optional[int] = None,
    ) -> IdentityView:
        """
        Merge source identities into a target and propagate to game records.

        The merge itself is all-or-nothing. Propagation runs afterwards;
        a failing collection is logged and retried by the sweep.
        """
        with self._transaction():
            result = self.merger.merge(target_id, source_ids, actor_id=actor_id)
        self._run_propagation(result.tasks, f"merge into {target_id}")
        return self._view(result.identity)

    def split(
        self,
        identity_id: int,
        alias_name: str,
        actor_id: Optional[int] = None,
    ) -> IdentityView:
        """Split an alias into a new guest identity. Game records are not moved."""
        with self._transaction():
            identity = self.merger.split(identity_id, alias_name, actor_id=actor_id)
        return self._view(identity)

    # =========================================================================
    # Linking
    # =========================================================================

    def link_guest_to_user(
        self,
        guest_identity_id: int,
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> LinkResult:
        """
        Link a guest identity to a user and move its games over.

        Returns:
            LinkResult; games_updated/errors are per collection and
            is_partial is set when a collection failed
        """
        with self._transaction():
            result = self.linker.link_guest_to_user(guest_identity_id, user_id, actor_id=actor_id)
        result.apply_propagation(
            self._run_propagation(result.tasks, f"link {guest_identity_id} -> user {user_id}")
        )
        return result

    def link_many(
        self,
        guest_identity_ids: Iterable[int],
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> BulkLinkResult:
        """Link several guests to one user; failures don't stop the rest."""
        with self._transaction():
            result = self.linker.link_many(guest_identity_ids, user_id, actor_id=actor_id)
        for link in result.linked:
            link.apply_propagation(
                self._run_propagation(link.tasks, f"link {link.guest_identity.id} -> user {user_id}")
            )
        return result

    def unlink_guest_from_user(
        self,
        guest_identity_id: int,
        user_id: int,
        actor_id: Optional[int] = None,
    ) -> LinkResult:
        """Reverse a link and give the guest its games back."""
        with self._transaction():
            result = self.linker.unlink_guest_from_user(guest_identity_id, user_id, actor_id=actor_id)
        result.apply_propagation(
            self._run_propagation(result.tasks, f"unlink {guest_identity_id} from user {user_id}")
        )
        return result

    def suggest_identities(self, user_id: int) -> SuggestionsView:
        """
        Suggest unowned guest identities a user may want to link.

        A guest is suggested when its name or one of its aliases equals the
        username, contains it, or scores at least
        identity_suggestion_threshold with compare_names.

        Raises:
            NotFoundError: Unknown user
        """
        with translate_store_errors():
            user = self.db.get(User, user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            username = normalize_name(user.username)
            user_identity = self.store.find_by_user(user_id)
            already_linked = (
                [link.identity_id for link in user_identity.linked_identities] if user_identity else []
            )

            candidates = (
                self.db.query(PlayerIdentity)
                .filter(
                    PlayerIdentity.state == STATE_ACTIVE,
                    PlayerIdentity.user_id.is_(None),
                    PlayerIdentity.kind == KIND_GUEST,
                )
                .all()
            )

            suggestions = []
            for candidate in candidates:
                match = self._score_candidate(username, candidate)
                if match is not None:
                    score, match_type, matched_name = match
                    suggestions.append(
                        SuggestionView(
                            identity=self._view(candidate),
                            score=round(score, 4),
                            match_type=match_type,
                            matched_name=matched_name,
                        )
                    )

            suggestions.sort(key=lambda s: (-s.score, s.identity.normalized_name))
            return SuggestionsView(
                user_id=user_id,
                suggestions=suggestions[: settings.identity_suggestion_limit],
                already_linked=already_linked,
            )

    # =========================================================================
    # Account Lifecycle
    # =========================================================================

    def claim_on_registration(self, user: User) -> ClaimResult:
        """Claim or create the identity of a newly registered user."""
        with self._transaction():
            result = self.claims.claim_on_registration(user)
        for link in result.links:
            propagation = self._run_propagation(
                link.tasks, f"claim link {link.guest_identity.id} -> user {user.id}"
            )
            link.apply_propagation(propagation)
            result.propagation.add(propagation)
        return result

    def handle_username_change(
        self,
        user: User,
        old_username: str,
        new_username: str,
    ) -> UsernameChangeResult:
        """Rename the user's identity, merging a guest holding the new name."""
        with self._transaction():
            result = self.claims.handle_username_change(user, old_username, new_username)
        self._run_propagation(result.tasks, f"username change for user {user.id}")
        return result

    def handle_account_deletion(self, user_id: int, delete_identities: bool = False) -> int:
        """
        Detach (default) or soft-delete a deleted account's identities.

        Guests linked into a deleted identity are unlinked and get their
        games back.

        Returns:
            Number of the account's identities processed
        """
        with self._transaction():
            result = self.claims.handle_account_deletion(user_id, delete_identities=delete_identities)
        for link in result.unlinked:
            link.apply_propagation(
                self._run_propagation(
                    link.tasks, f"unlink {link.guest_identity.id} from deleted user {user_id}"
                )
            )
        return result.processed

    def get_user_identities(self, user_id: int) -> UserIdentitiesView:
        """The user's primary identity plus every identity linked into it."""
        with translate_store_errors():
            primary = self.store.find_by_user(user_id)
            if primary is None:
                return UserIdentitiesView(user_id=user_id)

            linked = []
            for link in primary.linked_identities:
                identity = self.store.get(link.identity_id)
                if identity is not None:
                    view = self._view(identity, admin=True)
                    linked.append(view.model_copy(update={"display_name": link.original_display_name}))

            return UserIdentitiesView(
                user_id=user_id,
                primary=self._view(primary),
                linked=linked,
                aliases=[alias.name for alias in primary.aliases],
            )

    def assign_to_user(self, identity_id: int, user_id: int, actor_id: Optional[int] = None) -> IdentityView:
        """Admin: give an unowned identity to a user."""
        with self._transaction():
            identity = self.claims.assign_to_user(identity_id, user_id, actor_id=actor_id)
        return self._view(identity, admin=True)

    def detach_from_user(self, identity_id: int, actor_id: Optional[int] = None) -> IdentityView:
        """Admin: turn a user's identity back into a guest."""
        with self._transaction():
            identity = self.claims.detach_from_user(identity_id, actor_id=actor_id)
        return self._view(identity, admin=True)

    # =========================================================================
    # Identity Maintenance
    # =========================================================================

    def add_alias(self, identity_id: int, name: str, actor_id: Optional[int] = None) -> IdentityView:
        """Add an alias. Raises ConflictError if another identity holds it."""
        with self._transaction():
            identity = self.store.get_live(identity_id)
            self.store.add_alias(identity, name, added_by=actor_id)
        return self._view(identity)

    def remove_alias(self, identity_id: int, name: str) -> IdentityView:
        with self._transaction():
            identity = self.store.get_live(identity_id)
            if not self.store.remove_alias(identity, name):
                raise NotFoundError("Alias", name)
        return self._view(identity)

    def rename(self, identity_id: int, new_name: str, actor_id: Optional[int] = None) -> IdentityView:
        """Change a display name; the old one goes to name history."""
        with self._transaction():
            identity = self.store.get_live(identity_id)
            self.store.rename(identity, new_name, changed_by=actor_id)
            self.store.audit("rename", identity.id, actor_id, name=identity.display_name)
        return self._view(identity)

    def soft_delete(self, identity_id: int, actor_id: Optional[int] = None) -> IdentityView:
        with self._transaction():
            identity = self.store.get(identity_id)
            if identity is None:
                raise NotFoundError("Identity", identity_id)
            self.store.soft_delete(identity)
            self.store.audit("soft_delete", identity.id, actor_id)
        return self._view(identity, admin=True)

    def restore(self, identity_id: int, actor_id: Optional[int] = None) -> IdentityView:
        """Restore a soft-deleted identity. Merged identities stay merged."""
        with self._transaction():
            identity = self.store.get(identity_id)
            if identity is None:
                raise NotFoundError("Identity", identity_id)
            self.store.restore(identity)
            self.store.audit("restore", identity.id, actor_id)
        return self._view(identity)

    def recalculate_stats(self, identity_id: int) -> IdentityView:
        """
        Recompute cached stats from every game collection.

        Counts are summed across collections; last_game_at is the latest
        game in any of them.
        """
        with self._transaction():
            identity = self.store.get_live(identity_id)

            total_games = 0
            total_wins = 0
            last_game_at = None
            for collection in self.collections:
                stats: IdentityStats = collection.stats_for(identity.id)
                total_games += stats.total_games
                total_wins += stats.total_wins
                if stats.last_game_at and (last_game_at is None or stats.last_game_at > last_game_at):
                    last_game_at = stats.last_game_at

            identity.total_games = total_games
            identity.total_wins = total_wins
            identity.last_game_at = last_game_at
        return self._view(identity)

    # =========================================================================
    # Game Integration
    # =========================================================================

    def attach_identities(self, players: Iterable[Any], created_by: Optional[int] = None) -> list[Any]:
        """
        Resolve an identity for every player entry that doesn't have one.

        Used when a game is saved. Entries are game player rows (anything
        with name and identity_id attributes). New identities are flushed,
        not committed: they are saved together with the game.

        Returns:
            The same entries, with identity_id filled in
        """
        players = list(players)
        with translate_store_errors():
            for player in players:
                if player.identity_id is None and normalize_name(player.name):
                    identity = self.resolver.resolve(player.name, created_by=created_by)
                    player.identity_id = identity.id
        return players

    def run_pending_propagation(self, limit: Optional[int] = None) -> PropagationResult:
        """Retry sweep over pending and due retry tasks."""
        with translate_store_errors():
            return self.propagator.run_pending(limit=limit)

    def purge_imported_identities(
        self,
        retention_days: Optional[int] = None,
        apply: bool = False,
        actor_id: Optional[int] = None,
    ) -> list[int]:
        """
        Soft-delete imported identities linked longer ago than the retention window.

        Purged identities can no longer be unlinked. With no retention
        configured (imported_retention_days unset) nothing is purged.

        Args:
            retention_days: Overrides settings.imported_retention_days
            apply: Purge; otherwise only report what would be purged
            actor_id: Acting user id for the audit log

        Returns:
            Ids of the identities purged (or that would be)
        """
        retention_days = retention_days if retention_days is not None else settings.imported_retention_days
        if retention_days is None:
            logger.info("imported_retention_days not set; imported identities are kept")
            return []

        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        with self._transaction():
            links = self.linker.find_purgeable(cutoff)
            identity_ids = [link.identity_id for link in links]
            if apply:
                for link in links:
                    self.linker.purge(link, actor_id=actor_id)
        return identity_ids

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    @contextmanager
    def _transaction(self) -> Generator[None, None, None]:
        """Commit on success, roll back on any error, translate store failures."""
        with translate_store_errors():
            try:
                yield
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

    def _run_propagation(self, tasks: list[PropagationTask], context: str) -> PropagationResult:
        if not tasks:
            return PropagationResult()
        with translate_store_errors():
            result = self.propagator.run_tasks(tasks)
        if result.is_partial:
            logger.warning("Partial propagation for %s: %s", context, result.summary())
        else:
            logger.info("Propagation for %s: %s", context, result.summary())
        return result

    def _view(self, identity: PlayerIdentity, admin: bool = False) -> IdentityView:
        return IdentityView.from_identity(identity, admin=admin)

    @staticmethod
    def _score_candidate(username: str, candidate: PlayerIdentity) -> Optional[tuple[float, str, str]]:
        """Best (score, match_type, name) for a candidate, or None if below threshold."""
        if not username:
            return None

        if candidate.normalized_name == username:
            return 1.0, "exact", candidate.display_name
        for alias in candidate.aliases:
            if alias.normalized_name == username:
                return 1.0, "alias", alias.name

        best: Optional[tuple[float, str, str]] = None
        for name, normalized in [
            (candidate.display_name, candidate.normalized_name),
            *((alias.name, alias.normalized_name) for alias in candidate.aliases),
        ]:
            if len(username) >= 3 and username in normalized:
                score, match_type = max(compare_names(username, normalized), 0.9), "contains"
            else:
                score, match_type = compare_names(username, normalized), "fuzzy"
            if best is None or score > best[0]:
                best = (score, match_type, name)

        if best is not None and (best[1] == "contains" or best[0] >= settings.identity_suggestion_threshold):
            return best
        return None
