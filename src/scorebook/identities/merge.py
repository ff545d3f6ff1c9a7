"""
Merging duplicate identities and splitting mistaken aliases back out.

Merge folds one or more source identities into a target: names become
aliases, histories and stats are combined, and game references are
queued for rewriting. Sources are kept as 'merged' rows pointing at the
target so old ids still lead somewhere; identities are never
hard-deleted.

Split is the forward-looking correction for a bad alias: it removes the
alias and gives the name its own guest identity. Game records already
attributed to the original identity stay where they are.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from scorebook.db.models import (
    KIND_GUEST,
    KIND_USER,
    STATE_DELETED,
    STATE_LINKED,
    STATE_MERGED,
    IdentityLink,
    PlayerIdentity,
    PropagationTask,
)
from scorebook.identities.errors import ConflictError, NotFoundError, RaceLostError
from scorebook.identities.propagation import Propagator
from scorebook.identities.resolver import IdentityResolver
from scorebook.identities.store import IdentityStore
from scorebook.names import normalize_name

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """What a merge changed."""
    identity: PlayerIdentity
    merged_ids: list[int] = field(default_factory=list)
    skipped_ids: list[int] = field(default_factory=list)
    aliases_added: list[str] = field(default_factory=list)
    tasks: list[PropagationTask] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"Merged {len(self.merged_ids)} identities into {self.identity.id} "
            f"({len(self.skipped_ids)} already merged, {len(self.aliases_added)} aliases added)"
        )


class MergeEngine:
    """
    Merges and splits identities inside the caller's transaction.

    The engine never commits. Game-record propagation is enqueued through
    the Propagator in the same transaction and applied after the caller
    commits.

    Usage:
        engine = MergeEngine(db_session, propagator=propagator)
        result = engine.merge(target_id=1, source_ids=[2, 3], actor_id=admin_id)
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

    # =========================================================================
    # Main Public Methods
    # =========================================================================

    def merge(
        self,
        target_id: int,
        source_ids: Iterable[int],
        actor_id: Optional[int] = None,
    ) -> MergeResult:
        """
        Merge source identities into a target identity.

        For every source:
        - its display name becomes a target alias (unless it normalizes to
          the target's own name or an existing alias)
        - its aliases are folded into the target, skipping duplicates and
          any alias equal to the target's own name
        - its name history is appended to the target's
        - its cached stats are added to the target's
        - identities merged or linked into it are re-pointed at the target
        - it becomes state='merged' with merged_into=target

        All sources are validated before anything changes; one bad source
        fails the whole merge. Re-running a completed merge is a no-op.

        Args:
            target_id: Identity to keep
            source_ids: Identities to fold into the target
            actor_id: Acting user id (audit, alias added_by)

        Returns:
            MergeResult with the updated target and enqueued propagation tasks

        Raises:
            NotFoundError: Target missing or not live; a source missing or deleted
            ConflictError: A source is the target, is merged/linked into a
                different identity, or sources belong to different users

        Examples:
            >>> # "Bob" (target) and "bobby" (source, alias "bob")
            >>> result = engine.merge(bob.id, [bobby.id])
            >>> sorted(a.name for a in result.identity.aliases)
            ['bobby']
        """
        source_ids = list(dict.fromkeys(source_ids))
        if not source_ids:
            raise ValueError("At least one source identity is required")
        if target_id in source_ids:
            raise ConflictError(f"Cannot merge identity {target_id} into itself", identity_id=target_id)

        target = self.store.get(target_id)
        if target is None or not target.is_live:
            raise NotFoundError("Identity", target_id)

        result = MergeResult(identity=target)
        sources = self._validate_sources(target, source_ids, result)
        if not sources:
            logger.info("Merge into %s: all sources already merged, nothing to do", target.id)
            return result

        self._check_ownership(target, sources)

        # Sources stop being live first so their names no longer count as
        # held elsewhere when they are copied onto the target
        for source in sources:
            self.store.mark_merged(source, target.id)
        self.db.flush()

        for source in sources:
            self._absorb(target, source, actor_id, result)
            result.merged_ids.append(source.id)

            if self.propagator is not None:
                result.tasks.extend(self.propagator.enqueue(source.id, target.id))

            self.store.audit(
                "merge",
                target.id,
                actor_id,
                source_id=source.id,
                source_name=source.display_name,
            )

        self.db.flush()
        logger.info(
            "Merged identities %s into %s '%s'", result.merged_ids, target.id, target.display_name
        )
        return result

    def split(
        self,
        identity_id: int,
        alias_name: str,
        actor_id: Optional[int] = None,
    ) -> PlayerIdentity:
        """
        Split an alias off into its own guest identity.

        Game records are not re-attributed: games already recorded under
        the original identity stay there.

        Args:
            identity_id: Identity holding the alias
            alias_name: Alias to split off (matched on normalized name)
            actor_id: Acting user id

        Returns:
            The newly created guest identity

        Raises:
            NotFoundError: Identity missing/not live, or alias not on it
        """
        identity = self.store.get_live(identity_id)

        normalized = normalize_name(alias_name)
        alias = next((a for a in identity.aliases if a.normalized_name == normalized), None)
        if alias is None:
            raise NotFoundError("Alias", alias_name)

        name = alias.name
        self.store.remove_alias(identity, name)

        try:
            new_identity = self.resolver.insert_identity(name, kind=KIND_GUEST, created_by=actor_id)
        except RaceLostError as exc:
            raise ConflictError(f"Name '{name}' is already an identity") from exc

        self.store.audit(
            "split",
            identity.id,
            actor_id,
            alias=name,
            new_identity_id=new_identity.id,
        )
        logger.info(
            "Split alias '%s' from identity %s into new identity %s",
            name,
            identity.id,
            new_identity.id,
        )
        return new_identity

    # =========================================================================
    # Private Helper Methods
    # =========================================================================

    def _validate_sources(
        self,
        target: PlayerIdentity,
        source_ids: list[int],
        result: MergeResult,
    ) -> list[PlayerIdentity]:
        sources = []
        for source_id in source_ids:
            source = self.store.get(source_id)
            if source is None or source.state == STATE_DELETED:
                raise NotFoundError("Identity", source_id)

            if source.state == STATE_MERGED:
                if source.merged_into_id == target.id:
                    result.skipped_ids.append(source.id)
                    continue
                raise ConflictError(
                    f"Identity {source_id} is already merged into {source.merged_into_id}",
                    identity_id=source_id,
                )
            if source.state == STATE_LINKED:
                raise ConflictError(
                    f"Identity {source_id} is linked to {source.merged_into_id}; unlink it first",
                    identity_id=source_id,
                )
            sources.append(source)
        return sources

    def _check_ownership(self, target: PlayerIdentity, sources: list[PlayerIdentity]) -> None:
        owners = {i.user_id for i in [target, *sources] if i.user_id is not None}
        if len(owners) > 1:
            raise ConflictError(
                f"Identities belong to different users ({sorted(owners)}) and cannot be merged",
                identity_id=target.id,
            )

    def _absorb(
        self,
        target: PlayerIdentity,
        source: PlayerIdentity,
        actor_id: Optional[int],
        result: MergeResult,
    ) -> None:
        """Fold one (already marked merged) source into the target."""
        added = self.store.add_alias(
            target, source.display_name, added_by=actor_id, origin_identity_id=source.id
        )
        if added:
            result.aliases_added.append(added.name)

        for alias in list(source.aliases):
            added = self.store.add_alias(
                target,
                alias.name,
                added_by=alias.added_by,
                origin_identity_id=alias.origin_identity_id,
            )
            if added:
                result.aliases_added.append(added.name)

        for entry in source.name_history:
            self.store.record_name_history(
                target, entry.name, changed_by=entry.changed_by, changed_at=entry.changed_at
            )

        target.total_games = (target.total_games or 0) + (source.total_games or 0)
        target.total_wins = (target.total_wins or 0) + (source.total_wins or 0)
        if source.last_game_at and (
            target.last_game_at is None or source.last_game_at > target.last_game_at
        ):
            target.last_game_at = source.last_game_at

        self._repoint_children(target, source)

        if target.user_id is None and source.user_id is not None:
            target.user_id = source.user_id
            target.kind = KIND_USER
            self.db.flush()
            logger.info("Moved user %s ownership from identity %s to %s", source.user_id, source.id, target.id)

    def _repoint_children(self, target: PlayerIdentity, source: PlayerIdentity) -> None:
        """Flatten chains: whatever pointed at the source now points at the target."""
        for child in self.store.children_of(source.id):
            child.merged_into_id = target.id

        existing = {link.identity_id for link in target.linked_identities}
        for link in list(source.linked_identities):
            if link.identity_id in existing:
                continue
            target.linked_identities.append(
                IdentityLink(
                    identity_id=link.identity_id,
                    original_display_name=link.original_display_name,
                    linked_by=link.linked_by,
                    linked_at=link.linked_at,
                )
            )
        # Link rows now live on the target; delete-orphan removes the old ones
        source.linked_identities.clear()
        self.db.flush()
