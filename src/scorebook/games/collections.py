"""
Game record collections as seen by the identity engine.

Each kind of game (table games, Wizard games, ...) is stored in its own
set of tables and owned by its own feature. The identity engine only
touches the identity-reference fields: the player entries' identity_id /
previous_identity_id, the single winner field and the multi-winner rows.

Collections are handed to the Propagator explicitly; there is no global
registry. Anything satisfying GameCollection can be registered, which is
how tests inject a collection that fails on purpose.
"""

import logging
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from scorebook.db.models import (
    IdentityStats,
    TableGame,
    TableGamePlayer,
    TableGameWinner,
    WizardGame,
    WizardGamePlayer,
    WizardGameWinner,
)

logger = logging.getLogger(__name__)


class GameCollection(Protocol):
    """Identity-reference operations every game collection supports."""

    name: str

    def game_ids_for(self, identity_id: int, previous: bool = False) -> list[int]:
        """Ids of games referencing the identity (or stamped with it as previous)."""
        ...

    def replace_identity(self, old_id: int, new_id: int, stamp_previous: bool = False) -> int:
        """Repoint every reference to old_id at new_id. Returns games touched."""
        ...

    def restore_identity(self, identity_id: int) -> int:
        """Undo a stamped replace for identity_id. Returns games touched."""
        ...

    def stats_for(self, identity_id: int) -> IdentityStats:
        """Games played, games won and last game time for the identity."""
        ...


class SqlGameCollection:
    """
    GameCollection over one game table plus its player and winner tables.

    All writes are set-based UPDATEs in the caller's transaction; nothing
    here commits. Repeating a replace or restore is a no-op because the
    second run finds no rows still pointing at the old id.

    Usage:
        collection = SqlGameCollection(
            db, "table_games", TableGame, TableGamePlayer, TableGameWinner
        )
        collection.replace_identity(old_id=12, new_id=7, stamp_previous=True)
    """

    def __init__(self, db: Session, name: str, game_model, player_model, winner_model=None):
        self.db = db
        self.name = name
        self.game_model = game_model
        self.player_model = player_model
        self.winner_model = winner_model

    def __repr__(self) -> str:
        return f"<SqlGameCollection(name='{self.name}')>"

    def game_ids_for(self, identity_id: int, previous: bool = False) -> list[int]:
        """
        Ids of games referencing an identity (deleted games included).

        Args:
            identity_id: Identity to look for
            previous: Match the previous-identity markers left by a link
                instead of the current references

        Returns:
            Sorted, distinct game ids
        """
        Game, Player = self.game_model, self.player_model
        player_col = Player.previous_identity_id if previous else Player.identity_id
        winner_col = Game.previous_winner_identity_id if previous else Game.winner_identity_id

        game_ids = {
            row[0]
            for row in self.db.query(Player.game_id).filter(player_col == identity_id).distinct()
        }
        game_ids.update(
            row[0] for row in self.db.query(Game.id).filter(winner_col == identity_id)
        )

        if self.winner_model is not None:
            Winner = self.winner_model
            multi_col = Winner.previous_identity_id if previous else Winner.identity_id
            game_ids.update(
                row[0]
                for row in self.db.query(Winner.game_id).filter(multi_col == identity_id).distinct()
            )

        return sorted(game_ids)

    def replace_identity(self, old_id: int, new_id: int, stamp_previous: bool = False) -> int:
        """
        Repoint player, winner and multi-winner references from old_id to new_id.

        With stamp_previous, every rewritten reference also records old_id
        as its previous identity so restore_identity can undo it. Merges
        don't stamp (they are not reversible); links do.

        Returns:
            Number of distinct games touched
        """
        game_ids = self.game_ids_for(old_id)
        if not game_ids or old_id == new_id:
            return 0

        Game, Player = self.game_model, self.player_model

        player_values = {"identity_id": new_id}
        if stamp_previous:
            player_values["previous_identity_id"] = old_id
        self.db.query(Player).filter(Player.identity_id == old_id).update(
            player_values, synchronize_session=False
        )

        winner_values = {"winner_identity_id": new_id}
        if stamp_previous:
            winner_values["previous_winner_identity_id"] = old_id
        self.db.query(Game).filter(Game.winner_identity_id == old_id).update(
            winner_values, synchronize_session=False
        )

        if self.winner_model is not None:
            Winner = self.winner_model
            multi_values = {"identity_id": new_id}
            if stamp_previous:
                multi_values["previous_identity_id"] = old_id
            self.db.query(Winner).filter(Winner.identity_id == old_id).update(
                multi_values, synchronize_session=False
            )

        logger.debug(
            "%s: replaced identity %s -> %s in %s games", self.name, old_id, new_id, len(game_ids)
        )
        return len(game_ids)

    def restore_identity(self, identity_id: int) -> int:
        """
        Point references stamped with identity_id as previous back at it.

        Clears the previous markers on the way. Used by unlink.

        Returns:
            Number of distinct games touched
        """
        game_ids = self.game_ids_for(identity_id, previous=True)
        if not game_ids:
            return 0

        Game, Player = self.game_model, self.player_model

        self.db.query(Player).filter(Player.previous_identity_id == identity_id).update(
            {"identity_id": identity_id, "previous_identity_id": None},
            synchronize_session=False,
        )
        self.db.query(Game).filter(Game.previous_winner_identity_id == identity_id).update(
            {"winner_identity_id": identity_id, "previous_winner_identity_id": None},
            synchronize_session=False,
        )
        if self.winner_model is not None:
            Winner = self.winner_model
            self.db.query(Winner).filter(Winner.previous_identity_id == identity_id).update(
                {"identity_id": identity_id, "previous_identity_id": None},
                synchronize_session=False,
            )

        logger.debug("%s: restored identity %s in %s games", self.name, identity_id, len(game_ids))
        return len(game_ids)

    def stats_for(self, identity_id: int) -> IdentityStats:
        """Count games played and won by an identity, ignoring deleted games."""
        Game, Player = self.game_model, self.player_model

        played = (
            self.db.query(Game.id, Game.created_at)
            .join(Player, Player.game_id == Game.id)
            .filter(Player.identity_id == identity_id, Game.is_deleted.is_(False))
            .distinct()
            .all()
        )

        win_filter = [Game.winner_identity_id == identity_id]
        if self.winner_model is not None:
            Winner = self.winner_model
            win_filter.append(
                Game.id.in_(
                    select(Winner.game_id).where(Winner.identity_id == identity_id)
                )
            )
        wins = (
            self.db.query(func.count(Game.id))
            .filter(or_(*win_filter), Game.is_deleted.is_(False))
            .scalar()
        )

        last_game_at: Optional[datetime] = max(
            (created_at for _, created_at in played if created_at is not None), default=None
        )
        return IdentityStats(total_games=len(played), total_wins=wins or 0, last_game_at=last_game_at)


def default_collections(db: Session) -> list[SqlGameCollection]:
    """The game collections Scorebook ships with, bound to a session."""
    return [
        SqlGameCollection(db, "table_games", TableGame, TableGamePlayer, TableGameWinner),
        SqlGameCollection(db, "wizard_games", WizardGame, WizardGamePlayer, WizardGameWinner),
    ]
