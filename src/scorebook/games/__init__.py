"""Game record collections referenced by the identity engine."""

from scorebook.games.collections import GameCollection, SqlGameCollection, default_collections

__all__ = ["GameCollection", "SqlGameCollection", "default_collections"]
