"""
Scorebook - Score tracker for multiplayer card and table games

The core of the package is the identity engine: it decides which
real-world player a name typed into a scoresheet refers to, and keeps
every recorded game consistent as identities are merged, split, linked
to accounts and unlinked again.

Main components:
- identities: Resolver, merge/split, linking, claims and propagation
- games: Game record collections that reference identities
- db: SQLAlchemy models and session management
"""

__version__ = "1.0.0"
