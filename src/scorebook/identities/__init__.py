"""
Player identity management module.

Turns the names people type into scoresheets into canonical player
identities, and keeps game records consistent as those identities are
merged, split, linked to accounts and unlinked again.

Key components:
- IdentityService: Facade used by callers; owns commits
- IdentityResolver: Find-or-create by name, safe under concurrent requests
- MergeEngine: Merge duplicates, split mistaken aliases
- IdentityLinker: Reversible guest -> user links
- ClaimWorkflow: Registration, username change and account deletion
- Propagator: Outbox-driven rewrites of game record references

The resolution order for a name (all on the normalized form):
1. Live identity whose own name matches
2. Live identity with a matching alias
3. Live identity that used to go by the name
4. Otherwise a new guest identity
"""

from scorebook.identities.errors import (
    ConflictError,
    IdentityError,
    NotFoundError,
    RaceLostError,
    StoreUnavailableError,
)
from scorebook.identities.propagation import PropagationResult, Propagator
from scorebook.identities.resolver import IdentityResolver
from scorebook.identities.service import IdentityService
from scorebook.identities.store import IdentityPage, IdentityStore

__all__ = [
    "IdentityService",
    "IdentityStore",
    "IdentityPage",
    "IdentityResolver",
    "Propagator",
    "PropagationResult",
    "IdentityError",
    "NotFoundError",
    "ConflictError",
    "RaceLostError",
    "StoreUnavailableError",
]
