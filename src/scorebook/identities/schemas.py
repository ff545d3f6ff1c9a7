"""
Read models returned by IdentityService.

ORM rows never leave the service; callers get these pydantic views
instead. Identities that are no longer live (merged, linked, deleted) hide
their linkage internals unless the view is built for an admin.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from scorebook.db.models import PlayerIdentity


class AliasView(BaseModel):
    """An alternate name of an identity."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    normalized_name: str
    added_at: Optional[datetime] = None
    added_by: Optional[int] = None


class NameHistoryView(BaseModel):
    """A previous display name."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    normalized_name: str
    changed_at: Optional[datetime] = None
    changed_by: Optional[int] = None


class LinkedIdentityView(BaseModel):
    """A guest identity absorbed by a user identity."""

    model_config = ConfigDict(from_attributes=True)

    identity_id: int
    original_display_name: str
    linked_at: Optional[datetime] = None
    linked_by: Optional[int] = None


class IdentityView(BaseModel):
    """A player identity as seen by callers."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    display_name: str
    normalized_name: str
    user_id: Optional[int] = None
    kind: str
    state: str
    is_deleted: bool = False
    merged_into_id: Optional[int] = None
    deleted_at: Optional[datetime] = None

    aliases: list[AliasView] = Field(default_factory=list)
    name_history: list[NameHistoryView] = Field(default_factory=list)
    linked_identities: list[LinkedIdentityView] = Field(default_factory=list)

    total_games: int = 0
    total_wins: int = 0
    last_game_at: Optional[datetime] = None

    created_by: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: PlayerIdentity, admin: bool = False) -> "IdentityView":
        """Build a view, hiding linkage internals of non-live identities from non-admins."""
        view = cls.model_validate(identity)
        if not admin and not identity.is_live:
            view = view.model_copy(
                update={"merged_into_id": None, "linked_identities": [], "name_history": []}
            )
        return view


class IdentityPageView(BaseModel):
    """One page of identity search results."""

    items: list[IdentityView]
    total: int
    page: int
    limit: int
    pages: int


class SuggestionView(BaseModel):
    """A guest identity that may belong to a user."""

    identity: IdentityView
    score: float = Field(..., description="Similarity score 0-1")
    match_type: str = Field(..., description="'exact', 'alias', 'contains' or 'fuzzy'")
    matched_name: str


class SuggestionsView(BaseModel):
    """Link suggestions for a user."""

    user_id: int
    suggestions: list[SuggestionView] = Field(default_factory=list)
    already_linked: list[int] = Field(default_factory=list)


class UserIdentitiesView(BaseModel):
    """Everything identity-related for one user account."""

    user_id: int
    primary: Optional[IdentityView] = None
    linked: list[IdentityView] = Field(default_factory=list)
    aliases: list[str] = Field(default_factory=list)
