"""
Database module for Scorebook.

Provides SQLAlchemy ORM models and session management.

Usage:
    from scorebook.db import get_session, PlayerIdentity

    with get_session() as session:
        identity = session.get(PlayerIdentity, 1)
"""

from scorebook.db.models import (
    Base,
    User,
    PlayerIdentity,
    IdentityAlias,
    IdentityNameHistory,
    IdentityLink,
    IdentityAuditLog,
    PropagationTask,
    TableGame,
    TableGamePlayer,
    TableGameWinner,
    WizardGame,
    WizardGamePlayer,
    WizardGameWinner,
)
from scorebook.db.session import create_db_engine, get_session, get_engine, get_db, SessionLocal

__all__ = [
    # Base
    "Base",
    # Identity models
    "User",
    "PlayerIdentity",
    "IdentityAlias",
    "IdentityNameHistory",
    "IdentityLink",
    "IdentityAuditLog",
    "PropagationTask",
    # Game records
    "TableGame",
    "TableGamePlayer",
    "TableGameWinner",
    "WizardGame",
    "WizardGamePlayer",
    "WizardGameWinner",
    # Session
    "create_db_engine",
    "get_session",
    "get_engine",
    "get_db",
    "SessionLocal",
]
