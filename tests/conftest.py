"""
Pytest configuration and fixtures.

This file is automatically loaded by pytest and provides
shared fixtures for all tests.
"""

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from scorebook.db.models import (
    Base,
    TableGame,
    TableGamePlayer,
    TableGameWinner,
    User,
    WizardGame,
    WizardGamePlayer,
)
from scorebook.db.session import create_db_engine
from scorebook.identities.service import IdentityService


@pytest.fixture
def test_engine():
    """
    Create a fresh test database engine.

    Uses SQLite in-memory. The engine helper switches on foreign keys and
    real SAVEPOINT support, which race recovery and propagation rely on.
    Each test gets its own database because the code under test commits.
    """
    engine = create_db_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine):
    """Create a database session for a test."""
    Session = sessionmaker(bind=test_engine, autoflush=False)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def service(db_session):
    """IdentityService over the built-in game collections."""
    return IdentityService(db_session)


@pytest.fixture
def make_user(db_session):
    """Factory for committed user accounts."""
    def _make_user(username: str, role: str = "user") -> User:
        user = User(username=username, role=role)
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_table_game(db_session):
    """
    Factory for committed table games.

    Players are (name, identity_id) pairs; winners are identity ids.
    """
    def _make_table_game(players, winner_id=None, winner_ids=(), created_at=None, game_type="flip-7"):
        game = TableGame(
            game_type=game_type,
            winner_identity_id=winner_id,
            created_at=created_at or datetime.utcnow(),
        )
        for seat, (name, identity_id) in enumerate(players):
            game.players.append(TableGamePlayer(seat=seat, name=name, identity_id=identity_id))
        for identity_id in winner_ids:
            game.winners.append(TableGameWinner(identity_id=identity_id))
        db_session.add(game)
        db_session.commit()
        return game

    return _make_table_game


@pytest.fixture
def make_wizard_game(db_session):
    """Factory for committed Wizard games."""
    def _make_wizard_game(players, winner_id=None, created_at=None):
        game = WizardGame(
            game_type="wizard",
            winner_identity_id=winner_id,
            created_at=created_at or datetime.utcnow(),
        )
        for seat, (name, identity_id) in enumerate(players):
            game.players.append(WizardGamePlayer(seat=seat, name=name, identity_id=identity_id))
        db_session.add(game)
        db_session.commit()
        return game

    return _make_wizard_game
