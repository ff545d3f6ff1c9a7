"""
Unit tests for IdentityResolver.

Covers lookup order, idempotence and recovery from a lost create race.
"""

import pytest

from scorebook.db.models import KIND_GUEST, KIND_USER, PlayerIdentity
from scorebook.identities.errors import ConflictError, RaceLostError
from scorebook.identities.resolver import IdentityResolver


@pytest.fixture
def resolver(db_session):
    return IdentityResolver(db_session)


class TestResolve:
    def test_creates_guest_for_unknown_name(self, resolver):
        identity = resolver.resolve("Alice", created_by=5)
        assert identity.id is not None
        assert identity.kind == KIND_GUEST
        assert identity.created_by == 5
        assert identity.is_live

    def test_idempotent_and_case_insensitive(self, resolver, db_session):
        first = resolver.resolve("Alice")
        assert resolver.resolve("  ALICE ").id == first.id
        assert resolver.resolve("alice").id == first.id
        assert db_session.query(PlayerIdentity).count() == 1

    def test_resolves_alias(self, resolver):
        robert = resolver.resolve("Robert")
        resolver.store.add_alias(robert, "Bob")
        assert resolver.resolve("bob").id == robert.id

    def test_resolves_previous_name(self, resolver):
        identity = resolver.resolve("Alice")
        resolver.store.rename(identity, "Alicia")
        assert resolver.resolve("Alice").id == identity.id

    def test_empty_name_rejected(self, resolver):
        with pytest.raises(ValueError):
            resolver.resolve("   ")

    def test_deleted_identity_not_resolved(self, resolver):
        old = resolver.resolve("Alice")
        resolver.store.soft_delete(old)
        new = resolver.resolve("Alice")
        assert new.id != old.id
        assert new.is_live


class TestRace:
    def test_second_insert_loses(self, resolver, db_session):
        resolver._create("Alice")
        db_session.commit()

        with pytest.raises(RaceLostError):
            resolver._create("alice")

        # The savepoint rolled back only the losing insert
        assert db_session.query(PlayerIdentity).count() == 1

    def test_lost_race_returns_winner(self, resolver, db_session, monkeypatch):
        """Both requests miss the lookup; the loser re-reads the winner."""
        winner = resolver._create("Alice")
        db_session.commit()

        real_find = resolver.store.find_by_name
        calls = []

        def stale_find(name):
            calls.append(name)
            if len(calls) == 1:
                return None
            return real_find(name)

        monkeypatch.setattr(resolver.store, "find_by_name", stale_find)

        result = resolver.resolve("ALICE")
        assert result.id == winner.id
        assert len(calls) == 2
        assert db_session.query(PlayerIdentity).count() == 1

    def test_winner_gone_before_reread_creates_again(self, resolver, db_session, monkeypatch):
        """The winner is deleted between our failed insert and the re-read."""
        winner = resolver._create("Alice")
        db_session.commit()

        real_find = resolver.store.find_by_name
        calls = []

        def find_then_delete_winner(name):
            calls.append(name)
            if len(calls) == 1:
                return None
            if len(calls) == 2:
                resolver.store.soft_delete(winner)
            return real_find(name)

        monkeypatch.setattr(resolver.store, "find_by_name", find_then_delete_winner)

        result = resolver.resolve("alice")
        assert result.id != winner.id
        assert result.is_live
        assert len(calls) == 2

    def test_race_lost_every_time_is_a_conflict(self, resolver, db_session, monkeypatch):
        resolver._create("Alice")
        db_session.commit()
        monkeypatch.setattr(resolver.store, "find_by_name", lambda name: None)

        with pytest.raises(ConflictError):
            resolver.resolve("alice")
        assert db_session.query(PlayerIdentity).count() == 1


class TestInsertIdentity:
    def test_inserts_with_user(self, resolver, make_user):
        user = make_user("carol")
        identity = resolver.insert_identity("Carol", kind=KIND_USER, user_id=user.id, created_by=user.id)
        assert identity.user_id == user.id
        assert identity.created_by == user.id

    def test_taken_name_loses_without_breaking_the_transaction(self, resolver, db_session):
        resolver.resolve("Alice")
        with pytest.raises(RaceLostError):
            resolver.insert_identity("ALICE", kind=KIND_GUEST)
        assert resolver.resolve("Bob").is_live


class TestEnsureUserIdentity:
    def test_creates_user_identity(self, resolver, make_user):
        user = make_user("carol")
        identity, created = resolver.ensure_user_identity(user.id, "Carol")
        assert created is True
        assert identity.user_id == user.id
        assert identity.kind == KIND_USER

    def test_returns_existing(self, resolver, make_user):
        user = make_user("carol")
        first, _ = resolver.ensure_user_identity(user.id, "Carol")
        again, created = resolver.ensure_user_identity(user.id, "Something Else")
        assert created is False
        assert again.id == first.id

    def test_name_held_by_other_identity(self, resolver, make_user):
        user = make_user("carol")
        guest = resolver.resolve("Carol")
        with pytest.raises(ConflictError) as exc_info:
            resolver.ensure_user_identity(user.id, "carol")
        assert exc_info.value.identity_id == guest.id

    def test_lost_user_race_returns_winner(self, resolver, db_session, make_user, monkeypatch):
        user = make_user("carol")
        winner, _ = resolver.ensure_user_identity(user.id, "Carol")
        db_session.commit()

        real_find = resolver.store.find_by_user
        calls = []

        def stale_find(user_id):
            calls.append(user_id)
            if len(calls) == 1:
                return None
            return real_find(user_id)

        monkeypatch.setattr(resolver.store, "find_by_user", stale_find)
        # Skip the name pre-check so the insert reaches the database
        monkeypatch.setattr(resolver.store, "find_name_holder", lambda *a, **kw: None)

        identity, created = resolver.ensure_user_identity(user.id, "Carol 2")
        assert created is False
        assert identity.id == winner.id
