"""
Concurrency tests against a real SQLite database file.

Each worker thread gets its own session and connection, so the partial
unique indexes and the compare-and-swap claim are exercised across
transactions rather than inside one session. Transactions open with
BEGIN IMMEDIATE; without it SQLite rejects concurrent read-then-write
transactions with "database is locked".
"""

import threading

import pytest
from sqlalchemy.orm import sessionmaker

from scorebook.db.models import STATE_ACTIVE, Base, PlayerIdentity, User
from scorebook.db.session import create_db_engine
from scorebook.identities.errors import ConflictError
from scorebook.identities.service import IdentityService
from scorebook.identities.store import IdentityStore

WORKERS = 6


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(
        f"sqlite:///{tmp_path / 'scorebook.db'}",
        sqlite_immediate=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False)


def run_concurrently(worker, count=WORKERS):
    """
    Start count threads together and return worker(i) for each.

    Exceptions raised in a worker are returned in its slot.
    """
    barrier = threading.Barrier(count)
    results = [None] * count

    def run(index):
        barrier.wait(timeout=10)
        try:
            results[index] = worker(index)
        except Exception as e:
            results[index] = e

    threads = [threading.Thread(target=run, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    assert not any(thread.is_alive() for thread in threads)
    return results


def live_identities(session_factory, **filters):
    session = session_factory()
    try:
        return (
            session.query(PlayerIdentity)
            .filter_by(state=STATE_ACTIVE, **filters)
            .all()
        )
    finally:
        session.close()


def add_user(session_factory, username):
    session = session_factory()
    try:
        user = User(username=username)
        session.add(user)
        session.commit()
        return user.id
    finally:
        session.close()


class TestConcurrentResolve:
    def test_same_name_gives_one_identity(self, session_factory):
        spellings = ["Alice", " alice", "ALICE "]

        def worker(index):
            session = session_factory()
            try:
                return IdentityService(session).resolve(spellings[index % len(spellings)]).id
            finally:
                session.close()

        results = run_concurrently(worker)

        assert not [r for r in results if isinstance(r, Exception)]
        assert len(set(results)) == 1
        assert len(live_identities(session_factory, normalized_name="alice")) == 1

    def test_stale_lookup_recovers_through_unique_index(self, session_factory, monkeypatch):
        """
        Every worker misses its first lookup, as if another transaction
        committed the name just after it looked. Only the index stops the
        duplicates.
        """
        real_find = IdentityStore.find_by_name
        state = threading.local()

        def first_lookup_misses(self, name):
            if not getattr(state, "missed", False):
                state.missed = True
                return None
            return real_find(self, name)

        monkeypatch.setattr(IdentityStore, "find_by_name", first_lookup_misses)

        def worker(index):
            session = session_factory()
            try:
                return IdentityService(session).resolve("Bob").id
            finally:
                session.close()

        results = run_concurrently(worker)

        assert not [r for r in results if isinstance(r, Exception)]
        assert len(set(results)) == 1
        assert len(live_identities(session_factory, normalized_name="bob")) == 1

    def test_different_names_do_not_interfere(self, session_factory):
        def worker(index):
            session = session_factory()
            try:
                return IdentityService(session).resolve(f"Player {index}").id
            finally:
                session.close()

        results = run_concurrently(worker)

        assert not [r for r in results if isinstance(r, Exception)]
        assert len(set(results)) == WORKERS


class TestConcurrentRegistration:
    def test_repeated_claim_leaves_one_identity(self, session_factory):
        user_id = add_user(session_factory, "alice")
        session = session_factory()
        try:
            guest_id = IdentityService(session).resolve("Alice").id
        finally:
            session.close()

        def worker(index):
            session = session_factory()
            try:
                user = session.get(User, user_id)
                return IdentityService(session).claim_on_registration(user).identity.id
            finally:
                session.close()

        results = run_concurrently(worker, count=2)

        assert results == [guest_id, guest_id]
        owned = live_identities(session_factory, user_id=user_id)
        assert [identity.id for identity in owned] == [guest_id]

    def test_two_accounts_cannot_both_claim_a_guest(self, session_factory):
        """'alice' and 'ALICE' normalize to the same guest name."""
        user_ids = [add_user(session_factory, "alice"), add_user(session_factory, "ALICE")]
        session = session_factory()
        try:
            guest_id = IdentityService(session).resolve("Alice").id
        finally:
            session.close()

        def worker(index):
            session = session_factory()
            try:
                user = session.get(User, user_ids[index])
                return IdentityService(session).claim_on_registration(user).identity.id
            finally:
                session.close()

        results = run_concurrently(worker, count=2)

        assert sorted(type(r).__name__ for r in results) == ["ConflictError", "int"]
        winner_index = 0 if results[0] == guest_id else 1
        assert isinstance(results[1 - winner_index], ConflictError)

        session = session_factory()
        try:
            guest = session.get(PlayerIdentity, guest_id)
            assert guest.user_id == user_ids[winner_index]
            assert session.query(PlayerIdentity).filter_by(user_id=user_ids[1 - winner_index]).count() == 0
        finally:
            session.close()
