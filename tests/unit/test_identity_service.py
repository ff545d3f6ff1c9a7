"""
Unit tests for IdentityService.
"""

from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from scorebook.db.models import IdentityAuditLog, PlayerIdentity, TableGamePlayer
from scorebook.identities.errors import ConflictError, NotFoundError, StoreUnavailableError
from scorebook.identities.schemas import IdentityView


def test_resolve_commits_new_identity(service, db_session):
    """A resolved guest survives a rollback of later work."""
    view = service.resolve("Alice", created_by=3)
    db_session.rollback()

    identity = db_session.get(PlayerIdentity, view.id)
    assert identity is not None
    assert identity.created_by == 3
    assert isinstance(view, IdentityView)


def test_resolve_empty_name(service, db_session):
    with pytest.raises(ValueError):
        service.resolve("  ")
    assert db_session.query(PlayerIdentity).count() == 0


def test_get_identity_hides_non_live_from_non_admins(service):
    """Merged identities are only visible to admins, with their pointer."""
    bob = service.resolve("Bob")
    bobby = service.resolve("Bobby")
    service.merge(bob.id, [bobby.id])

    with pytest.raises(NotFoundError):
        service.get_identity(bobby.id)

    admin_view = service.get_identity(bobby.id, admin=True)
    assert admin_view.state == "merged"
    assert admin_view.merged_into_id == bob.id


def test_view_strips_linkage_for_non_admins(service, db_session):
    bob = service.resolve("Bob")
    bobby = service.resolve("Bobby")
    service.merge(bob.id, [bobby.id])

    merged = db_session.get(PlayerIdentity, bobby.id)
    view = IdentityView.from_identity(merged)
    assert view.merged_into_id is None
    assert view.name_history == []
    assert IdentityView.from_identity(merged, admin=True).merged_into_id == bob.id


def test_search_include_deleted_is_admin_only(service):
    alice = service.resolve("Alice")
    service.soft_delete(alice.id)

    assert service.search("ali", filters={"include_deleted": True}).total == 0
    page = service.search("ali", filters={"include_deleted": True}, admin=True)
    assert [item.id for item in page.items] == [alice.id]
    assert page.items[0].is_deleted


def test_search_filters_by_user(service, make_user):
    user = make_user("alice")
    service.claim_on_registration(user)
    service.resolve("Alicia")

    page = service.search(filters={"user_id": user.id})
    assert [item.display_name for item in page.items] == ["alice"]


class TestMaintenance:
    def test_alias_add_and_remove(self, service):
        alice = service.resolve("Alice")

        view = service.add_alias(alice.id, "Ali", actor_id=2)
        assert [a.name for a in view.aliases] == ["Ali"]
        assert view.aliases[0].added_by == 2

        view = service.remove_alias(alice.id, "ali")
        assert view.aliases == []

        with pytest.raises(NotFoundError):
            service.remove_alias(alice.id, "ali")

    def test_alias_conflict_rolls_back(self, service, db_session):
        alice = service.resolve("Alice")
        service.resolve("Bob")

        with pytest.raises(ConflictError):
            service.add_alias(alice.id, "bob")
        assert service.get_identity(alice.id).aliases == []

    def test_rename_is_audited(self, service, db_session):
        alice = service.resolve("Alice")

        view = service.rename(alice.id, "Alicia", actor_id=4)

        assert view.display_name == "Alicia"
        assert [h.name for h in view.name_history] == ["Alice"]
        entry = db_session.query(IdentityAuditLog).filter_by(action="rename").one()
        assert entry.details == {"name": "Alicia"}

    def test_soft_delete_and_restore(self, service):
        alice = service.resolve("Alice")

        deleted = service.soft_delete(alice.id)
        assert deleted.state == "deleted"
        assert service.resolve("Alice").id != alice.id

    def test_restore_when_name_free(self, service):
        alice = service.resolve("Alice")
        service.soft_delete(alice.id)

        restored = service.restore(alice.id)
        assert restored.state == "active"
        assert service.resolve("alice").id == alice.id

    def test_merged_identity_stays_merged(self, service):
        bob = service.resolve("Bob")
        bobby = service.resolve("Bobby")
        service.merge(bob.id, [bobby.id])

        with pytest.raises(ConflictError):
            service.restore(bobby.id)
        with pytest.raises(ConflictError):
            service.soft_delete(bobby.id)

    def test_unknown_identity(self, service):
        with pytest.raises(NotFoundError):
            service.soft_delete(9999)
        with pytest.raises(NotFoundError):
            service.rename(9999, "Nobody")


def test_recalculate_stats(service, db_session, make_table_game, make_wizard_game):
    """Counts span both collections; deleted games don't count."""
    alice = service.resolve("Alice")
    bob = service.resolve("Bob")

    make_table_game(players=[("Alice", alice.id), ("Bob", bob.id)], winner_id=alice.id,
                    created_at=datetime(2024, 1, 1))
    make_table_game(players=[("Alice", alice.id)], winner_ids=[alice.id, bob.id],
                    created_at=datetime(2024, 2, 1))
    deleted = make_table_game(players=[("Alice", alice.id)], winner_id=alice.id,
                              created_at=datetime(2024, 5, 1))
    deleted.is_deleted = True
    db_session.commit()
    make_wizard_game(players=[("Alice", alice.id), ("Bob", bob.id)], winner_id=bob.id,
                     created_at=datetime(2024, 3, 1))

    view = service.recalculate_stats(alice.id)

    assert view.total_games == 3
    assert view.total_wins == 2
    assert view.last_game_at == datetime(2024, 3, 1)

    assert service.recalculate_stats(bob.id).total_wins == 2


def test_attach_identities(service, db_session):
    """New identities are flushed with the game, not committed on their own."""
    carol = service.resolve("Carol")
    players = [
        TableGamePlayer(seat=0, name="Alice"),
        TableGamePlayer(seat=1, name=" alice"),
        TableGamePlayer(seat=2, name="Someone", identity_id=carol.id),
        TableGamePlayer(seat=3, name="   "),
    ]

    service.attach_identities(players, created_by=1)

    assert players[0].identity_id is not None
    assert players[1].identity_id == players[0].identity_id
    assert players[2].identity_id == carol.id
    assert players[3].identity_id is None

    db_session.rollback()
    assert db_session.query(PlayerIdentity).count() == 1


def test_get_user_identities_without_identity(service, make_user):
    user = make_user("alice")
    view = service.get_user_identities(user.id)
    assert view.primary is None
    assert view.linked == []


class TestSuggestions:
    def test_exact_match(self, service, make_user):
        alice = service.resolve("Alice")
        user = make_user("alice")

        [suggestion] = service.suggest_identities(user.id).suggestions

        assert suggestion.identity.id == alice.id
        assert suggestion.match_type == "exact"
        assert suggestion.score == 1.0

    def test_match_types(self, service, make_user):
        service.resolve("Alise")
        service.resolve("Alice Smith")
        ally = service.resolve("Ally")
        service.add_alias(ally.id, "ALICE")
        service.resolve("Zed")
        user = make_user("alice")

        result = service.suggest_identities(user.id)

        by_name = {s.identity.display_name: s for s in result.suggestions}
        assert set(by_name) == {"Alise", "Alice Smith", "Ally"}
        assert by_name["Ally"].match_type == "alias"
        assert by_name["Ally"].matched_name == "ALICE"
        assert by_name["Alice Smith"].match_type == "contains"
        assert by_name["Alise"].match_type == "fuzzy"
        assert by_name["Alise"].score >= 0.85
        assert [s.score for s in result.suggestions] == sorted(
            (s.score for s in result.suggestions), reverse=True
        )

    def test_owned_and_linked_are_not_suggested(self, service, make_user):
        alice = make_user("alice")
        bob = make_user("alicea")
        service.claim_on_registration(bob)
        guest = service.resolve("Alicee")
        service.link_guest_to_user(guest.id, alice.id)

        result = service.suggest_identities(alice.id)

        assert result.suggestions == []
        assert result.already_linked == [guest.id]

    def test_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.suggest_identities(9999)


def test_store_outage_is_translated(service, monkeypatch):
    def unreachable(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("could not connect to server"))

    monkeypatch.setattr(service.store, "search", unreachable)

    with pytest.raises(StoreUnavailableError) as exc_info:
        service.search("alice")
    assert "could not connect" in str(exc_info.value)


def test_run_pending_propagation(service, db_session, make_table_game):
    alice = service.resolve("Alice")
    ally = service.resolve("Ally")
    make_table_game(players=[("Ally", ally.id)])
    service.propagator.enqueue(ally.id, alice.id)
    db_session.commit()

    result = service.run_pending_propagation()

    assert result.updated == {"table_games": 1, "wizard_games": 0}
    db_session.expire_all()
    assert db_session.query(TableGamePlayer).one().identity_id == alice.id
