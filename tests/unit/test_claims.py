"""
Unit tests for the account lifecycle: registration claims, username
changes, account deletion and admin assignment.
"""

import pytest

from scorebook.db.models import (
    KIND_GUEST,
    KIND_USER,
    STATE_ACTIVE,
    STATE_DELETED,
    STATE_LINKED,
    STATE_MERGED,
    IdentityAuditLog,
    PlayerIdentity,
    TableGame,
    TableGamePlayer,
)
from scorebook.identities.claims import ClaimWorkflow
from scorebook.identities.errors import ConflictError, NotFoundError


def _live_identities_of(db_session, user_id):
    db_session.expire_all()
    return (
        db_session.query(PlayerIdentity)
        .filter(PlayerIdentity.user_id == user_id, PlayerIdentity.state == STATE_ACTIVE)
        .all()
    )


class TestClaimOnRegistration:
    def test_claims_guest_with_username(self, service, db_session, make_user, make_table_game):
        guest = service.resolve("Alice")
        make_table_game(players=[("Alice", guest.id)])
        user = make_user("alice")

        result = service.claim_on_registration(user)

        assert result.identity.id == guest.id
        assert result.claimed == [guest.id]
        assert result.created is False

        identity = db_session.get(PlayerIdentity, guest.id)
        assert identity.user_id == user.id
        assert identity.kind == KIND_USER
        # Same identity, so games need no rewriting
        assert db_session.query(TableGamePlayer).one().identity_id == guest.id

    def test_creates_identity_when_nothing_matches(self, service, db_session, make_user):
        user = make_user("alice")

        result = service.claim_on_registration(user)

        assert result.created is True
        assert result.claimed == []
        assert result.identity.display_name == "alice"
        assert result.identity.kind == KIND_USER

    def test_alias_matches_are_linked_not_claimed(self, service, db_session, make_user, make_table_game):
        ally = service.resolve("Ally")
        service.add_alias(ally.id, "alice")
        make_table_game(players=[("Ally", ally.id)])
        user = make_user("alice")

        result = service.claim_on_registration(user)

        assert result.created is True
        assert result.claimed == [ally.id]
        assert len(result.links) == 1
        assert result.propagation.updated["table_games"] == 1

        db_session.expire_all()
        linked = db_session.get(PlayerIdentity, ally.id)
        assert linked.state == STATE_LINKED
        assert linked.user_id is None
        assert linked.merged_into_id == result.identity.id

        entry = db_session.query(TableGamePlayer).one()
        assert entry.identity_id == result.identity.id
        assert entry.previous_identity_id == ally.id

    def test_second_claim_is_noop(self, service, db_session, make_user):
        service.resolve("Alice")
        user = make_user("alice")

        first = service.claim_on_registration(user)
        second = service.claim_on_registration(user)

        assert second.identity.id == first.identity.id
        assert second.claimed == []
        assert second.created is False
        assert len(_live_identities_of(db_session, user.id)) == 1

    def test_name_owned_by_other_user_conflicts(self, service, db_session, make_user):
        first = make_user("alice")
        service.claim_on_registration(first)
        second = make_user("Alice")

        with pytest.raises(ConflictError):
            service.claim_on_registration(second)

        assert _live_identities_of(db_session, second.id) == []

    def test_claim_is_audited(self, service, db_session, make_user):
        user = make_user("alice")
        service.claim_on_registration(user)

        entry = db_session.query(IdentityAuditLog).filter_by(action="claim").one()
        assert entry.actor_id == user.id
        assert entry.details["created"] is True


class TestCompareAndSwap:
    def test_claimed_guest_is_not_claimed_twice(self, db_session, make_user, service):
        guest = service.resolve("Alice")
        first = make_user("alice")
        second = make_user("ALICE")
        workflow = ClaimWorkflow(db_session)

        assert workflow._claim_by_name(first, "alice").id == guest.id
        db_session.commit()

        assert workflow._claim_by_name(second, "alice") is None

    def test_lost_update_tries_next_candidate(self, db_session, make_user, service, monkeypatch):
        """The row changed between the candidate read and the conditional update."""
        guest = service.resolve("Alice")
        user = make_user("alice")
        workflow = ClaimWorkflow(db_session)

        # Another registration takes the guest right after we list candidates
        other = make_user("other")
        real_begin_nested = db_session.begin_nested
        taken = []

        def begin_nested_after_steal():
            if not taken:
                db_session.query(PlayerIdentity).filter(PlayerIdentity.id == guest.id).update(
                    {"user_id": other.id, "kind": KIND_USER}, synchronize_session=False
                )
                taken.append(True)
            return real_begin_nested()

        monkeypatch.setattr(db_session, "begin_nested", begin_nested_after_steal)

        assert workflow._claim_by_name(user, "alice") is None
        db_session.expire_all()
        assert db_session.get(PlayerIdentity, guest.id).user_id == other.id


class TestUsernameChange:
    def test_rename_follows_username(self, service, db_session, make_user):
        user = make_user("alice")
        identity = service.claim_on_registration(user).identity
        identity_id = identity.id

        result = service.handle_username_change(user, "alice", "Alicia")

        assert result.merged_ids == []
        renamed = db_session.get(PlayerIdentity, identity_id)
        assert renamed.display_name == "Alicia"
        assert [h.name for h in renamed.name_history] == ["alice"]
        # Old name still finds the user
        assert service.resolve("alice").id == identity_id

    def test_guest_holding_new_name_is_merged(self, service, db_session, make_user, make_table_game):
        user = make_user("alice")
        identity_id = service.claim_on_registration(user).identity.id
        ali = service.resolve("Ali")
        make_table_game(players=[("Ali", ali.id)])

        result = service.handle_username_change(user, "alice", "Ali")

        assert result.merged_ids == [ali.id]
        db_session.expire_all()
        assert db_session.get(PlayerIdentity, ali.id).state == STATE_MERGED
        identity = db_session.get(PlayerIdentity, identity_id)
        assert identity.display_name == "Ali"
        assert identity.alias_names() == set()
        assert db_session.query(TableGamePlayer).one().identity_id == identity_id

    def test_new_name_owned_by_other_user(self, service, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        service.claim_on_registration(alice)
        service.claim_on_registration(bob)

        with pytest.raises(ConflictError):
            service.handle_username_change(alice, "alice", "Bob")

    def test_user_without_identity_gets_one(self, service, db_session, make_user):
        user = make_user("alicia")

        result = service.handle_username_change(user, "alice", "alicia")

        assert result.created is True
        identity = db_session.get(PlayerIdentity, result.identity.id)
        assert identity.display_name == "alicia"
        assert [h.name for h in identity.name_history] == ["alice"]


class TestAccountDeletion:
    def test_identities_become_guests(self, service, db_session, make_user):
        user = make_user("alice")
        identity_id = service.claim_on_registration(user).identity.id

        assert service.handle_account_deletion(user.id) == 1

        identity = db_session.get(PlayerIdentity, identity_id)
        assert identity.user_id is None
        assert identity.kind == KIND_GUEST
        assert identity.is_live

    def test_identities_soft_deleted_on_request(self, service, db_session, make_user):
        user = make_user("alice")
        identity_id = service.claim_on_registration(user).identity.id

        assert service.handle_account_deletion(user.id, delete_identities=True) == 1

        assert db_session.get(PlayerIdentity, identity_id).state == STATE_DELETED

    def test_linked_guests_get_their_games_back(self, service, db_session, make_user, make_table_game):
        user = make_user("alice")
        identity_id = service.claim_on_registration(user).identity.id
        guest = service.resolve("Ally")
        game = make_table_game(players=[("Ally", guest.id)], winner_id=guest.id, winner_ids=[guest.id])
        service.link_guest_to_user(guest.id, user.id)

        assert service.handle_account_deletion(user.id, delete_identities=True) == 1

        db_session.expire_all()
        assert db_session.get(PlayerIdentity, identity_id).state == STATE_DELETED
        restored = db_session.get(PlayerIdentity, guest.id)
        assert restored.state == STATE_ACTIVE
        assert restored.kind == KIND_GUEST
        assert service.resolve("Ally").id == guest.id

        player = db_session.query(TableGamePlayer).filter_by(game_id=game.id).one()
        assert player.identity_id == guest.id
        assert player.previous_identity_id is None
        assert db_session.get(TableGame, game.id).winner_identity_id == guest.id

    def test_linked_guests_stay_with_detached_identity(self, service, db_session, make_user):
        user = make_user("alice")
        identity_id = service.claim_on_registration(user).identity.id
        guest = service.resolve("Ally")
        service.link_guest_to_user(guest.id, user.id)

        assert service.handle_account_deletion(user.id) == 1

        db_session.expire_all()
        assert db_session.get(PlayerIdentity, guest.id).state == STATE_LINKED
        assert service.resolve("Ally").id == identity_id

    def test_user_without_identities(self, service, make_user):
        user = make_user("alice")
        assert service.handle_account_deletion(user.id) == 0


class TestAdminAssignment:
    def test_assign_and_detach(self, service, db_session, make_user):
        user = make_user("alice")
        guest = service.resolve("Ally")

        view = service.assign_to_user(guest.id, user.id, actor_id=1)
        assert view.user_id == user.id
        assert view.kind == KIND_USER

        view = service.detach_from_user(guest.id, actor_id=1)
        assert view.user_id is None
        assert view.kind == KIND_GUEST

        actions = [e.action for e in db_session.query(IdentityAuditLog).order_by(IdentityAuditLog.id)]
        assert actions == ["assign", "detach"]

    def test_assign_rejects_owned_identity(self, service, make_user):
        alice = make_user("alice")
        bob = make_user("bob")
        service.claim_on_registration(alice)
        owned = service.get_user_identities(alice.id).primary

        with pytest.raises(ConflictError):
            service.assign_to_user(owned.id, bob.id)

    def test_assign_rejects_user_with_identity(self, service, make_user):
        alice = make_user("alice")
        service.claim_on_registration(alice)
        guest = service.resolve("Ally")

        with pytest.raises(ConflictError):
            service.assign_to_user(guest.id, alice.id)

    def test_assign_unknown_user(self, service):
        guest = service.resolve("Ally")
        with pytest.raises(NotFoundError):
            service.assign_to_user(guest.id, 9999)
