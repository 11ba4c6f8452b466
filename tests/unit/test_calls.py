"""Unit tests for the call store.

Tests call creation, roster membership, deletion on empty roster, and the
pending-call lifecycle.
"""

import pytest

from teamcall.calls import CallStore
from teamcall.errors import AlreadyInCallError, CallNotFoundError
from tests.helpers.signaling_env import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> CallStore:
    return CallStore(clock=clock)


class TestCreateCall:
    """Test call creation and lookup."""

    def test_create_call_is_listed_with_zero_participants(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u-alice", "Alice", creator_connection_id="c1")

        calls = store.list_active_calls("acme")
        assert [c.call_id for c in calls] == [call_id]
        assert calls[0].participant_count == 0
        assert calls[0].creator_name == "Alice"
        assert store.get_call(call_id).is_pending is True

    def test_call_ids_are_unique_and_unguessable(self, store: CallStore) -> None:
        ids = {store.create_call("acme", "u1", "U") for _ in range(50)}

        assert len(ids) == 50
        for call_id in ids:
            # 16 random bytes in url-safe base64
            assert len(call_id) >= 22

    def test_calls_are_scoped_to_workspace(self, store: CallStore) -> None:
        acme = store.create_call("acme", "u1", "U")
        store.create_call("globex", "u2", "V")

        assert [c.call_id for c in store.list_active_calls("acme")] == [acme]
        assert store.list_active_calls("unknown") == []

    def test_listing_is_ordered_by_creation(self, store: CallStore, clock: FakeClock) -> None:
        first = store.create_call("acme", "u1", "U")
        clock.advance(5)
        second = store.create_call("acme", "u2", "V")
        # Same timestamp falls back to creation order
        third = store.create_call("acme", "u3", "W")

        assert [c.call_id for c in store.list_active_calls("acme")] == [first, second, third]

    def test_get_unknown_call_raises(self, store: CallStore) -> None:
        with pytest.raises(CallNotFoundError) as exc_info:
            store.get_call("nope")

        assert exc_info.value.code == "CALL_NOT_FOUND"
        assert exc_info.value.call_id == "nope"


class TestParticipants:
    """Test roster membership rules."""

    def test_add_participant_activates_call(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u-alice", "Alice")

        result = store.add_participant(call_id, "c1", "u-alice", "Alice")

        assert result.rejoined is False
        assert [p.connection_id for p in result.roster] == ["c1"]
        assert store.get_call(call_id).is_pending is False
        assert store.call_for_connection("c1") == call_id
        assert store.participant_count == 1

    def test_add_participant_is_idempotent(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u-alice", "Alice")
        store.add_participant(call_id, "c1", "u-alice", "Alice")

        result = store.add_participant(call_id, "c1", "u-alice", "Alice B.", peer_id="peer-1")

        assert result.rejoined is True
        assert len(result.roster) == 1
        assert result.participant.user_name == "Alice B."
        assert result.participant.peer_id == "peer-1"

    def test_same_user_on_two_connections_is_two_participants(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u-alice", "Alice")
        store.add_participant(call_id, "c1", "u-alice", "Alice")
        result = store.add_participant(call_id, "c2", "u-alice", "Alice")

        assert [p.connection_id for p in result.roster] == ["c1", "c2"]

    def test_connection_cannot_be_in_two_calls(self, store: CallStore) -> None:
        first = store.create_call("acme", "u1", "U")
        second = store.create_call("acme", "u1", "U")
        store.add_participant(first, "c1", "u1", "U")

        with pytest.raises(AlreadyInCallError) as exc_info:
            store.add_participant(second, "c1", "u1", "U")

        assert exc_info.value.call_id == first
        assert store.get_roster(second) == []

    def test_add_to_unknown_call_raises(self, store: CallStore) -> None:
        with pytest.raises(CallNotFoundError):
            store.add_participant("missing", "c1", "u1", "U")

    def test_roster_is_in_join_order(self, store: CallStore, clock: FakeClock) -> None:
        call_id = store.create_call("acme", "u1", "U")
        for index, conn in enumerate(["c3", "c1", "c2"]):
            clock.advance(1)
            store.add_participant(call_id, conn, f"u{index}", f"User {index}")

        assert [p.connection_id for p in store.get_roster(call_id)] == ["c3", "c1", "c2"]

    def test_roster_is_a_snapshot(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u1", "U")
        store.add_participant(call_id, "c1", "u1", "U")

        roster = store.get_roster(call_id)
        roster[0].user_name = "Mallory"

        assert store.get_roster(call_id)[0].user_name == "U"

    def test_set_peer_identity(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u1", "U")
        store.add_participant(call_id, "c1", "u1", "U")

        updated = store.set_peer_identity(call_id, "c1", "peer-xyz")

        assert updated is not None
        assert updated.peer_id == "peer-xyz"
        assert store.get_roster(call_id)[0].peer_id == "peer-xyz"

    def test_set_peer_identity_for_unknown_participant_is_ignored(
        self, store: CallStore
    ) -> None:
        call_id = store.create_call("acme", "u1", "U")

        assert store.set_peer_identity(call_id, "c1", "peer") is None
        assert store.set_peer_identity("missing", "c1", "peer") is None


class TestRemoval:
    """Test leaving and call deletion."""

    def test_last_participant_leaving_deletes_call(
        self, store: CallStore, clock: FakeClock
    ) -> None:
        call_id = store.create_call("acme", "u1", "U")
        store.add_participant(call_id, "c1", "u1", "U")
        store.add_participant(call_id, "c2", "u2", "V")

        first = store.remove_participant(call_id, "c1")
        assert first.removed is True
        assert first.call_deleted is False
        assert [p.connection_id for p in first.remaining] == ["c2"]

        clock.advance(30)
        second = store.remove_participant(call_id, "c2")
        assert second.call_deleted is True
        assert second.call_duration_s == pytest.approx(30.0)
        assert store.has_call(call_id) is False
        assert store.list_active_calls("acme") == []
        assert store.call_count == 0
        assert store.participant_count == 0

    def test_remove_non_member_is_noop(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u1", "U")
        store.add_participant(call_id, "c1", "u1", "U")

        result = store.remove_participant(call_id, "c9")

        assert result.removed is False
        assert store.has_call(call_id) is True
        assert store.remove_participant("missing", "c1").removed is False

    def test_rejoin_after_leave(self, store: CallStore) -> None:
        call_id = store.create_call("acme", "u1", "U")
        store.add_participant(call_id, "c1", "u1", "U")
        store.add_participant(call_id, "c2", "u2", "V")
        store.remove_participant(call_id, "c1")

        result = store.add_participant(call_id, "c1", "u1", "U")

        assert result.rejoined is False
        assert [p.connection_id for p in result.roster] == ["c2", "c1"]

    def test_workspace_participants(self, store: CallStore) -> None:
        first = store.create_call("acme", "u1", "U")
        second = store.create_call("acme", "u2", "V")
        store.add_participant(first, "c1", "u1", "U")
        store.add_participant(second, "c2", "u2", "V")
        store.add_participant(second, "c3", "u3", "W")

        pairs = store.workspace_participants("acme")

        assert [(cid, p.connection_id) for cid, p in pairs] == [
            (first, "c1"),
            (second, "c2"),
            (second, "c3"),
        ]


class TestPendingCalls:
    """Test cleanup of calls nobody joined."""

    def test_discard_pending_calls_of_creator(self, store: CallStore) -> None:
        pending = store.create_call("acme", "u1", "U", creator_connection_id="c1")
        active = store.create_call("acme", "u1", "U", creator_connection_id="c1")
        other = store.create_call("acme", "u2", "V", creator_connection_id="c2")
        store.add_participant(active, "c5", "u5", "X")

        discarded = store.discard_pending_calls("c1")

        assert [s.call_id for s in discarded] == [pending]
        assert store.has_call(active) is True
        assert store.has_call(other) is True

    def test_expire_pending_calls(self, store: CallStore, clock: FakeClock) -> None:
        old = store.create_call("acme", "u1", "U")
        clock.advance(100)
        fresh = store.create_call("acme", "u2", "V")
        joined = store.create_call("acme", "u3", "W")
        store.add_participant(joined, "c3", "u3", "W")
        clock.advance(30)

        expired = store.expire_pending_calls(120)

        assert [s.call_id for s in expired] == [old]
        assert store.has_call(fresh) is True
        assert store.has_call(joined) is True
