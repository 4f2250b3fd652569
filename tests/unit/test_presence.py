from datetime import datetime, timezone

import pytest

from core.events import PresenceLeft, PresenceSynced
from core.models import Session
from providers.memory_backend import MemoryDataStore, MemoryPresenceChannel
from services.presence import PresenceTracker, online_keys
from services.state import StateContainer
from services.subscriptions import SubscriptionRegistry

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


@pytest.fixture
def channel():
    return MemoryPresenceChannel()


@pytest.fixture
async def store():
    data = MemoryDataStore()
    await data.insert("profiles", [{"id": "alice", "username": "alice"}, {"id": "bob", "username": "bob"}])
    return data


def _tracker(channel, store, user_id):
    state = StateContainer()
    state.begin_session(Session(access_token="t", user_id=user_id, expires_at=2**31))
    return PresenceTracker(channel, store, state, SubscriptionRegistry(), clock=_clock)


def test_online_keys_skips_empty():
    assert online_keys({"a": [{"online_at": "x"}], "b": []}) == ["a"]


class TestPresenceTracker:
    @pytest.mark.asyncio
    async def test_sync_marks_everyone_online(self, channel, store):
        alice = _tracker(channel, store, "alice")
        bob = _tracker(channel, store, "bob")

        assert await alice.start(alice.state.context, "alice")
        assert await bob.start(bob.state.context, "bob")

        assert alice.is_online("bob")
        assert bob.is_online("alice")
        assert channel.state("online-status")["alice"][0]["username"] == "alice"

    @pytest.mark.asyncio
    async def test_leave_marks_offline_and_stamps_last_seen(self, channel, store):
        alice = _tracker(channel, store, "alice")
        bob = _tracker(channel, store, "bob")
        await alice.start(alice.state.context, "alice")
        await bob.start(bob.state.context, "bob")

        await channel.disconnect("online-status", "bob")

        record = alice.state.snapshot.presence["bob"]
        assert record.online is False
        assert record.last_seen == NOW
        assert store.tables["profiles"]["bob"]["last_seen"] == NOW
        assert alice.last_seen_writes == 1

    @pytest.mark.asyncio
    async def test_stop_writes_last_seen_once(self, channel, store):
        bob = _tracker(channel, store, "bob")
        await bob.start(bob.state.context, "bob")

        await bob.stop()
        await bob.stop()

        assert bob.last_seen_writes == 1
        assert store.calls.count(("update", "profiles")) == 1
        assert channel.state("online-status") == {}
        assert "bob" not in bob.state.snapshot.presence
        assert bob.status()["active"] is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent_for_same_context(self, channel, store):
        alice = _tracker(channel, store, "alice")
        ctx = alice.state.context
        await alice.start(ctx, "alice")
        await alice.start(ctx, "alice")

        assert len(channel.state("online-status")["alice"]) == 1

    @pytest.mark.asyncio
    async def test_events_ignored_after_session_ends(self, channel, store):
        alice = _tracker(channel, store, "alice")
        bob = _tracker(channel, store, "bob")
        await alice.start(alice.state.context, "alice")
        await bob.start(bob.state.context, "bob")
        alice.state.end_session()

        await channel.disconnect("online-status", "bob")

        assert alice.last_seen_writes == 0

    def test_apply_sync_then_leave(self, channel, store):
        tracker = _tracker(channel, store, "alice")
        tracker.apply(PresenceSynced(["alice", "bob"]))
        assert tracker.state.snapshot.online_user_ids() == ["alice", "bob"]

        tracker.apply(PresenceLeft("bob"))
        assert not tracker.is_online("bob")

        tracker.apply(PresenceSynced(["alice"]))
        assert tracker.state.snapshot.presence["bob"].last_seen == NOW
