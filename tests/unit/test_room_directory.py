"""
Unit tests for RoomDirectory

Directory loading with summaries, ordering, message folding, room events and
the client-side username filter.
"""
from datetime import datetime, timedelta, timezone

import pytest

from core.events import RoomDeleted, RoomInserted, RoomUpdated
from core.exceptions import AuthorizationError
from core.models import SELF_CHAT_LABEL, UNKNOWN_USER_LABEL, ChatRoom, Message, Profile, Session
from providers.memory_backend import MemoryDataStore, MemoryObjectStorage
from services.profile_directory import ProfileDirectory
from services.room_directory import RoomDirectory, filter_rooms, room_label
from services.state import StateContainer

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _at(seconds):
    return BASE + timedelta(seconds=seconds)


@pytest.fixture
def state():
    container = StateContainer()
    container.begin_session(Session(access_token="t", user_id="me", expires_at=2**31))
    return container


@pytest.fixture
def store():
    return MemoryDataStore()


@pytest.fixture
def directory(store, state):
    profiles = ProfileDirectory(store, MemoryObjectStorage(), state)
    return RoomDirectory(store, state, profiles)


async def _seed(store):
    await store.insert(
        "profiles",
        [
            {"id": "me", "username": "me"},
            {"id": "alice", "username": "Alice"},
            {"id": "bob", "username": "bob"},
        ],
    )
    await store.insert(
        "chat_rooms",
        [
            {"id": "r-alice", "user_ids": ["alice", "me"], "created_at": _at(0)},
            {"id": "r-bob", "user_ids": ["bob", "me"], "created_at": _at(1)},
            {"id": "r-self", "user_ids": ["me", "me"], "created_at": _at(2)},
            {"id": "r-other", "user_ids": ["alice", "bob"], "created_at": _at(3)},
        ],
    )
    await store.insert(
        "messages",
        [
            {"id": "m1", "room_id": "r-alice", "sender_id": "alice", "type": "text",
             "message": "hello", "created_at": _at(10), "seen": False},
            {"id": "m2", "room_id": "r-alice", "sender_id": "alice", "type": "audio",
             "message": "", "media_url": "http://x/a.ogg", "created_at": _at(11), "seen": False},
            {"id": "m3", "room_id": "r-bob", "sender_id": "me", "type": "text",
             "message": "yo", "created_at": _at(5), "seen": False},
        ],
    )


class TestLoadAll:
    @pytest.mark.asyncio
    async def test_summaries_and_order(self, directory, store, state):
        await _seed(store)

        assert await directory.load_all(state.context, "me") is True

        rooms = state.snapshot.rooms
        assert [r.id for r in rooms] == ["r-alice", "r-bob", "r-self"]

        alice = state.snapshot.room("r-alice")
        assert alice.last_message_preview == "[Voice Message]"
        assert alice.unseen_count == 2
        assert alice.last_message_sender_id == "alice"

        bob = state.snapshot.room("r-bob")
        assert bob.unseen_count == 0
        assert bob.last_message_preview == "yo"

        # rooms without messages sort by creation time
        assert state.snapshot.room("r-self").last_message_time is None
        assert set(state.snapshot.profiles) >= {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_authorization_failure_escalates(self, directory, store, state):
        hook_calls = []

        async def hook(ctx):
            hook_calls.append(ctx)

        state.on_authorization_failure(hook)
        store.fail_next("select", "chat_rooms", AuthorizationError("token revoked"))

        assert await directory.load_all(state.context, "me") is False
        assert hook_calls == [state.context]


class TestMessageFolding:
    @pytest.mark.asyncio
    async def test_insert_increments_and_reorders(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")

        message = Message(id="m9", room_id="r-bob", sender_id="bob", text="new", created_at=_at(20))
        directory.apply_message_insert(message, "me")

        bob = state.snapshot.room("r-bob")
        assert bob.unseen_count == 1
        assert bob.last_message_preview == "new"
        assert state.snapshot.rooms[0].id == "r-bob"

    @pytest.mark.asyncio
    async def test_own_message_does_not_count(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")

        mine = Message(id="m9", room_id="r-bob", sender_id="me", text="mine", created_at=_at(20))
        directory.apply_message_insert(mine, "me")

        assert state.snapshot.room("r-bob").unseen_count == 0

    @pytest.mark.asyncio
    async def test_older_message_keeps_preview(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")

        old = Message(id="m0", room_id="r-alice", sender_id="alice", text="old", created_at=_at(1))
        directory.apply_message_insert(old, "me")

        alice = state.snapshot.room("r-alice")
        assert alice.unseen_count == 3
        assert alice.last_message_preview == "[Voice Message]"

    @pytest.mark.asyncio
    async def test_seen_update_decrements_with_floor(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")
        before = Message(id="m3", room_id="r-bob", sender_id="bob", text="x", created_at=_at(5))
        after = before.model_copy(update={"seen": True})

        directory.apply_message_change(before, after, "me")

        assert state.snapshot.room("r-bob").unseen_count == 0


class TestRoomEvents:
    @pytest.mark.asyncio
    async def test_room_update_patches_preview(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")

        await directory.apply_room_event(
            state.context, RoomUpdated("r-self", "note", _at(30).isoformat()), "me"
        )

        room = state.snapshot.rooms[0]
        assert room.id == "r-self"
        assert room.last_message_preview == "note"

    @pytest.mark.asyncio
    async def test_room_insert_for_viewer_reloads(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")
        await store.insert(
            "chat_rooms", [{"id": "r-new", "user_ids": ["carol", "me"], "created_at": _at(40)}]
        )

        new_room = ChatRoom(id="r-new", user_ids=["carol", "me"], created_at=_at(40))
        await directory.apply_room_event(state.context, RoomInserted(new_room), "me")

        assert state.snapshot.rooms[0].id == "r-new"

    @pytest.mark.asyncio
    async def test_room_insert_for_others_ignored(self, directory, state):
        other = ChatRoom(id="x", user_ids=["alice", "bob"], created_at=_at(40))
        await directory.apply_room_event(state.context, RoomInserted(other), "me")
        assert state.snapshot.rooms == []

    @pytest.mark.asyncio
    async def test_room_delete_clears_active(self, directory, store, state):
        await _seed(store)
        await directory.load_all(state.context, "me")
        state.set_active_room("r-bob")

        await directory.apply_room_event(state.context, RoomDeleted("r-bob"), "me")

        assert state.snapshot.room("r-bob") is None
        assert state.snapshot.active_room_id is None


class TestFilterAndLabels:
    def _rooms(self):
        return [
            ChatRoom(id="r-alice", user_ids=["alice", "me"], created_at=_at(0)),
            ChatRoom(id="r-bob", user_ids=["bob", "me"], created_at=_at(1)),
            ChatRoom(id="r-self", user_ids=["me", "me"], created_at=_at(2)),
            ChatRoom(id="r-ghost", user_ids=["ghost", "me"], created_at=_at(3)),
        ]

    def _profiles(self):
        return {
            "alice": Profile(id="alice", username="Alice"),
            "bob": Profile(id="bob", username="bob"),
        }

    def test_case_insensitive_match(self):
        result = filter_rooms(self._rooms(), "ALI", "me", self._profiles())
        assert [r.id for r in result] == ["r-alice"]

    def test_blank_query_returns_everything(self):
        assert len(filter_rooms(self._rooms(), "   ", "me", self._profiles())) == 4

    def test_self_chat_excluded_from_non_empty_query(self):
        result = filter_rooms(self._rooms(), "me", "me", self._profiles())
        assert result == []

    def test_labels(self):
        rooms = {r.id: r for r in self._rooms()}
        profiles = self._profiles()
        assert room_label(rooms["r-self"], "me", profiles) == SELF_CHAT_LABEL
        assert room_label(rooms["r-alice"], "me", profiles) == "Alice"
        assert room_label(rooms["r-ghost"], "me", profiles) == UNKNOWN_USER_LABEL
