"""
Unit tests for ProfileDirectory

Tests cover:
- Batched fetching of missing profiles
- Partial profile change merging
- Saving a profile with an avatar upload
- User search exclusions and validation
"""
import pytest

from core.events import ProfileChanged
from core.exceptions import StorageUploadError, ValidationError
from core.models import Attachment, Profile, Session
from providers.memory_backend import MemoryDataStore, MemoryObjectStorage
from services.profile_directory import ProfileDirectory
from services.state import StateContainer


@pytest.fixture
def state():
    container = StateContainer()
    container.begin_session(Session(access_token="t", user_id="me", expires_at=2**31))
    return container


@pytest.fixture
async def store():
    data = MemoryDataStore()
    await data.insert(
        "profiles",
        [
            {"id": "me", "username": "me", "email": "me@example.com"},
            {"id": "alice", "username": "Alice", "email": "alice@example.com"},
            {"id": "alina", "username": "alina"},
            {"id": "bob", "username": "bob"},
        ],
    )
    return data


@pytest.fixture
def storage():
    return MemoryObjectStorage()


@pytest.fixture
def directory(store, storage, state):
    return ProfileDirectory(store, storage, state, avatar_bucket="avatars-test")


class TestLoading:
    @pytest.mark.asyncio
    async def test_load_own(self, directory, state):
        profile = await directory.load_own(state.context, "me")

        assert profile.email == "me@example.com"
        assert state.snapshot.profile == profile
        assert directory.get("me") == profile

    @pytest.mark.asyncio
    async def test_load_own_missing_row(self, directory, state):
        assert await directory.load_own(state.context, "ghost") is None
        assert state.snapshot.notifications[-1].level == "error"

    @pytest.mark.asyncio
    async def test_ensure_fetches_only_missing(self, directory, store, state):
        await directory.ensure(state.context, ["alice"])
        store.calls.clear()

        await directory.ensure(state.context, ["alice", "bob", "nobody"])
        await directory.ensure(state.context, ["alice", "bob"])

        assert store.calls == [("select", "profiles")]
        assert set(state.snapshot.profiles) == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_refresh_cached(self, directory, store, state):
        await directory.ensure(state.context, ["bob"])
        store.tables["profiles"]["bob"]["username"] = "robert"

        await directory.refresh_cached(state.context)

        assert directory.get("bob").username == "robert"


class TestProfileChanges:
    @pytest.mark.asyncio
    async def test_partial_change_keeps_other_fields(self, directory, state):
        await directory.ensure(state.context, ["alice"])

        merged = directory.apply_profile_change(ProfileChanged("alice", {"avatar_url": "http://a/1.png"}))

        assert merged.username == "Alice"
        assert merged.email == "alice@example.com"
        assert merged.avatar_url == "http://a/1.png"

    def test_change_for_unknown_profile_is_cached(self, directory):
        merged = directory.apply_profile_change(ProfileChanged("zed", {"username": "zed", "junk": 1}))
        assert merged == Profile(id="zed", username="zed")

    @pytest.mark.asyncio
    async def test_change_to_own_profile_updates_snapshot_profile(self, directory, state):
        await directory.load_own(state.context, "me")

        directory.apply_profile_change(ProfileChanged("me", {"username": "renamed"}))

        assert state.snapshot.profile.username == "renamed"


class TestSaveProfile:
    @pytest.mark.asyncio
    async def test_save_with_avatar(self, directory, storage, store, state):
        avatar = Attachment(filename="face.png", content_type="image/png", data=b"png")

        profile = await directory.save_profile(state.context, "me", "me2", avatar=avatar)

        assert ("avatars-test", "avatars/me/face.png") in storage.objects
        assert profile.avatar_url.endswith("/avatars-test/avatars/me/face.png")
        assert store.tables["profiles"]["me"]["username"] == "me2"
        # email is kept when not supplied
        assert store.tables["profiles"]["me"]["email"] == "me@example.com"
        assert state.snapshot.profile.username == "me2"

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_row_untouched(self, directory, storage, store, state):
        storage.fail_uploads = True
        avatar = Attachment(filename="face.png", content_type="image/png", data=b"png")

        assert await directory.save_profile(state.context, "me", "other", avatar=avatar) is None
        assert store.tables["profiles"]["me"]["username"] == "me"
        assert "Error saving profile" in state.snapshot.notifications[-1].message

    @pytest.mark.asyncio
    async def test_upload_error_type(self, storage):
        await storage.upload("b", "p", b"1")
        with pytest.raises(StorageUploadError):
            await storage.upload("b", "p", b"2")


class TestSearch:
    @pytest.mark.asyncio
    async def test_excludes_viewer_and_partners(self, directory, state):
        results = await directory.search_users(state.context, "Ali", "me", exclude_ids=["alina"])
        assert [p.id for p in results] == ["alice"]

    @pytest.mark.asyncio
    async def test_case_insensitive(self, directory, state):
        results = await directory.search_users(state.context, "AL", "me")
        assert {p.id for p in results} == {"alice", "alina"}

    @pytest.mark.asyncio
    async def test_no_results_notifies(self, directory, state):
        assert await directory.search_users(state.context, "me", "me") == []
        assert state.snapshot.notifications[-1].message == "No users found"

    @pytest.mark.asyncio
    async def test_blank_query_rejected(self, directory, store, state):
        before = list(store.calls)
        with pytest.raises(ValidationError):
            await directory.search_users(state.context, "   ", "me")
        assert store.calls == before
