from datetime import datetime, timezone

import pytest

from core.exceptions import StaleSessionError
from core.models import ChatRoom, Session
from services.state import StateContainer

BASE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _session(user_id="me"):
    return Session(access_token="secret", refresh_token="r", user_id=user_id, expires_at=2**31)


class TestStateContainer:
    def test_transaction_publishes_once(self):
        state = StateContainer()
        published = []
        state.subscribe(published.append)

        with state.transaction():
            state.commit(search_query="a")
            state.set_active_room("r1")

        assert len(published) == 1
        assert published[0].search_query == "a"
        assert published[0].active_room_id == "r1"

    def test_snapshots_are_immutable_values(self):
        state = StateContainer()
        before = state.snapshot
        state.commit(search_query="x")
        assert before.search_query == ""

    def test_end_session_clears_user_state_and_keeps_notifications(self):
        state = StateContainer()
        ctx = state.begin_session(_session())
        state.set_rooms([ChatRoom(id="r1", user_ids=["me", "x"], created_at=BASE)])
        state.notify("error", "boom")

        previous = state.end_session()

        assert previous == ctx
        assert state.context is None
        assert state.snapshot.rooms == []
        assert state.snapshot.session is None
        assert [n.message for n in state.snapshot.notifications] == ["boom"]
        with pytest.raises(StaleSessionError):
            state.ensure_current(ctx, "fetch")

    def test_new_session_gets_new_generation(self):
        state = StateContainer()
        first = state.begin_session(_session())
        state.end_session()
        second = state.begin_session(_session())

        assert first.user_id == second.user_id
        assert not state.is_current(first)
        assert state.is_current(second)

    def test_notifications_bounded(self):
        state = StateContainer(notification_limit=3)
        for i in range(5):
            state.notify("info", str(i))
        assert [n.message for n in state.snapshot.notifications] == ["2", "3", "4"]

    def test_public_dict_strips_tokens(self):
        state = StateContainer()
        state.begin_session(_session())

        data = state.snapshot.to_public_dict()

        assert data["session"] == {"user_id": "me", "expires_at": 2**31}

    def test_failing_listener_does_not_block_others(self):
        state = StateContainer()
        seen = []

        def broken(snapshot):
            raise RuntimeError("render failed")

        state.subscribe(broken)
        state.subscribe(seen.append)
        state.commit(search_query="q")

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_report_error_after_session_end_is_silent(self):
        state = StateContainer()
        ctx = state.begin_session(_session())
        state.end_session()

        await state.report_error(ctx, "Error fetching messages", RuntimeError("late"))

        assert state.snapshot.notifications == []
