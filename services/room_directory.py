"""
Room Directory.

The directory is the list of rooms the signed-in user participates in, each
carrying a summary (last message preview and time, last sender, unseen count),
ordered by most recent activity. Summaries are computed from the store when
the directory loads and are then kept current from message events:
`apply_message_insert` is only called for messages that were actually new to
the log, so a duplicate delivery can never count a message twice.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from core.events import RoomChanged, RoomDeleted, RoomInserted, RoomUpdated
from core.exceptions import StaleSessionError
from core.models import SELF_CHAT_LABEL, UNKNOWN_USER_LABEL, ChatRoom, Message, Profile
from providers.backend import DataStore, contains, eq, neq
from services.profile_directory import ProfileDirectory
from services.state import StateContainer, SyncContext
from services.unseen import UnseenCounter

logger = logging.getLogger(__name__)


def room_label(room: ChatRoom, viewer_id: str, profiles: Dict[str, Profile]) -> str:
    if room.is_self_chat(viewer_id):
        return SELF_CHAT_LABEL
    other = profiles.get(room.other_participant(viewer_id) or "")
    return other.username if other and other.username else UNKNOWN_USER_LABEL


def filter_rooms(
    rooms: List[ChatRoom], query: str, viewer_id: str, profiles: Dict[str, Profile]
) -> List[ChatRoom]:
    """Rooms whose other participant's username contains `query`, any case"""
    needle = (query or "").strip().lower()
    if not needle:
        return list(rooms)

    matches = []
    for room in rooms:
        other_id = room.other_participant(viewer_id)
        if other_id is None:
            continue
        other = profiles.get(other_id)
        if other and needle in other.username.lower():
            matches.append(room)
    return matches


class RoomDirectory:
    def __init__(self, store: DataStore, state: StateContainer, profiles: ProfileDirectory):
        self.store = store
        self.state = state
        self.profiles = profiles

    @property
    def rooms(self) -> List[ChatRoom]:
        return self.state.snapshot.rooms

    async def load_all(self, ctx: SyncContext, user_id: str) -> bool:
        """Load every room of `user_id` with its summary, replacing the directory"""
        try:
            rows = await self.store.select("chat_rooms", [contains("user_ids", [user_id])])
            rooms = [ChatRoom.model_validate(row) for row in rows]

            others = {room.other_participant(user_id) for room in rooms}
            await self.profiles.ensure(ctx, [uid for uid in others if uid])

            summaries = await asyncio.gather(*(self._summarize(room, user_id) for room in rooms))
            self.state.ensure_current(ctx, "load rooms")
        except StaleSessionError:
            logger.info("Discarding room directory load: session changed")
            return False
        except Exception as e:
            await self.state.report_error(ctx, "Error fetching chat rooms", e)
            return False

        self.state.set_rooms(list(summaries))
        logger.info(f"Loaded {len(summaries)} rooms for {user_id}")
        return True

    async def _summarize(self, room: ChatRoom, user_id: str) -> ChatRoom:
        last_rows = await self.store.select(
            "messages", [eq("room_id", room.id)], order_by="created_at", descending=True, limit=1
        )
        unseen = await self.store.count(
            "messages",
            [eq("room_id", room.id), eq("seen", False), neq("sender_id", user_id)],
        )

        summary = {"unseen_count": unseen}
        if last_rows:
            last = Message.model_validate(last_rows[0])
            summary.update(
                last_message_preview=UnseenCounter.preview(last),
                last_message_time=last.created_at,
                last_message_sender_id=last.sender_id,
                last_message_seen=last.seen,
            )
        return room.model_copy(update=summary)

    def apply_message_insert(self, message: Message, viewer_id: str) -> Optional[ChatRoom]:
        """Fold a message that is new to its room's log into the room summary"""
        room = self.state.snapshot.room(message.room_id)
        if room is None:
            logger.debug(f"Message {message.id} for unknown room {message.room_id}")
            return None

        changes = {
            "unseen_count": room.unseen_count + int(UnseenCounter.is_unseen_by(message, viewer_id))
        }
        if room.last_message_time is None or message.created_at >= room.last_message_time:
            changes.update(
                last_message_preview=UnseenCounter.preview(message),
                last_message_time=message.created_at,
                last_message_sender_id=message.sender_id,
                last_message_seen=message.seen,
            )
        return self.state.patch_room(room.id, resort=True, **changes)

    def apply_message_change(
        self, previous: Optional[Message], current: Optional[Message], viewer_id: str
    ) -> Optional[ChatRoom]:
        """Adjust the unseen count when a cached message changes or disappears"""
        message = current or previous
        if message is None:
            return None
        room = self.state.snapshot.room(message.room_id)
        if room is None:
            return None

        changes = {}
        delta = UnseenCounter.delta(previous, current, viewer_id)
        if delta:
            changes["unseen_count"] = max(0, room.unseen_count + delta)
        if current is not None and current.created_at == room.last_message_time:
            changes["last_message_seen"] = current.seen
        if not changes:
            return room
        return self.state.patch_room(room.id, **changes)

    async def apply_room_event(self, ctx: SyncContext, event: RoomChanged, viewer_id: str):
        if isinstance(event, RoomInserted):
            if event.room.includes(viewer_id):
                logger.info(f"New room {event.room.id}, reloading directory")
                await self.load_all(ctx, viewer_id)
        elif isinstance(event, RoomUpdated):
            self._apply_room_update(event)
        elif isinstance(event, RoomDeleted):
            self._remove(event.room_id)
        else:
            raise TypeError(f"Unhandled room event: {event!r}")

    def _apply_room_update(self, event: RoomUpdated):
        room = self.state.snapshot.room(event.room_id)
        if room is None:
            return

        changes = {}
        if event.last_message is not None:
            changes["last_message_preview"] = event.last_message
        if event.last_message_time is not None:
            when = event.last_message_time
            if isinstance(when, str):
                when = datetime.fromisoformat(when)
            if when.tzinfo is None:
                when = when.replace(tzinfo=timezone.utc)
            if room.last_message_time is None or when >= room.last_message_time:
                changes["last_message_time"] = when
            else:
                changes.pop("last_message_preview", None)
        if changes:
            self.state.patch_room(room.id, resort=True, **changes)

    def _remove(self, room_id: str):
        snapshot = self.state.snapshot
        rooms = [r for r in snapshot.rooms if r.id != room_id]
        if len(rooms) == len(snapshot.rooms):
            return

        changes = {"rooms": rooms}
        if snapshot.active_room_id == room_id:
            changes["active_room_id"] = None
        self.state.commit(**changes)
        logger.info(f"Room {room_id} removed from directory")

    def filter(self, query: str, viewer_id: str) -> List[ChatRoom]:
        snapshot = self.state.snapshot
        return filter_rooms(snapshot.rooms, query, viewer_id, snapshot.profiles)

    def label(self, room: ChatRoom, viewer_id: str) -> str:
        return room_label(room, viewer_id, self.state.snapshot.profiles)
