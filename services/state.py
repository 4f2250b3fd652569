"""
Reactive Snapshot State.

The UI observes exactly one thing: an immutable `Snapshot` of everything the
sync core knows for the signed-in user. `StateContainer` owns the current
snapshot and is the only place it is replaced. Every component mutates state
through `commit()` (or one of the narrower entry points built on it), and
every commit is published to subscribers after it is applied.

Key Components:
- `Snapshot`: pydantic model holding session, profile, room directory, message
  logs, profile directory, presence map, search query and notifications.
- `SyncContext`: Identifies one signed-in session (`user_id` + generation).
  Async operations capture it before suspending and check `is_current()`
  before applying their results, so work started under a previous session is
  discarded instead of leaking into the next user's state.
- `StateContainer`: Holds the snapshot, the listeners, the session generation
  and the authorization-failure hooks used to force a sign-out.

Architectural Design:
- Batched Publication: `transaction()` groups several commits into a single
  publication, so a message merge and the room summary it changes become
  visible together.
- Error Routing: `report_error()` is the single funnel for data-operation
  failures. It logs, raises a notification, and escalates authorization
  failures to the registered sign-out hook.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from core.exceptions import AuthorizationError, ChatSyncError, StaleSessionError
from core.logging_config import set_sync_context
from core.models import ChatRoom, Message, Notification, PresenceRecord, Profile, Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncContext:
    user_id: str
    generation: int

    @property
    def id(self) -> str:
        return f"{self.user_id}#{self.generation}"


class Snapshot(BaseModel):
    """Everything the UI renders, at one point in time"""

    session: Optional[Session] = None
    profile: Optional[Profile] = None
    is_loading: bool = False
    active_room_id: Optional[str] = None
    messages: Dict[str, List[Message]] = Field(default_factory=dict)
    loaded_rooms: Set[str] = Field(default_factory=set)
    rooms: List[ChatRoom] = Field(default_factory=list)
    profiles: Dict[str, Profile] = Field(default_factory=dict)
    presence: Dict[str, PresenceRecord] = Field(default_factory=dict)
    search_query: str = ""
    notifications: List[Notification] = Field(default_factory=list)

    @property
    def visible_messages(self) -> List[Message]:
        if self.active_room_id is None:
            return []
        return self.messages.get(self.active_room_id, [])

    def room(self, room_id: str) -> Optional[ChatRoom]:
        for room in self.rooms:
            if room.id == room_id:
                return room
        return None

    def online_user_ids(self) -> List[str]:
        return sorted(uid for uid, record in self.presence.items() if record.online)

    def to_public_dict(self) -> Dict:
        """JSON-ready view with credential secrets stripped"""
        data = self.model_dump(
            mode="json",
            exclude={"session": {"access_token", "refresh_token"}},
        )
        data["loaded_rooms"] = sorted(self.loaded_rooms)
        data["visible_messages"] = [m.model_dump(mode="json") for m in self.visible_messages]
        return data


def sort_rooms(rooms: List[ChatRoom]) -> List[ChatRoom]:
    """Directory order: most recent activity first, ties by id"""
    return sorted(rooms, key=lambda r: (r.recency, r.id), reverse=True)


Listener = Callable[[Snapshot], None]
AuthorizationHook = Callable[[SyncContext], Awaitable[None]]


class StateContainer:
    """Single owner of the current `Snapshot`"""

    def __init__(self, notification_limit: int = 50):
        self.notification_limit = notification_limit
        self._snapshot = Snapshot()
        self._listeners: List[Listener] = []
        self._generation = 0
        self._context: Optional[SyncContext] = None
        self._authorization_hooks: List[AuthorizationHook] = []
        self._depth = 0
        self._dirty = False
        self.commits = 0

    @property
    def snapshot(self) -> Snapshot:
        return self._snapshot

    @property
    def context(self) -> Optional[SyncContext]:
        return self._context

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def commit(self, **changes) -> Snapshot:
        self._snapshot = self._snapshot.model_copy(update=changes)
        self.commits += 1
        if self._depth:
            self._dirty = True
        else:
            self._publish()
        return self._snapshot

    @contextmanager
    def transaction(self):
        """Publish once for every commit made inside the block"""
        self._depth += 1
        try:
            yield self
        finally:
            self._depth -= 1
            if self._depth == 0 and self._dirty:
                self._dirty = False
                self._publish()

    def _publish(self):
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}", exc_info=True)

    # Session generation

    def begin_session(self, session: Session) -> SyncContext:
        self._generation += 1
        self._context = SyncContext(session.user_id, self._generation)
        set_sync_context(self._context.id)
        self.commit(session=session)
        logger.info(f"Session context {self._context.id} started")
        return self._context

    def replace_session(self, session: Session):
        self.commit(session=session)

    def is_current(self, ctx: Optional[SyncContext]) -> bool:
        return ctx is not None and ctx == self._context

    def ensure_current(self, ctx: Optional[SyncContext], operation: str):
        if not self.is_current(ctx):
            raise StaleSessionError(operation)

    def end_session(self) -> Optional[SyncContext]:
        """Drop all per-user state in one step; notifications survive"""
        previous = self._context
        self._generation += 1
        self._context = None
        set_sync_context(None)
        self._snapshot = Snapshot(notifications=list(self._snapshot.notifications))
        self.commits += 1
        self._publish()
        if previous:
            logger.info(f"Session context {previous.id} ended")
        return previous

    # Narrow mutation entry points

    def set_active_room(self, room_id: Optional[str]):
        self.commit(active_room_id=room_id)

    def set_room_log(self, room_id: str, log: List[Message], loaded: bool = False):
        messages = dict(self._snapshot.messages)
        messages[room_id] = log
        changes = {"messages": messages}
        if loaded and room_id not in self._snapshot.loaded_rooms:
            changes["loaded_rooms"] = self._snapshot.loaded_rooms | {room_id}
        self.commit(**changes)

    def patch_room(self, room_id: str, resort: bool = False, **fields) -> Optional[ChatRoom]:
        rooms = list(self._snapshot.rooms)
        for index, room in enumerate(rooms):
            if room.id == room_id:
                rooms[index] = room.model_copy(update=fields)
                self.commit(rooms=sort_rooms(rooms) if resort else rooms)
                return rooms[index]
        return None

    def set_rooms(self, rooms: List[ChatRoom]):
        self.commit(rooms=sort_rooms(rooms))

    def put_profiles(self, profiles: List[Profile]):
        merged = dict(self._snapshot.profiles)
        for profile in profiles:
            merged[profile.id] = profile
        changes = {"profiles": merged}
        own = self._snapshot.profile
        for profile in profiles:
            if own is not None and profile.id == own.id:
                changes["profile"] = profile
        self.commit(**changes)

    # Notifications and error routing

    def notify(self, level: str, message: str):
        notifications = list(self._snapshot.notifications)
        notifications.append(Notification(level=level, message=message))
        self.commit(notifications=notifications[-self.notification_limit:])

    def dismiss_notifications(self):
        self.commit(notifications=[])

    def on_authorization_failure(self, hook: AuthorizationHook) -> Callable[[], None]:
        self._authorization_hooks.append(hook)

        def remove():
            if hook in self._authorization_hooks:
                self._authorization_hooks.remove(hook)

        return remove

    async def report_error(self, ctx: Optional[SyncContext], action: str, error: Exception):
        """Log a data-operation failure and surface it to the user"""
        if isinstance(error, StaleSessionError):
            logger.debug(f"{action}: result discarded, session ended")
            return

        if not self.is_current(ctx):
            logger.info(f"{action} failed after its session ended: {error}")
            return

        detail = error.message if isinstance(error, ChatSyncError) else str(error)
        logger.error(f"{action}: {detail}")
        self.notify("error", f"{action}: {detail}")

        if isinstance(error, AuthorizationError):
            logger.warning(f"Authorization rejected during '{action}', forcing sign-out")
            for hook in list(self._authorization_hooks):
                await hook(ctx)
