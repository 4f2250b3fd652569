"""
Chat Sync Engine.

This module defines the `ChatEngine`, the facade the UI talks to. It builds
every component over one `Backend`, runs the session lifecycle hooks
(initialize on sign-in, teardown on sign-out, re-arm on token refresh), routes
typed feed events to the component that owns them, and exposes the UI
actions: open a room, send a message, mark a room seen, start a chat, search
users and filter the room list.

Architectural Design:
- Facade Pattern: Components never call each other through the engine; the
  engine only sequences them. Each one remains testable on its own.
- Exhaustive Dispatch: `handle_event` handles every feed event variant and
  raises on anything else.
- Optimistic Sends: A sent message appears in its room immediately with a
  `local-` id, and is replaced by the stored row once the insert returns (or
  the push insert arrives first). A failed send removes it again.
"""

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from core.config import SyncSettings
from core.database import CredentialStore
from core.events import (
    FeedEvent,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    ProfileChanged,
    RoomDeleted,
    RoomInserted,
    RoomUpdated,
)
from core.exceptions import AuthorizationError, StaleSessionError, ValidationError
from core.models import Attachment, ChatRoom, Message, MessageType, Profile, utc_now
from core.validation import InputValidator
from providers.backend import Backend, contains, eq
from services.change_feed import ChangeFeedSubscriber, ReconnectPolicy, Topic
from services.message_cache import MessageCache
from services.presence import PresenceTracker
from services.profile_directory import ProfileDirectory
from services.room_directory import RoomDirectory
from services.session_manager import SessionManager
from services.state import StateContainer, SyncContext
from services.subscriptions import SubscriptionRegistry
from services.unseen import UnseenCounter

logger = logging.getLogger(__name__)


class ChatEngine:
    """Facade over the sync components of one client"""

    def __init__(
        self,
        backend: Backend,
        credentials: CredentialStore,
        settings: Optional[SyncSettings] = None,
        sleep=None,
    ):
        self.backend = backend
        self.settings = settings or SyncSettings()
        self.state = StateContainer(notification_limit=self.settings.notification_limit)
        self.registry = SubscriptionRegistry()

        self.profiles = ProfileDirectory(
            backend.store, backend.storage, self.state, self.settings.avatar_bucket
        )
        self.messages = MessageCache(
            backend.store, self.state, self.settings.page_size, on_new_messages=self._fold_fetched
        )
        self.rooms = RoomDirectory(backend.store, self.state, self.profiles)

        feed_kwargs = {"sleep": sleep} if sleep is not None else {}
        self.change_feed = ChangeFeedSubscriber(
            backend.push,
            self.registry,
            self.state,
            sink=self.handle_event,
            policy=ReconnectPolicy.from_settings(self.settings.reconnect),
            on_replay=self.replay,
            **feed_kwargs,
        )
        self.presence = PresenceTracker(
            backend.presence,
            backend.store,
            self.state,
            self.registry,
            channel_name=self.settings.presence_channel,
        )
        self.sessions = SessionManager(
            backend.auth,
            credentials,
            self.state,
            self.profiles,
            self.settings.credentials_key,
            on_activate=self.initialize,
            on_deactivate=self.teardown,
            on_rearm=self.rearm,
        )

    @property
    def snapshot(self):
        return self.state.snapshot

    async def start(self):
        """Attach to auth events and restore any persisted session"""
        self.sessions.attach()
        return await self.sessions.restore()

    async def shutdown(self):
        ctx = self.state.context
        if ctx is not None:
            await self.teardown(ctx)
        self.sessions.detach()

    # Session lifecycle hooks

    async def initialize(self, ctx: SyncContext):
        profile = await self.profiles.load_own(ctx, ctx.user_id)
        if profile is None or not self.state.is_current(ctx):
            return
        await self.rooms.load_all(ctx, ctx.user_id)
        await self.change_feed.start(ctx)
        await self.presence.start(ctx, profile.username)
        logger.info(f"Engine initialized for {ctx.id}")

    async def teardown(self, ctx: SyncContext):
        await self.change_feed.stop()
        await self.presence.stop()
        logger.info(f"Engine torn down for {ctx.id}")

    async def rearm(self, ctx: SyncContext):
        if self.state.is_current(ctx):
            await self.change_feed.resubscribe_all()

    async def replay(self, ctx: SyncContext, topic: Topic):
        """Catch up on changes missed while a topic's channel was down"""
        if topic == Topic.MESSAGES:
            for room_id in sorted(self.state.snapshot.loaded_rooms):
                await self.messages.fetch_initial(ctx, room_id)
        elif topic == Topic.CHAT_ROOMS:
            await self.rooms.load_all(ctx, ctx.user_id)
        elif topic == Topic.PROFILES:
            await self.profiles.refresh_cached(ctx)

    def _fold_fetched(self, ctx: SyncContext, messages: List[Message]):
        for message in messages:
            self.rooms.apply_message_insert(message, ctx.user_id)

    # Feed dispatch

    async def handle_event(self, ctx: SyncContext, event: FeedEvent):
        if not self.state.is_current(ctx):
            return
        viewer_id = ctx.user_id

        if isinstance(event, MessageInserted):
            with self.state.transaction():
                result = self.messages.apply_remote_change(event)
                if result.is_new:
                    self.rooms.apply_message_insert(result.current, viewer_id)
                elif result.changed:
                    self.rooms.apply_message_change(result.previous, result.current, viewer_id)
        elif isinstance(event, (MessageUpdated, MessageDeleted)):
            with self.state.transaction():
                result = self.messages.apply_remote_change(event)
                if result.changed:
                    self.rooms.apply_message_change(result.previous, result.current, viewer_id)
        elif isinstance(event, (RoomInserted, RoomUpdated, RoomDeleted)):
            await self.rooms.apply_room_event(ctx, event, viewer_id)
        elif isinstance(event, ProfileChanged):
            self.profiles.apply_profile_change(event)
        else:
            raise TypeError(f"Unhandled feed event: {event!r}")

    # UI actions

    def _require_context(self) -> SyncContext:
        ctx = self.state.context
        if ctx is None:
            raise AuthorizationError("not signed in")
        return ctx

    async def open_room(self, room_id: str) -> bool:
        ctx = self._require_context()
        self.state.set_active_room(room_id)
        return await self.messages.fetch_initial(ctx, room_id)

    def close_room(self):
        self.state.set_active_room(None)

    async def send_message(
        self, room_id: str, text: str = "", attachment: Optional[Attachment] = None
    ) -> Optional[Message]:
        """Send text and/or one attachment to a room"""
        ctx = self._require_context()
        text = InputValidator.validate_message_text(text).strip()
        if not text and attachment is None:
            raise ValidationError("message", "", "Message is empty")

        client_id = uuid.uuid4().hex
        optimistic = Message(
            id=f"local-{client_id}",
            room_id=room_id,
            sender_id=ctx.user_id,
            type=attachment.message_type if attachment else MessageType.TEXT,
            text=text or None,
            created_at=utc_now(),
            client_id=client_id,
        )
        self.messages.append_optimistic(optimistic)

        uploaded_path = None
        try:
            row = optimistic.to_row()
            if attachment is not None:
                path = f"{room_id}/{int(time.time() * 1000)}_{attachment.filename}"
                await self.backend.storage.upload(
                    self.settings.media_bucket, path, attachment.data, attachment.content_type
                )
                uploaded_path = path
                row["media_url"] = self.backend.storage.get_public_url(
                    self.settings.media_bucket, path
                )
                row["media_metadata"] = {
                    "type": attachment.content_type,
                    "size": attachment.size,
                    "extension": attachment.extension,
                    "name": attachment.filename,
                }

            inserted = await self.backend.store.insert("messages", [row])
            self.state.ensure_current(ctx, "send message")
        except StaleSessionError:
            return None
        except Exception as e:
            if self.state.is_current(ctx):
                self.messages.discard_optimistic(room_id, client_id)
            if uploaded_path:
                logger.warning(f"Message insert failed, uploaded object {uploaded_path} is orphaned")
            await self.state.report_error(ctx, "Error sending message", e)
            return None

        confirmed = Message.model_validate(inserted[0])
        with self.state.transaction():
            result = self.messages.confirm(confirmed)
            if result.is_new:
                self.rooms.apply_message_insert(confirmed, ctx.user_id)

        try:
            await self.backend.store.update(
                "chat_rooms",
                [eq("id", room_id)],
                {
                    "last_message": UnseenCounter.preview(confirmed),
                    "last_message_time": confirmed.created_at,
                },
            )
        except Exception as e:
            logger.warning(f"Room metadata update for {room_id} failed: {e}")
        return confirmed

    async def mark_seen(self, room_id: str) -> bool:
        ctx = self._require_context()
        return await self.messages.mark_seen(ctx, room_id, ctx.user_id)

    async def get_or_create_room(self, other_user_id: str) -> Optional[ChatRoom]:
        """Open the room between the viewer and `other_user_id`, creating it if needed"""
        ctx = self._require_context()
        participant_ids = sorted([ctx.user_id, other_user_id])

        try:
            rows = await self.backend.store.select(
                "chat_rooms", [contains("user_ids", participant_ids)]
            )
            existing = next(
                (r for r in rows if sorted(r.get("user_ids") or []) == participant_ids), None
            )
            if existing is not None:
                room = ChatRoom.model_validate(existing)
                logger.info(f"Reusing room {room.id}")
            else:
                inserted = await self.backend.store.insert(
                    "chat_rooms", [{"user_ids": participant_ids, "created_at": utc_now()}]
                )
                room = ChatRoom.model_validate(inserted[0])
                logger.info(f"Created room {room.id}")
            self.state.ensure_current(ctx, "open chat")
        except StaleSessionError:
            return None
        except Exception as e:
            await self.state.report_error(ctx, "Error creating chat", e)
            return None

        if self.state.snapshot.room(room.id) is None:
            await self.rooms.load_all(ctx, ctx.user_id)
        await self.open_room(room.id)
        return self.state.snapshot.room(room.id) or room

    async def search_users(self, query: str) -> List[Profile]:
        ctx = self._require_context()
        partners = {
            room.other_participant(ctx.user_id) for room in self.state.snapshot.rooms
        }
        return await self.profiles.search_users(
            ctx, query, ctx.user_id, [p for p in partners if p]
        )

    async def update_profile(
        self, username: str, email: Optional[str] = None, avatar: Optional[Attachment] = None
    ) -> Optional[Profile]:
        ctx = self._require_context()
        username = InputValidator.validate_username(username)
        if email is not None:
            email = InputValidator.validate_email(email)
        return await self.profiles.save_profile(ctx, ctx.user_id, username, email, avatar)

    def set_search_query(self, query: str):
        self.state.commit(search_query=query or "")

    def clear_search_query(self):
        self.state.commit(search_query="")

    def filtered_rooms(self) -> List[ChatRoom]:
        ctx = self.state.context
        if ctx is None:
            return []
        return self.rooms.filter(self.state.snapshot.search_query, ctx.user_id)

    def room_label(self, room: ChatRoom) -> str:
        ctx = self._require_context()
        return self.rooms.label(room, ctx.user_id)

    def status(self) -> Dict[str, Any]:
        snapshot = self.state.snapshot
        return {
            "session": self.sessions.status_info(),
            "change_feed": self.change_feed.status(),
            "presence": self.presence.status(),
            "subscriptions": self.registry.topics(),
            "rooms": len(snapshot.rooms),
            "cached_messages": sum(len(log) for log in snapshot.messages.values()),
            "cached_profiles": len(snapshot.profiles),
            "commits": self.state.commits,
        }
