"""
Change Feed Subscription Service.

This module provides the `ChangeFeedSubscriber`, which manages the live push
subscriptions of one signed-in session: `messages` (insert, update, delete),
`profiles` (update) and `chat_rooms` (insert, update, delete). It owns their
lifecycle (start, re-arm after a token refresh, stop) and turns every raw
payload into a typed event before handing it to the engine.

Key Components:
- `normalize_payload`: Maps a raw `{eventType, table, new, old}` payload to
  exactly one typed event from `core.events`.
- `ReconnectPolicy`: How a topic whose channel failed is brought back:
  exponential backoff (`base_delay * 2**n`, capped at `max_delay`) for up to
  `max_attempts` tries.
- `ChangeFeedSubscriber`: Holds the topics through the `SubscriptionRegistry`
  so each topic has at most one live handle, and reports channel state through
  `status()`.

Architectural Design:
- Callback-Based Architecture: Each push handle is opened with a handler bound
  to the session context it was created for. A handler whose session has ended
  drops its events.
- Error Isolation: A failing event handler is logged and never tears down the
  subscription. A CHANNEL_ERROR status is logged and counted, raises a
  notification, and starts the reconnect loop. After a successful resubscribe
  the replay hook refetches whatever the topic may have missed while down.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from pydantic import ValidationError as ModelValidationError

from core.config import ReconnectSettings
from core.events import (
    ChangeType,
    FeedEvent,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    ProfileChanged,
    RoomDeleted,
    RoomInserted,
    RoomUpdated,
)
from core.models import ChatRoom, Message
from providers.backend import CHANNEL_ERROR, CLOSED, PushChannel
from services.state import StateContainer, SyncContext
from services.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)


class Topic(str, Enum):
    MESSAGES = "messages"
    PROFILES = "profiles"
    CHAT_ROOMS = "chat_rooms"


# topic -> (table, event filter)
FEED_TOPICS = {
    Topic.MESSAGES: ("messages", "*"),
    Topic.PROFILES: ("profiles", "UPDATE"),
    Topic.CHAT_ROOMS: ("chat_rooms", "*"),
}

EventSink = Callable[[SyncContext, FeedEvent], Awaitable[None]]
ReplayHook = Callable[[SyncContext, Topic], Awaitable[None]]


def normalize_payload(topic: Topic, payload: Dict[str, Any]) -> Optional[FeedEvent]:
    """
    Turn a raw push payload into a typed event.

    Returns None for payloads a topic does not act on (a profile delete).
    Raises ValueError, KeyError or a pydantic ValidationError for payloads
    that cannot be interpreted.
    """
    change = ChangeType(payload.get("eventType"))
    new = payload.get("new") or {}
    old = payload.get("old") or {}

    if topic == Topic.MESSAGES:
        if change == ChangeType.INSERT:
            return MessageInserted(Message.model_validate(new))
        if change == ChangeType.UPDATE:
            return MessageUpdated(Message.model_validate(new))
        return MessageDeleted(old["id"], old.get("room_id"))

    if topic == Topic.CHAT_ROOMS:
        if change == ChangeType.INSERT:
            return RoomInserted(ChatRoom.model_validate(new))
        if change == ChangeType.UPDATE:
            return RoomUpdated(new["id"], new.get("last_message"), new.get("last_message_time"))
        return RoomDeleted(old["id"])

    if topic == Topic.PROFILES:
        if change == ChangeType.DELETE:
            return None
        return ProfileChanged(new["id"], {k: v for k, v in new.items() if k != "id"})

    raise ValueError(f"Unknown topic {topic}")


@dataclass
class ReconnectPolicy:
    enabled: bool = True
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: ReconnectSettings) -> "ReconnectPolicy":
        return cls(
            enabled=settings.enabled,
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )

    def delays(self) -> Iterator[float]:
        delay = self.base_delay
        for _ in range(self.max_attempts):
            yield delay
            delay = min(delay * 2, self.max_delay)


class ChangeFeedSubscriber:
    """Owns the push subscriptions of the active session"""

    OWNER = "change_feed"

    def __init__(
        self,
        push: PushChannel,
        registry: SubscriptionRegistry,
        state: StateContainer,
        sink: EventSink,
        policy: Optional[ReconnectPolicy] = None,
        on_replay: Optional[ReplayHook] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.push = push
        self.registry = registry
        self.state = state
        self.sink = sink
        self.policy = policy or ReconnectPolicy()
        self.on_replay = on_replay
        self._sleep = sleep
        self._ctx: Optional[SyncContext] = None
        self._reconnect_tasks: Dict[Topic, asyncio.Task] = {}
        self.error_counts: Dict[str, int] = {topic.value: 0 for topic in Topic}
        self.reconnect_counts: Dict[str, int] = {topic.value: 0 for topic in Topic}

    async def start(self, ctx: SyncContext) -> bool:
        """Subscribe every topic for `ctx`; re-subscribing replaces old handles"""
        self._ctx = ctx
        results = [await self.subscribe(topic) for topic in Topic]
        return all(results)

    async def resubscribe_all(self) -> bool:
        """Re-arm every topic after a token refresh"""
        if self._ctx is None:
            return False
        logger.info("Re-arming change feed subscriptions")
        return await self.start(self._ctx)

    async def subscribe(self, topic: Topic) -> bool:
        ctx = self._ctx
        if not self.state.is_current(ctx):
            return False
        try:
            await self._open(ctx, topic)
        except Exception as e:
            await self.state.report_error(ctx, f"Subscription to {topic.value} failed", e)
            return False
        logger.info(f"Subscribed to {topic.value} changes")
        return True

    async def _open(self, ctx: SyncContext, topic: Topic):
        table, events = FEED_TOPICS[topic]
        return await self.registry.acquire(
            topic.value,
            self.OWNER,
            opener=lambda: self.push.subscribe(
                topic.value,
                {"table": table, "event": events},
                self._make_handler(ctx, topic),
                self._make_status_handler(ctx, topic),
            ),
            closer=self.push.unsubscribe,
        )

    async def stop(self):
        for task in self._reconnect_tasks.values():
            if not task.done():
                task.cancel()
        self._reconnect_tasks.clear()
        released = await self.registry.release_all(self.OWNER)
        self._ctx = None
        logger.info(f"Change feed stopped, {released} subscriptions released")

    def _make_handler(self, ctx: SyncContext, topic: Topic):
        async def handle(payload: Dict[str, Any]):
            if not self.state.is_current(ctx):
                logger.debug(f"Dropping {topic.value} event for ended session {ctx.id}")
                return
            try:
                event = normalize_payload(topic, payload)
            except (ValueError, KeyError, ModelValidationError) as e:
                logger.warning(f"Dropping malformed {topic.value} payload: {e}")
                return
            if event is None:
                return
            try:
                await self.sink(ctx, event)
            except Exception as e:
                logger.error(f"Error handling {topic.value} event: {e}", exc_info=True)

        return handle

    def _make_status_handler(self, ctx: SyncContext, topic: Topic):
        async def on_status(status: str, reason: Optional[str] = None):
            if status == CHANNEL_ERROR:
                await self._handle_channel_error(ctx, topic, reason)
            elif status == CLOSED:
                logger.info(f"{topic.value} channel closed")

        return on_status

    async def _handle_channel_error(self, ctx: SyncContext, topic: Topic, reason: Optional[str]):
        self.error_counts[topic.value] += 1
        logger.warning(f"Channel error on {topic.value}: {reason}")
        await self.registry.release(topic.value, self.OWNER)

        if not self.state.is_current(ctx):
            return
        self.state.notify("warning", f"Live updates for {topic.value} interrupted")

        if not self.policy.enabled:
            logger.info(f"Reconnect disabled, {topic.value} stays down")
            return

        running = self._reconnect_tasks.get(topic)
        if running is not None and not running.done():
            return
        self._reconnect_tasks[topic] = asyncio.create_task(self._reconnect(ctx, topic))

    async def _reconnect(self, ctx: SyncContext, topic: Topic) -> bool:
        for attempt, delay in enumerate(self.policy.delays(), start=1):
            await self._sleep(delay)
            if not self.state.is_current(ctx) or self._ctx != ctx:
                return False
            try:
                await self._open(ctx, topic)
            except Exception as e:
                logger.warning(
                    f"Resubscribe {topic.value} attempt {attempt}/{self.policy.max_attempts} failed: {e}"
                )
                continue

            self.reconnect_counts[topic.value] += 1
            logger.info(f"Resubscribed to {topic.value} after {attempt} attempt(s)")
            if self.on_replay is not None:
                try:
                    await self.on_replay(ctx, topic)
                except Exception as e:
                    logger.error(f"Replay for {topic.value} failed: {e}")
            return True

        logger.error(f"Giving up on {topic.value} after {self.policy.max_attempts} attempts")
        if self.state.is_current(ctx):
            self.state.notify("error", f"Could not restore live updates for {topic.value}")
        return False

    async def wait_reconnects(self):
        """Wait for every pending reconnect loop to finish"""
        tasks = [t for t in self._reconnect_tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def is_subscribed(self, topic: Topic) -> bool:
        return self.registry.holder(topic.value) == self.OWNER

    def status(self) -> Dict[str, Any]:
        topics = {}
        for topic in Topic:
            task = self._reconnect_tasks.get(topic)
            topics[topic.value] = {
                "subscribed": self.is_subscribed(topic),
                "reconnecting": task is not None and not task.done(),
                "errors": self.error_counts[topic.value],
                "reconnects": self.reconnect_counts[topic.value],
            }
        return {
            "active": self._ctx is not None,
            "topics": topics,
            "reconnect_policy": {
                "enabled": self.policy.enabled,
                "max_attempts": self.policy.max_attempts,
                "base_delay": self.policy.base_delay,
                "max_delay": self.policy.max_delay,
            },
        }
