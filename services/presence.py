"""
Presence tracking over the shared `online-status` channel.

The signed-in user joins the channel keyed by their user id and tracks
`{online_at, username}`. A sync event marks every key holding at least one
connection online and everyone else offline. A leave event marks that user
offline and stamps their last_seen in the store. On teardown the user's own
last_seen is written exactly once, then the channel is left.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from core.events import PresenceChanged, PresenceLeft, PresenceSynced
from core.models import PresenceRecord, utc_now
from providers.backend import DataStore, PresenceChannel, PresenceHandle, eq
from services.state import StateContainer, SyncContext
from services.subscriptions import SubscriptionRegistry

logger = logging.getLogger(__name__)

PRESENCE_TOPIC = "presence"


def online_keys(presence_state: Dict[str, List[Dict[str, Any]]]) -> List[str]:
    return [key for key, connections in presence_state.items() if connections]


class PresenceTracker:
    OWNER = "presence_tracker"

    def __init__(
        self,
        channel: PresenceChannel,
        store: DataStore,
        state: StateContainer,
        registry: SubscriptionRegistry,
        channel_name: str = "online-status",
        clock: Callable = utc_now,
    ):
        self.channel = channel
        self.store = store
        self.state = state
        self.registry = registry
        self.channel_name = channel_name
        self.clock = clock
        self._ctx: Optional[SyncContext] = None
        self.last_seen_writes = 0

    @property
    def active(self) -> bool:
        return self._ctx is not None

    async def start(self, ctx: SyncContext, username: str = "") -> bool:
        if self._ctx == ctx:
            return True
        if self._ctx is not None:
            await self.stop()

        try:
            handle: PresenceHandle = await self.registry.acquire(
                PRESENCE_TOPIC,
                self.OWNER,
                opener=lambda: self.channel.join(self.channel_name, ctx.user_id),
                closer=lambda h: h.leave(),
            )
            self._ctx = ctx
            handle.on_sync(self._sync_handler(ctx))
            handle.on_leave(self._leave_handler(ctx))
            await handle.track({"online_at": self.clock().isoformat(), "username": username})
        except Exception as e:
            self._ctx = None
            await self.registry.release(PRESENCE_TOPIC, self.OWNER)
            await self.state.report_error(ctx, "Presence unavailable", e)
            return False

        logger.info(f"Tracking presence for {ctx.user_id} on {self.channel_name}")
        return True

    def _sync_handler(self, ctx: SyncContext):
        async def on_sync(presence_state: Dict[str, List[Dict[str, Any]]]):
            if self.state.is_current(ctx):
                self.apply(PresenceSynced(online_keys(presence_state)))

        return on_sync

    def _leave_handler(self, ctx: SyncContext):
        async def on_leave(key: str):
            if not self.state.is_current(ctx):
                return
            self.apply(PresenceLeft(key))
            await self._write_last_seen(key)

        return on_leave

    def apply(self, event: PresenceChanged):
        presence = dict(self.state.snapshot.presence)

        if isinstance(event, PresenceSynced):
            online = set(event.online_user_ids)
            for user_id in online:
                record = presence.get(user_id)
                if record is None or not record.online:
                    presence[user_id] = PresenceRecord(
                        user_id=user_id,
                        online=True,
                        last_seen=record.last_seen if record else None,
                    )
            for user_id, record in list(presence.items()):
                if user_id not in online and record.online:
                    presence[user_id] = record.model_copy(update={"online": False})
        elif isinstance(event, PresenceLeft):
            presence[event.user_id] = PresenceRecord(
                user_id=event.user_id, online=False, last_seen=self.clock()
            )
        else:
            raise TypeError(f"Unhandled presence event: {event!r}")

        if presence != self.state.snapshot.presence:
            self.state.commit(presence=presence)

    async def _write_last_seen(self, user_id: str) -> bool:
        try:
            await self.store.update("profiles", [eq("id", user_id)], {"last_seen": self.clock()})
        except Exception as e:
            logger.error(f"Failed to update last_seen for {user_id}: {e}")
            return False
        self.last_seen_writes += 1
        return True

    async def stop(self):
        """Write own last_seen, leave the channel; a second call does nothing"""
        ctx = self._ctx
        if ctx is None:
            return
        self._ctx = None

        await self._write_last_seen(ctx.user_id)
        await self.registry.release(PRESENCE_TOPIC, self.OWNER)

        presence = self.state.snapshot.presence
        if ctx.user_id in presence:
            remaining = dict(presence)
            del remaining[ctx.user_id]
            self.state.commit(presence=remaining)
        logger.info(f"Presence stopped for {ctx.user_id}")

    def is_online(self, user_id: str) -> bool:
        record = self.state.snapshot.presence.get(user_id)
        return bool(record and record.online)

    def status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "channel": self.channel_name,
            "online": self.state.snapshot.online_user_ids(),
            "last_seen_writes": self.last_seen_writes,
        }
