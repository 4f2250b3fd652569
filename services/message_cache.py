"""
Per-room message logs.

A room's log is the merge of every page fetched from the store, every push
event received for it, and every optimistic message sent from this client.
Merging is by message id and the result is always ordered by
`(created_at, id)`, so a push insert racing a fetch of the same row produces
the same log whichever lands first.

`loaded_rooms` in the snapshot records which rooms have had their initial page
fetched. A push insert into a room that was never opened adds a message to the
log but does not mark the room loaded, so opening it later still fetches the
page instead of trusting a log that only holds the newest message.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from core.events import MessageChanged, MessageDeleted, MessageInserted, MessageUpdated
from core.exceptions import StaleSessionError
from core.models import Message
from providers.backend import DataStore, eq, gt, neq
from services.state import StateContainer, SyncContext
from services.unseen import UnseenCounter

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """Outcome of applying one change to a log"""

    changed: bool = False
    is_new: bool = False
    previous: Optional[Message] = None
    current: Optional[Message] = None


def _combine(current: Message, incoming: Message) -> Message:
    # a confirmed row always beats a pending copy; seen never reverts on merge
    if current.pending and not incoming.pending:
        base = incoming
    elif incoming.pending and not current.pending:
        base = current
    else:
        base = incoming
    seen = current.seen or incoming.seen
    return base if base.seen == seen else base.model_copy(update={"seen": seen})


def merge_messages(existing: Sequence[Message], incoming: Iterable[Message]) -> List[Message]:
    """Union by id, pending twins replaced by their confirmed row, sorted"""
    merged: Dict[str, Message] = {m.id: m for m in existing}

    for message in incoming:
        if message.client_id:
            twin_id = next(
                (
                    mid
                    for mid, m in merged.items()
                    if m.client_id == message.client_id and mid != message.id
                ),
                None,
            )
            if twin_id is not None:
                twin = merged[twin_id]
                if message.pending and not twin.pending:
                    continue
                if twin.pending:
                    del merged[twin_id]

        current = merged.get(message.id)
        merged[message.id] = message if current is None else _combine(current, message)

    return sorted(merged.values(), key=lambda m: m.sort_key)


class MessageCache:
    """Message logs keyed by room id, kept in the snapshot"""

    def __init__(
        self,
        store: DataStore,
        state: StateContainer,
        page_size: int = 50,
        on_new_messages: Optional[Callable[[SyncContext, List[Message]], None]] = None,
    ):
        self.store = store
        self.state = state
        self.page_size = page_size
        self.on_new_messages = on_new_messages

    def log(self, room_id: str) -> List[Message]:
        return self.state.snapshot.messages.get(room_id, [])

    def is_loaded(self, room_id: str) -> bool:
        return room_id in self.state.snapshot.loaded_rooms

    async def fetch_initial(self, ctx: SyncContext, room_id: str) -> bool:
        """
        Load a room's log.

        A room that has never been loaded gets the most recent page. A loaded
        room only fetches rows newer than the newest confirmed message it holds,
        and the rows new to its log are handed to `on_new_messages` in the same
        commit so the room summary can follow.
        """
        try:
            self.state.ensure_current(ctx, "fetch messages")
            cursor = self._cursor(room_id) if self.is_loaded(room_id) else None

            if cursor is not None:
                rows = await self.store.select(
                    "messages",
                    [eq("room_id", room_id), gt("created_at", cursor)],
                    order_by="created_at",
                )
            else:
                rows = await self.store.select(
                    "messages",
                    [eq("room_id", room_id)],
                    order_by="created_at",
                    descending=True,
                    limit=self.page_size,
                )
                rows.reverse()

            self.state.ensure_current(ctx, "fetch messages")
        except StaleSessionError:
            logger.info(f"Discarding message fetch for {room_id}: session changed")
            return False
        except Exception as e:
            await self.state.report_error(ctx, "Error fetching messages", e)
            return False

        fetched = [Message.model_validate(row) for row in rows]
        log = self.log(room_id)
        known = {m.id for m in log}
        merged = merge_messages(log, fetched)
        with self.state.transaction():
            self.state.set_room_log(room_id, merged, loaded=True)
            # a first page is already covered by the directory's server-side summary
            if cursor is not None and self.on_new_messages is not None:
                new = [m for m in merged if m.id not in known and not m.pending]
                if new:
                    self.on_new_messages(ctx, new)
        logger.debug(f"Fetched {len(fetched)} messages for {room_id} ({'incremental' if cursor else 'page'})")
        return True

    def _cursor(self, room_id: str):
        confirmed = [m.created_at for m in self.log(room_id) if not m.pending]
        return max(confirmed) if confirmed else None

    def apply_remote_change(self, event: MessageChanged) -> MergeResult:
        if isinstance(event, MessageInserted):
            return self._insert(event.message)
        if isinstance(event, MessageUpdated):
            return self._update(event.message)
        if isinstance(event, MessageDeleted):
            return self._delete(event.message_id, event.room_id)
        raise TypeError(f"Unhandled message event: {event!r}")

    def _insert(self, message: Message) -> MergeResult:
        log = self.log(message.room_id)
        previous = next((m for m in log if m.id == message.id), None)
        merged = merge_messages(log, [message])
        if merged == log:
            return MergeResult(previous=previous, current=previous or message)

        self.state.set_room_log(message.room_id, merged)
        current = next((m for m in merged if m.id == message.id), message)
        return MergeResult(changed=True, is_new=previous is None, previous=previous, current=current)

    def _update(self, message: Message) -> MergeResult:
        log = list(self.log(message.room_id))
        for index, existing in enumerate(log):
            if existing.id == message.id:
                updated = existing.model_copy(
                    update=message.model_dump(exclude={"pending"}, exclude_unset=True)
                )
                if updated == existing:
                    return MergeResult(previous=existing, current=existing)
                log[index] = updated
                self.state.set_room_log(message.room_id, log)
                return MergeResult(changed=True, previous=existing, current=updated)

        # not cached: nothing to patch in place
        return MergeResult(current=message)

    def _delete(self, message_id: str, room_id: Optional[str]) -> MergeResult:
        room_ids = [room_id] if room_id else list(self.state.snapshot.messages)
        for rid in room_ids:
            log = self.log(rid)
            remaining = [m for m in log if m.id != message_id]
            if len(remaining) != len(log):
                removed = next(m for m in log if m.id == message_id)
                self.state.set_room_log(rid, remaining)
                return MergeResult(changed=True, previous=removed)
        return MergeResult()

    def append_optimistic(self, message: Message) -> Message:
        pending = message.model_copy(update={"pending": True})
        self.state.set_room_log(message.room_id, merge_messages(self.log(message.room_id), [pending]))
        return pending

    def confirm(self, message: Message) -> MergeResult:
        """Merge the stored row for a message this client sent"""
        return self._insert(message)

    def discard_optimistic(self, room_id: str, client_id: str) -> bool:
        log = self.log(room_id)
        remaining = [m for m in log if not (m.pending and m.client_id == client_id)]
        if len(remaining) == len(log):
            return False
        self.state.set_room_log(room_id, remaining)
        return True

    async def mark_seen(self, ctx: SyncContext, room_id: str, viewer_id: str) -> bool:
        """
        Mark every message in the room not sent by `viewer_id` as seen.

        The local log and the room's unseen count change immediately; the
        backend update follows.
        """
        if not self.state.is_current(ctx):
            return False

        log = self.log(room_id)
        updated = [
            m.model_copy(update={"seen": True}) if UnseenCounter.is_unseen_by(m, viewer_id) else m
            for m in log
        ]
        with self.state.transaction():
            if updated != log:
                self.state.set_room_log(room_id, updated)
            self.state.patch_room(room_id, unseen_count=UnseenCounter.count(updated, viewer_id))

        try:
            await self.store.update(
                "messages",
                [eq("room_id", room_id), neq("sender_id", viewer_id), eq("seen", False)],
                {"seen": True},
            )
        except Exception as e:
            await self.state.report_error(ctx, "Error marking messages as seen", e)
            return False
        return True
