"""
In-Memory Backend

A complete in-process implementation of every collaborator contract in
`providers.backend`. `MemoryServer` holds the server-side state (accounts,
tables, push subscriptions, presence channels, stored objects) and hands out
one `Backend` per client through `client()`, so several sync engines can talk
to the same server the way several browser tabs talk to one hosted backend.

Writes to the store publish row-level change events on the push channel before
they return, and presence joins/leaves broadcast sync and leave events to every
handle on the channel. Fault injection hooks (`fail_next`, `fail_channel`,
`refresh_failures`, `offline`, `subscribe_failures`, `fail_uploads`) let tests
drive the error paths.
"""

import asyncio
import copy
import logging
import secrets
import time
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from core.events import AuthEvent, AuthEventKind
from core.exceptions import (
    AlreadyRegisteredError,
    AuthorizationError,
    InvalidCredentialsError,
    NetworkError,
    StorageUploadError,
    SubscriptionError,
)
from core.models import Session, utc_now
from providers.backend import (
    CHANNEL_ERROR,
    SUBSCRIBED,
    AuthListener,
    AuthProvider,
    Backend,
    DataStore,
    Filter,
    ObjectStorage,
    PresenceChannel,
    PresenceHandle,
    PushChannel,
    PushHandler,
    PushSubscription,
    StatusHandler,
)

logger = logging.getLogger(__name__)


class MemoryAccounts:
    """Server-side account and token registry shared by all clients"""

    def __init__(self, token_ttl: int = 3600, clock: Callable[[], float] = time.time):
        self.token_ttl = token_ttl
        self.clock = clock
        self.users: Dict[str, Dict[str, str]] = {}
        self.refresh_tokens: Dict[str, str] = {}
        self.refresh_failures = 0
        self.offline = False

    def register(self, email: str, password: str) -> str:
        email = email.lower()
        if email in self.users:
            raise AlreadyRegisteredError(email)
        user_id = str(uuid.uuid4())
        self.users[email] = {"password": password, "user_id": user_id}
        return user_id

    def issue(self, user_id: str) -> Session:
        refresh_token = secrets.token_urlsafe(16)
        self.refresh_tokens[refresh_token] = user_id
        return Session(
            access_token=secrets.token_urlsafe(24),
            refresh_token=refresh_token,
            user_id=user_id,
            expires_at=int(self.clock()) + self.token_ttl,
        )

    def check_online(self, operation: str):
        if self.offline:
            raise NetworkError(operation, "backend unreachable")


class MemoryAuthProvider(AuthProvider):
    """Per-client auth collaborator over shared accounts"""

    def __init__(self, accounts: MemoryAccounts):
        self.accounts = accounts
        self.current: Optional[Session] = None
        self._listeners: List[AuthListener] = []

    async def sign_in(self, email: str, password: str) -> Session:
        self.accounts.check_online("sign in")
        account = self.accounts.users.get(email.lower())
        if account is None or account["password"] != password:
            raise InvalidCredentialsError(email)
        self.current = self.accounts.issue(account["user_id"])
        await self._emit(AuthEvent(AuthEventKind.SIGNED_IN, self.current))
        return self.current

    async def sign_up(self, email: str, password: str) -> Session:
        self.accounts.check_online("sign up")
        user_id = self.accounts.register(email, password)
        self.current = self.accounts.issue(user_id)
        await self._emit(AuthEvent(AuthEventKind.SIGNED_IN, self.current))
        return self.current

    async def refresh(self, session: Session) -> Session:
        self.accounts.check_online("refresh")
        if self.accounts.refresh_failures > 0:
            self.accounts.refresh_failures -= 1
            raise NetworkError("refresh", "refresh endpoint unavailable")
        user_id = self.accounts.refresh_tokens.pop(session.refresh_token or "", None)
        if user_id is None or user_id != session.user_id:
            raise AuthorizationError("refresh token is not valid")
        self.current = self.accounts.issue(user_id)
        await self._emit(AuthEvent(AuthEventKind.TOKEN_REFRESHED, self.current))
        return self.current

    async def sign_out(self) -> None:
        self.accounts.check_online("sign out")
        if self.current and self.current.refresh_token:
            self.accounts.refresh_tokens.pop(self.current.refresh_token, None)
        self.current = None
        await self._emit(AuthEvent(AuthEventKind.SIGNED_OUT, None))

    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: AuthEvent):
        """Deliver an auth event as if the auth service pushed it"""
        await self._emit(event)

    async def _emit(self, event: AuthEvent):
        for listener in list(self._listeners):
            await listener(event)


class MemorySubscription(PushSubscription):
    def __init__(
        self,
        topic: str,
        table: str,
        events: str,
        handler: PushHandler,
        on_status: Optional[StatusHandler],
    ):
        self.id = uuid.uuid4().hex
        self.topic = topic
        self.table = table
        self.events = events
        self.handler = handler
        self.on_status = on_status

    def wants(self, table: str, event_type: str) -> bool:
        return self.table == table and self.events in ("*", event_type)


class MemoryPushChannel(PushChannel):
    """Row-level change feed fed by `MemoryDataStore` writes"""

    def __init__(self):
        self.subscriptions: Dict[str, MemorySubscription] = {}
        self.subscribe_failures: Dict[str, int] = defaultdict(int)
        self.delivered = 0

    async def subscribe(
        self,
        topic: str,
        event_filter: Dict[str, str],
        handler: PushHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> PushSubscription:
        if self.subscribe_failures[topic] > 0:
            self.subscribe_failures[topic] -= 1
            raise SubscriptionError(topic, "channel join timed out")

        subscription = MemorySubscription(
            topic,
            event_filter.get("table", topic),
            event_filter.get("event", "*"),
            handler,
            on_status,
        )
        self.subscriptions[subscription.id] = subscription
        logger.debug(f"Push subscription {subscription.id} opened for {topic}")
        if on_status:
            await on_status(SUBSCRIBED, None)
        return subscription

    async def unsubscribe(self, handle: PushSubscription) -> None:
        self.subscriptions.pop(getattr(handle, "id", ""), None)

    def active_topics(self) -> List[str]:
        return [sub.topic for sub in self.subscriptions.values()]

    async def publish(
        self,
        table: str,
        event_type: str,
        new: Optional[Dict[str, Any]],
        old: Optional[Dict[str, Any]],
    ):
        payload = {"eventType": event_type, "table": table, "new": new or {}, "old": old or {}}
        for subscription in list(self.subscriptions.values()):
            if not subscription.wants(table, event_type):
                continue
            self.delivered += 1
            try:
                await subscription.handler(copy.deepcopy(payload))
            except Exception as e:
                logger.error(f"Push handler for {subscription.topic} raised: {e}")

    async def fail_channel(self, topic: str, reason: str = "socket closed"):
        """Kill every subscription on a topic and report CHANNEL_ERROR"""
        failed = [s for s in self.subscriptions.values() if s.topic == topic]
        for subscription in failed:
            self.subscriptions.pop(subscription.id, None)
        for subscription in failed:
            if subscription.on_status:
                await subscription.on_status(CHANNEL_ERROR, reason)


class MemoryDataStore(DataStore):
    """Tables of dict rows with change publication"""

    def __init__(
        self,
        push: Optional[MemoryPushChannel] = None,
        clock: Callable[[], datetime] = utc_now,
        latency: float = 0.0,
    ):
        self.push = push
        self.clock = clock
        self.latency = latency
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], List[Exception]] = defaultdict(list)

    def fail_next(self, operation: str, table: str, error: Exception):
        """Make the next `operation` on `table` raise `error`"""
        self._failures[(operation, table)].append(error)

    async def _enter(self, operation: str, table: str):
        self.calls.append((operation, table))
        await asyncio.sleep(self.latency)
        pending = self._failures.get((operation, table))
        if pending:
            raise pending.pop(0)

    def _matching(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        return [
            row
            for row in self.tables[table].values()
            if all(f.matches(row) for f in filters)
        ]

    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        await self._enter("select", table)
        rows = self._matching(table, filters)
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is None, r.get(order_by), r.get("id")), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        await self._enter("count", table)
        return len(self._matching(table, filters))

    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self._enter("insert", table)
        inserted = []
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault("id", str(uuid.uuid4()))
            if stored.get("created_at") is None:
                stored["created_at"] = self.clock()
            if stored["id"] in self.tables[table]:
                raise NetworkError("insert", f"duplicate key {stored['id']} in {table}")
            self.tables[table][stored["id"]] = stored
            inserted.append(copy.deepcopy(stored))

        if self.push:
            for row in inserted:
                await self.push.publish(table, "INSERT", row, None)
        return inserted

    async def update(self, table: str, filters: Sequence[Filter], patch: Dict[str, Any]) -> None:
        await self._enter("update", table)
        changes = []
        for row in self._matching(table, filters):
            old = copy.deepcopy(row)
            row.update(copy.deepcopy(patch))
            changes.append((copy.deepcopy(row), old))

        if self.push:
            for new, old in changes:
                await self.push.publish(table, "UPDATE", new, old)

    async def upsert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        await self._enter("upsert", table)
        results = []
        for row in rows:
            existing = self.tables[table].get(row.get("id"))
            if existing is None:
                self.calls.append(("insert", table))
                stored = copy.deepcopy(row)
                stored.setdefault("id", str(uuid.uuid4()))
                self.tables[table][stored["id"]] = stored
                results.append(copy.deepcopy(stored))
                if self.push:
                    await self.push.publish(table, "INSERT", copy.deepcopy(stored), None)
            else:
                old = copy.deepcopy(existing)
                existing.update(copy.deepcopy(row))
                results.append(copy.deepcopy(existing))
                if self.push:
                    await self.push.publish(table, "UPDATE", copy.deepcopy(existing), old)
        return results

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        await self._enter("delete", table)
        removed = [self.tables[table].pop(row["id"]) for row in self._matching(table, filters)]
        if self.push:
            for row in removed:
                await self.push.publish(table, "DELETE", None, copy.deepcopy(row))
        return len(removed)


class MemoryPresenceHandle(PresenceHandle):
    def __init__(self, channel: "MemoryPresenceChannel", name: str, key: str):
        self.id = uuid.uuid4().hex
        self.channel = channel
        self.name = name
        self.key = key
        self.sync_handlers: List[Callable] = []
        self.leave_handlers: List[Callable] = []
        self.tracked = False
        self.closed = False

    def on_sync(self, handler) -> None:
        self.sync_handlers.append(handler)

    def on_leave(self, handler) -> None:
        self.leave_handlers.append(handler)

    async def track(self, payload: Dict[str, Any]) -> None:
        await self.channel._track(self, payload)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.channel.state(self.name)

    async def leave(self) -> None:
        await self.channel._leave(self)


class MemoryPresenceChannel(PresenceChannel):
    """Presence channels keyed by name; each key maps to its live connections"""

    def __init__(self):
        self._connections: Dict[str, Dict[str, Dict[str, Dict[str, Any]]]] = defaultdict(dict)
        self._handles: Dict[str, List[MemoryPresenceHandle]] = defaultdict(list)

    async def join(self, channel_name: str, key: str) -> PresenceHandle:
        handle = MemoryPresenceHandle(self, channel_name, key)
        self._handles[channel_name].append(handle)
        return handle

    def state(self, channel_name: str) -> Dict[str, List[Dict[str, Any]]]:
        return {
            key: [copy.deepcopy(p) for p in conns.values()]
            for key, conns in self._connections[channel_name].items()
            if conns
        }

    async def _track(self, handle: MemoryPresenceHandle, payload: Dict[str, Any]):
        self._connections[handle.name].setdefault(handle.key, {})[handle.id] = dict(payload)
        handle.tracked = True
        await self._broadcast_sync(handle.name)

    async def _leave(self, handle: MemoryPresenceHandle):
        if handle.closed:
            return
        handle.closed = True
        if handle in self._handles[handle.name]:
            self._handles[handle.name].remove(handle)
        conns = self._connections[handle.name].get(handle.key, {})
        had_connection = conns.pop(handle.id, None) is not None
        if had_connection and not conns:
            self._connections[handle.name].pop(handle.key, None)
            for other in list(self._handles[handle.name]):
                for leave_handler in list(other.leave_handlers):
                    await leave_handler(handle.key)
        await self._broadcast_sync(handle.name)

    async def disconnect(self, channel_name: str, key: str):
        """Drop every connection of `key`, as when a remote client vanishes"""
        for handle in [h for h in self._handles[channel_name] if h.key == key]:
            await self._leave(handle)

    async def _broadcast_sync(self, channel_name: str):
        snapshot = self.state(channel_name)
        for handle in list(self._handles[channel_name]):
            for sync_handler in list(handle.sync_handlers):
                await sync_handler(copy.deepcopy(snapshot))


class MemoryObjectStorage(ObjectStorage):
    def __init__(self, base_url: str = "http://localhost:54321"):
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}
        self.fail_uploads = False

    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        upsert: bool = False,
    ) -> None:
        if self.fail_uploads:
            raise StorageUploadError(path, "storage unavailable")
        if (bucket, path) in self.objects and not upsert:
            raise StorageUploadError(path, "object already exists")
        self.objects[(bucket, path)] = (bytes(data), content_type)

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"


class MemoryServer:
    """Shared server state; `client()` returns one client's collaborators"""

    def __init__(self, clock: Callable[[], datetime] = utc_now, token_ttl: int = 3600):
        self.accounts = MemoryAccounts(token_ttl=token_ttl)
        self.push = MemoryPushChannel()
        self.store = MemoryDataStore(push=self.push, clock=clock)
        self.presence = MemoryPresenceChannel()
        self.storage = MemoryObjectStorage()

    def client(self) -> Backend:
        return Backend(
            auth=MemoryAuthProvider(self.accounts),
            store=self.store,
            push=self.push,
            presence=self.presence,
            storage=self.storage,
        )
