"""
Collaborator Contracts

Abstract interfaces for everything the sync core consumes but does not
implement: authentication, the relational-style store, the push change-feed,
the presence channel and object storage. Adapters for a hosted backend
implement these; `providers.memory_backend` is the in-process reference.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from core.models import Session

PushHandler = Callable[[Dict[str, Any]], Awaitable[None]]
StatusHandler = Callable[[str, Optional[str]], Awaitable[None]]
AuthListener = Callable[[Any], Awaitable[None]]

# Channel statuses reported to a push subscription's status handler
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"


@dataclass(frozen=True)
class Filter:
    """One predicate of a store query"""

    column: str
    op: str
    value: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "gt":
            return actual is not None and actual > self.value
        if self.op == "in":
            return actual in self.value
        if self.op == "contains":
            # array column contains every requested element
            return actual is not None and all(v in actual for v in self.value)
        if self.op == "ilike":
            return actual is not None and str(self.value).lower() in str(actual).lower()
        raise ValueError(f"Unsupported filter operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def in_(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "in", list(values))


def contains(column: str, values: Sequence[Any]) -> Filter:
    return Filter(column, "contains", list(values))


def ilike(column: str, fragment: str) -> Filter:
    return Filter(column, "ilike", fragment)


class AuthProvider(ABC):
    """Authentication collaborator"""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Session:
        """Raises InvalidCredentialsError or NetworkError"""
        pass

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> Session:
        """Raises AlreadyRegisteredError or NetworkError"""
        pass

    @abstractmethod
    async def refresh(self, session: Session) -> Session:
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        pass

    @abstractmethod
    def on_auth_event(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener for AuthEvent objects; returns an unsubscribe callable"""
        pass


class DataStore(ABC):
    """Relational-style persistent store collaborator"""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        pass

    @abstractmethod
    async def insert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def update(self, table: str, filters: Sequence[Filter], patch: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def upsert(self, table: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        pass


class PushSubscription(ABC):
    """Handle for one live push subscription"""

    topic: str


class PushChannel(ABC):
    """Push change-feed collaborator"""

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        event_filter: Dict[str, str],
        handler: PushHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> PushSubscription:
        pass

    @abstractmethod
    async def unsubscribe(self, handle: PushSubscription) -> None:
        pass


class PresenceHandle(ABC):
    """Handle for a joined presence channel"""

    @abstractmethod
    def on_sync(self, handler: Callable[[Dict[str, List[Dict[str, Any]]]], Awaitable[None]]) -> None:
        pass

    @abstractmethod
    def on_leave(self, handler: Callable[[str], Awaitable[None]]) -> None:
        pass

    @abstractmethod
    async def track(self, payload: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        pass

    @abstractmethod
    async def leave(self) -> None:
        pass


class PresenceChannel(ABC):
    """Presence pub/sub collaborator"""

    @abstractmethod
    async def join(self, channel_name: str, key: str) -> PresenceHandle:
        pass


class ObjectStorage(ABC):
    """Object storage collaborator"""

    @abstractmethod
    async def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        upsert: bool = False,
    ) -> None:
        """Raises StorageUploadError"""
        pass

    @abstractmethod
    def get_public_url(self, bucket: str, path: str) -> str:
        pass


@dataclass
class Backend:
    """The full set of collaborators the engine is built over"""

    auth: AuthProvider
    store: DataStore
    push: PushChannel
    presence: PresenceChannel
    storage: ObjectStorage
