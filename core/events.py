"""
Typed change events.

Push payloads arrive loosely typed (`{eventType, table, new, old}`); the change
feed subscriber turns each one into exactly one of the variants below before
anything downstream sees it. Merge logic dispatches on these classes and
treats an unknown variant as a programming error.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.models import ChatRoom, Message, Profile, Session


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class MessageInserted:
    message: Message


@dataclass(frozen=True)
class MessageUpdated:
    message: Message


@dataclass(frozen=True)
class MessageDeleted:
    message_id: str
    room_id: Optional[str] = None


@dataclass(frozen=True)
class RoomInserted:
    room: ChatRoom


@dataclass(frozen=True)
class RoomUpdated:
    room_id: str
    last_message: Optional[str] = None
    last_message_time: Optional[Any] = None


@dataclass(frozen=True)
class RoomDeleted:
    room_id: str


@dataclass(frozen=True)
class ProfileChanged:
    profile_id: str
    changes: Dict[str, Any] = field(default_factory=dict)

    def as_profile(self) -> Profile:
        return Profile(id=self.profile_id, **self.changes)


@dataclass(frozen=True)
class PresenceSynced:
    online_user_ids: List[str]


@dataclass(frozen=True)
class PresenceLeft:
    user_id: str


class AuthEventKind(str, Enum):
    SIGNED_IN = "signed_in"
    TOKEN_REFRESHED = "token_refreshed"
    SIGNED_OUT = "signed_out"


@dataclass(frozen=True)
class AuthEvent:
    kind: AuthEventKind
    session: Optional[Session] = None


MessageChanged = Union[MessageInserted, MessageUpdated, MessageDeleted]
RoomChanged = Union[RoomInserted, RoomUpdated, RoomDeleted]
PresenceChanged = Union[PresenceSynced, PresenceLeft]
FeedEvent = Union[MessageChanged, RoomChanged, ProfileChanged]
