"""
Core data models for the chat synchronization core.

Records mirror the backend rows they are built from: `Message` accepts the
`message` column as its `text`, `ChatRoom` accepts `user_ids` as its
`participant_ids`. Everything here is a client-side cache entry; the backend
stays the single arbiter of persisted state.
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

SELF_CHAT_LABEL = "Notes to Self"
UNKNOWN_USER_LABEL = "Unknown User"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    FILE = "file"


MEDIA_PREVIEWS = {
    MessageType.AUDIO: "[Voice Message]",
    MessageType.IMAGE: "[Image]",
    MessageType.VIDEO: "[Video]",
    MessageType.FILE: "[File]",
}


class Session(BaseModel):
    """Opaque credential issued by the auth collaborator"""

    access_token: str
    refresh_token: Optional[str] = None
    user_id: str
    expires_at: int  # epoch seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return current > self.expires_at


class Profile(BaseModel):
    """User profile record, keyed by id in the profile directory"""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str = ""
    email: Optional[str] = None
    avatar_url: Optional[str] = None
    last_seen: Optional[datetime] = None


class Message(BaseModel):
    """
    One entry of a room's message log.

    `client_id` is chosen by the sending client and echoed by the backend, so a
    locally synthesized message can be replaced by its confirmed row. `pending`
    is never persisted.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    room_id: str
    sender_id: str
    type: MessageType = MessageType.TEXT
    text: Optional[str] = Field(default=None, alias="message")
    media_url: Optional[str] = None
    media_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    seen: bool = False
    client_id: Optional[str] = None
    pending: bool = False

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    def to_row(self) -> Dict[str, Any]:
        """Backend row for an insert (the backend assigns id)"""
        return {
            "room_id": self.room_id,
            "sender_id": self.sender_id,
            "type": self.type.value,
            "message": self.text or "",
            "media_url": self.media_url,
            "media_metadata": self.media_metadata,
            "seen": self.seen,
            "client_id": self.client_id,
        }


class ChatRoom(BaseModel):
    """A two-party conversation plus its derived summary fields"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    participant_ids: List[str] = Field(alias="user_ids")
    created_at: datetime
    last_message_preview: str = ""
    last_message_time: Optional[datetime] = None
    last_message_sender_id: Optional[str] = None
    last_message_seen: Optional[bool] = None
    unseen_count: int = Field(default=0, ge=0)

    @field_validator("participant_ids")
    @classmethod
    def _two_participants(cls, value: List[str]) -> List[str]:
        if len(value) != 2:
            raise ValueError("a chat room has exactly two participant ids")
        return value

    @property
    def recency(self) -> datetime:
        return self.last_message_time or self.created_at

    def includes(self, user_id: str) -> bool:
        return user_id in self.participant_ids

    def is_self_chat(self, viewer_id: str) -> bool:
        return all(pid == viewer_id for pid in self.participant_ids)

    def other_participant(self, viewer_id: str) -> Optional[str]:
        for pid in self.participant_ids:
            if pid != viewer_id:
                return pid
        return None


class PresenceRecord(BaseModel):
    user_id: str
    online: bool = False
    last_seen: Optional[datetime] = None


class Notification(BaseModel):
    """User-visible notification, the client-side equivalent of a toast"""

    level: str = "info"
    message: str
    created_at: datetime = Field(default_factory=utc_now)


class Attachment(BaseModel):
    """A file picked by the user, to be uploaded before its message is sent"""

    filename: str
    content_type: str = "application/octet-stream"
    data: bytes = b""

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.filename.rsplit(".", 1)[-1] if "." in self.filename else ""

    @property
    def message_type(self) -> MessageType:
        major = self.content_type.split("/")[0]
        if major in ("audio", "image", "video"):
            return MessageType(major)
        return MessageType.FILE
