"""
API Endpoints for the chat sync engine.

This module exposes the engine to a UI over REST and WebSocket. The UI reads
the reactive snapshot and triggers actions; everything it renders comes from
`/snapshot` or the `/ws/snapshot` stream.

Endpoints Provided:
- `/snapshot`: The current snapshot, credential secrets stripped.
- `/rooms`: The room directory, optionally filtered by a username fragment;
  POST starts (or reopens) a chat with another user.
- `/rooms/{room_id}/open`, `/rooms/{room_id}/seen`, `/rooms/{room_id}/messages`:
  Open a room, mark it seen, send a message (text and/or one attachment).
- `/users/search`: Username search for starting a new chat.
- `/search`: Sets the room-list search query held in the snapshot.
- `/profile`: Updates the signed-in user's profile.
- `/ws/snapshot`: Pushes the snapshot on connect and after every commit.

Architectural Design:
- Dependency Injection: The engine and the WebSocket manager are injected, so
  tests can run the routers over an engine of their own.
- Error Handling: Engine actions raise `ChatSyncError`s for invalid input or a
  missing session; `ErrorHandlingMiddleware` maps them to status codes.
  Data failures the engine already reported as notifications come back as 502.
"""

import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from core.exceptions import ValidationError
from core.logging_config import log_function_call
from core.models import Attachment
from services.chat_engine import ChatEngine

from .dependencies import get_engine, get_snapshot_manager
from .snapshot_stream import SnapshotConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])
websocket_router = APIRouter(tags=["WebSocket Communication"])


# Request/Response Models
class AttachmentPayload(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    data_base64: str

    def to_attachment(self) -> Attachment:
        try:
            data = base64.b64decode(self.data_base64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("attachment", self.filename, "Attachment data is not valid base64")
        return Attachment(filename=self.filename, content_type=self.content_type, data=data)


class SendMessageRequest(BaseModel):
    text: str = ""
    attachment: Optional[AttachmentPayload] = None


class CreateRoomRequest(BaseModel):
    other_user_id: str


class SearchQueryRequest(BaseModel):
    query: str = ""


class ProfileUpdateRequest(BaseModel):
    username: str
    email: Optional[str] = None
    avatar: Optional[AttachmentPayload] = None


class RoomResponse(BaseModel):
    id: str
    label: str
    participant_ids: List[str]
    last_message_preview: str
    last_message_time: Optional[str]
    unseen_count: int
    other_user_online: bool


def _room_response(engine: ChatEngine, room) -> RoomResponse:
    viewer_id = engine.state.context.user_id
    other_id = room.other_participant(viewer_id)
    return RoomResponse(
        id=room.id,
        label=engine.room_label(room),
        participant_ids=room.participant_ids,
        last_message_preview=room.last_message_preview,
        last_message_time=room.recency.isoformat(),
        unseen_count=room.unseen_count,
        other_user_online=bool(other_id and engine.presence.is_online(other_id)),
    )


# REST Endpoints
@router.get("/snapshot")
async def get_snapshot(engine: ChatEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.snapshot.to_public_dict()


@router.get("/rooms", response_model=List[RoomResponse])
async def list_rooms(
    query: Optional[str] = Query(None),
    engine: ChatEngine = Depends(get_engine),
):
    """Room directory, most recent first; `query` overrides the stored search"""
    engine._require_context()
    if query is None:
        rooms = engine.filtered_rooms()
    else:
        rooms = engine.rooms.filter(query, engine.state.context.user_id)
    return [_room_response(engine, room) for room in rooms]


@router.post("/rooms", response_model=RoomResponse)
@log_function_call(logger)
async def create_room(request: CreateRoomRequest, engine: ChatEngine = Depends(get_engine)):
    room = await engine.get_or_create_room(request.other_user_id)
    if room is None:
        raise HTTPException(status_code=502, detail="Could not open chat")
    return _room_response(engine, room)


@router.post("/rooms/{room_id}/open")
async def open_room(room_id: str, engine: ChatEngine = Depends(get_engine)):
    loaded = await engine.open_room(room_id)
    return {
        "room_id": room_id,
        "loaded": loaded,
        "messages": [m.model_dump(mode="json") for m in engine.snapshot.visible_messages],
    }


@router.post("/rooms/{room_id}/seen")
async def mark_room_seen(room_id: str, engine: ChatEngine = Depends(get_engine)):
    ok = await engine.mark_seen(room_id)
    room = engine.snapshot.room(room_id)
    return {"room_id": room_id, "ok": ok, "unseen_count": room.unseen_count if room else 0}


@router.post("/rooms/{room_id}/messages")
@log_function_call(logger)
async def send_message(
    room_id: str, request: SendMessageRequest, engine: ChatEngine = Depends(get_engine)
):
    attachment = request.attachment.to_attachment() if request.attachment else None
    message = await engine.send_message(room_id, request.text, attachment)
    if message is None:
        raise HTTPException(status_code=502, detail="Message could not be sent")
    return message.model_dump(mode="json")


@router.get("/users/search")
async def search_users(
    username: str = Query(""),
    engine: ChatEngine = Depends(get_engine),
):
    profiles = await engine.search_users(username)
    return [p.model_dump(mode="json") for p in profiles]


@router.put("/search")
async def set_search_query(request: SearchQueryRequest, engine: ChatEngine = Depends(get_engine)):
    engine.set_search_query(request.query)
    return {"search_query": engine.snapshot.search_query}


@router.put("/profile")
async def update_profile(request: ProfileUpdateRequest, engine: ChatEngine = Depends(get_engine)):
    avatar = request.avatar.to_attachment() if request.avatar else None
    profile = await engine.update_profile(request.username, request.email, avatar)
    if profile is None:
        raise HTTPException(status_code=502, detail="Profile could not be saved")
    return profile.model_dump(mode="json")


@router.delete("/notifications")
async def dismiss_notifications(engine: ChatEngine = Depends(get_engine)):
    engine.state.dismiss_notifications()
    return {"status": "success"}


# WebSocket Endpoint
@websocket_router.websocket("/ws/snapshot")
async def websocket_snapshot(
    websocket: WebSocket,
    engine: ChatEngine = Depends(get_engine),
    manager: SnapshotConnectionManager = Depends(get_snapshot_manager),
):
    """Stream snapshots; answers `ping` with `pong` and `snapshot` with the current one"""
    connection_id = await manager.connect(websocket)
    try:
        await manager.send_snapshot(connection_id, engine.snapshot)
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "ping":
                await websocket.send_json({"type": "pong"})
            elif data.get("type") == "snapshot":
                await manager.send_snapshot(connection_id, engine.snapshot)
    except WebSocketDisconnect:
        logger.info(f"Snapshot WebSocket {connection_id} closed by client")
    finally:
        manager.disconnect(connection_id)
