"""WebSocket fan-out of snapshot commits."""

import asyncio
import logging
import uuid
from typing import Any, Dict

from fastapi import WebSocket

from services.state import Snapshot

logger = logging.getLogger(__name__)


class SnapshotConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.sent = 0

    async def connect(self, websocket: WebSocket) -> str:
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.active_connections[connection_id] = websocket
        logger.info(f"Snapshot WebSocket {connection_id} connected")
        return connection_id

    def disconnect(self, connection_id: str):
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]
            logger.info(f"Snapshot WebSocket {connection_id} disconnected")

    async def send_snapshot(self, connection_id: str, snapshot: Snapshot):
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_json({"type": "snapshot", "data": snapshot.to_public_dict()})
            self.sent += 1
        except Exception as e:
            logger.error(f"Error sending snapshot to {connection_id}: {e}")
            self.disconnect(connection_id)

    async def broadcast(self, snapshot: Snapshot):
        for connection_id in list(self.active_connections):
            await self.send_snapshot(connection_id, snapshot)

    def on_commit(self, snapshot: Snapshot):
        """Snapshot listener; schedules a broadcast on the running loop"""
        if not self.active_connections:
            return
        try:
            asyncio.get_running_loop().create_task(self.broadcast(snapshot))
        except RuntimeError:
            logger.debug("No running loop, snapshot broadcast skipped")

    def stats(self) -> Dict[str, Any]:
        return {
            "active_connections": len(self.active_connections),
            "snapshots_sent": self.sent,
        }
