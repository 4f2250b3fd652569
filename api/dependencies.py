from typing import Optional

from fastapi import HTTPException

from api.snapshot_stream import SnapshotConnectionManager
from services.chat_engine import ChatEngine

_engine: Optional[ChatEngine] = None
snapshot_manager = SnapshotConnectionManager()


def init_engine(engine: Optional[ChatEngine]):
    global _engine
    _engine = engine


def get_engine() -> ChatEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return _engine


def get_snapshot_manager() -> SnapshotConnectionManager:
    return snapshot_manager


def get_optional_engine() -> Optional[ChatEngine]:
    return _engine
