"""
Health and Monitoring Router.

Public endpoints for liveness and for inspecting the sync engine: session
state, change feed topics and their reconnect counters, presence, the
credential store and the snapshot WebSocket fan-out.

Endpoints Provided:
- `/healthcheck`: Lightweight check that the service is running.
- `/monitoring/ping`: Connectivity test.
- `/monitoring/detailed`: Component-level status. A failing or missing
  component reports "degraded" instead of failing the whole check.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from core.logging_config import get_logger
from services.chat_engine import ChatEngine

from .dependencies import get_optional_engine, get_snapshot_manager
from .snapshot_stream import SnapshotConnectionManager

logger = get_logger(__name__)

SERVICE_NAME = "Chat Sync Engine"
VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])
monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """Basic health check endpoint"""
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    logger.debug("Ping requested")
    return {"message": "pong", "timestamp": _now(), "version": VERSION}


@monitoring_router.get("/detailed")
async def detailed_health_check(
    manager: SnapshotConnectionManager = Depends(get_snapshot_manager),
    engine: Optional[ChatEngine] = Depends(get_optional_engine),
) -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")
    health_status = {
        "status": "healthy",
        "timestamp": _now(),
        "version": VERSION,
        "service": SERVICE_NAME,
        "components": {"websockets": manager.stats()},
    }

    if engine is None:
        health_status["status"] = "degraded"
        health_status["components"]["engine"] = {"status": "unavailable"}
        return health_status

    try:
        credentials = await engine.sessions.credentials.health_check()
        health_status["components"]["credential_store"] = credentials
        if credentials.get("status") != "healthy":
            health_status["status"] = "degraded"
    except Exception as e:
        logger.error(f"Credential store health check failed: {e}")
        health_status["components"]["credential_store"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "degraded"

    engine_status = engine.status()
    health_status["components"]["engine"] = {"status": "healthy", **engine_status}

    feed = engine_status["change_feed"]
    if feed["active"] and not all(t["subscribed"] for t in feed["topics"].values()):
        health_status["components"]["engine"]["status"] = "degraded"
        health_status["status"] = "degraded"

    return health_status
