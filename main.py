"""
Chat Sync Engine - Main Application Entry Point.

This module initializes the FastAPI application that hosts one client-side
chat sync engine and exposes it to a UI over REST and WebSocket.

Key Responsibilities:
- Configure logging and load settings from the environment.
- Open the credential store and build the engine over its backend
  collaborators (the in-memory backend in this build).
- Restore any persisted session on startup; tear the engine down on shutdown.
- Mount the health, auth, chat and WebSocket routers.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.auth_endpoints import router as auth_router
from api.dependencies import init_engine, snapshot_manager
from api.endpoints import router, websocket_router
from api.health_router import health_router, monitoring_router
from core.config import load_settings
from core.database import CredentialStore
from core.logging_config import get_logger, setup_logging
from core.middleware import ErrorHandlingMiddleware
from providers.memory_backend import MemoryServer
from services.chat_engine import ChatEngine


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    logger = get_logger("api.startup")
    settings = load_settings()

    credentials = CredentialStore(settings.credentials_database_url)
    await credentials.init()

    server = MemoryServer()
    engine = ChatEngine(server.client(), credentials, settings)
    unsubscribe = engine.state.subscribe(snapshot_manager.on_commit)
    init_engine(engine)
    app.state.engine = engine
    app.state.server = server

    restored = await engine.start()
    logger.info(
        f"Sync engine started ({settings.environment}), "
        f"{'session restored' if restored else 'no persisted session'}"
    )
    yield

    # Cleanup on shutdown
    logger.info("Shutting down sync engine")
    await engine.shutdown()
    unsubscribe()
    init_engine(None)
    await credentials.close()
    logger.info("Cleanup completed")


app = FastAPI(
    title="Chat Sync Engine",
    description="Client-side synchronization core for a two-party chat application",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(ErrorHandlingMiddleware)

# CORS middleware (required for frontend communication)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health routers first (no session required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)
app.include_router(auth_router)
app.include_router(websocket_router)
app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8002,
        reload=True,
        log_level="info",
    )
