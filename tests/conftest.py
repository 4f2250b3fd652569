import os
import sys
from typing import AsyncGenerator, List
from unittest.mock import AsyncMock

import pytest

# Add the parent directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import ReconnectSettings, SyncSettings
from core.database import CredentialStore
from providers.memory_backend import MemoryServer
from services.chat_engine import ChatEngine


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch, tmp_path):
    """Set up test environment variables."""
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv(
        "CREDENTIALS_DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'app_credentials.db'}"
    )


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        environment="test",
        page_size=5,
        reconnect=ReconnectSettings(enabled=True, max_attempts=3, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def server() -> MemoryServer:
    return MemoryServer()


@pytest.fixture
async def credential_store(tmp_path) -> AsyncGenerator[CredentialStore, None]:
    store = CredentialStore(f"sqlite+aiosqlite:///{tmp_path / 'credentials.db'}")
    await store.init()
    yield store
    await store.close()


@pytest.fixture
async def make_engine(server, settings, tmp_path):
    """Factory for engines sharing one in-memory server, each with its own credential store"""
    created: List[ChatEngine] = []
    stores: List[CredentialStore] = []

    async def factory(name: str = "client", credentials: CredentialStore = None) -> ChatEngine:
        if credentials is None:
            credentials = CredentialStore(f"sqlite+aiosqlite:///{tmp_path / f'{name}.db'}")
            await credentials.init()
            stores.append(credentials)
        engine = ChatEngine(server.client(), credentials, settings, sleep=AsyncMock())
        engine.sessions.attach()
        created.append(engine)
        return engine

    yield factory

    for engine in created:
        await engine.shutdown()
    for store in stores:
        await store.close()


@pytest.fixture
def sign_up():
    """Register and sign in a user on an engine"""

    async def _sign_up(engine: ChatEngine, username: str, password: str = "secret-pass"):
        await engine.sessions.sign_up(f"{username}@example.com", password, username)
        return engine.state.context.user_id

    return _sign_up

