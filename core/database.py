"""
Persisted Client-Side Credential Storage.

The only durable client-side state of the sync core is the auth credential
blob, stored under one well-known key and read by `SessionManager.restore()`
at startup. This module keeps that blob in a SQLModel table over an async
SQLAlchemy engine.

Key Components:
- `StoredCredential`: The SQLModel table holding one JSON payload per key.
- `CredentialStore`: Async facade with `init`, `load`, `save`, `clear` and
  `health_check`. One instance owns its engine and session factory.

Architectural Design:
- Asynchronous Operations: `aiosqlite` is used for SQLite URLs so reads and
  writes never block the event loop the sync engine runs on.
- Environment-Driven Configuration: The database URL comes from
  `CREDENTIALS_DATABASE_URL` (see `core.config`).
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import Field, SQLModel, select

from core.models import utc_now

logger = logging.getLogger(__name__)


class StoredCredential(SQLModel, table=True):
    """Persisted auth credential blob"""

    key: str = Field(primary_key=True, max_length=255)
    payload: str = Field(max_length=65536)
    updated_at: datetime = Field(default_factory=utc_now)


class CredentialStore:
    """Async store for the persisted credential blob"""

    def __init__(self, database_url: str):
        self.database_url = database_url
        if database_url.startswith("sqlite"):
            self.engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                echo=False,
            )
        else:
            self.engine = create_async_engine(database_url, pool_pre_ping=True, echo=False)
        self._session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self):
        """Create the credential table if needed"""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Credential store initialized")
        except Exception as e:
            logger.error(f"Failed to create credential table: {e}")
            raise

    async def load(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StoredCredential).where(StoredCredential.key == key)
            )
            row = result.scalars().first()
            if row is None:
                return None
            try:
                return json.loads(row.payload)
            except json.JSONDecodeError:
                logger.warning(f"Discarding unreadable credential blob under {key}")
                return None

    async def save(self, key: str, blob: Dict[str, Any]):
        async with self._session_factory() as session:
            row = await session.get(StoredCredential, key)
            payload = json.dumps(blob, default=str)
            if row is None:
                session.add(StoredCredential(key=key, payload=payload))
            else:
                row.payload = payload
                row.updated_at = utc_now()
                session.add(row)
            await session.commit()

    async def clear(self, key: str):
        async with self._session_factory() as session:
            row = await session.get(StoredCredential, key)
            if row is not None:
                await session.delete(row)
                await session.commit()

    async def health_check(self) -> Dict[str, Any]:
        try:
            async with self._session_factory() as session:
                await session.execute(select(StoredCredential.key).limit(1))
            status = "healthy"
            error = None
        except Exception as e:
            logger.error(f"Credential store health check failed: {e}")
            status = "unhealthy"
            error = str(e)

        info = {
            "status": status,
            "database_type": "sqlite" if self.database_url.startswith("sqlite") else "postgresql",
        }
        if error:
            info["error"] = error
        return info

    async def close(self):
        await self.engine.dispose()
