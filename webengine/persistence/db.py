from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from webengine.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded pools for server databases; sqlite manages its own connections.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


def database_name(url: str | None = None) -> str:
    # Derive the logical database name used in backup filenames.
    if url is None and settings.database_name:
        return settings.database_name
    parsed = make_url(url or settings.database_url)
    name = parsed.database or "database"
    if parsed.get_backend_name() == "sqlite":
        # sqlite stores a file path; keep only the file stem.
        name = name.replace("\\", "/").rsplit("/", 1)[-1].split(".", 1)[0] or "database"
    return name


async def ping() -> bool:
    # Run a trivial query so health checks surface connection failures.
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True
