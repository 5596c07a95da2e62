from __future__ import annotations

from typing import AsyncIterator

import asyncio
import logging
import os
import re

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from contextlib import asynccontextmanager

from .base import Base
from . import models  # noqa: F401


_engine: AsyncEngine | None = None
_Session: async_sessionmaker[AsyncSession] | None = None
_init_lock = asyncio.Lock()
_DEBUG_SQL = os.getenv("CHATSYNC_DEBUG_SQLALCHEMY", "").lower() in {"1", "true", "yes"}


async def init_db(url: str) -> AsyncEngine:
    """Create the database engine and make sure every table exists."""

    global _engine, _Session
    if _engine is not None:
        return _engine

    async with _init_lock:
        if _engine is not None:
            return _engine

        sa_url = make_url(url)
        masked = re.sub(r":[^:@/]+@", ":***@", str(sa_url))
        logging.debug("init_db url=%s backend=%s", masked, sa_url.get_backend_name())

        engine = create_async_engine(url, echo=_DEBUG_SQL, future=True)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        _engine = engine
        _Session = async_sessionmaker(_engine, expire_on_commit=False)
        return _engine


async def close_db() -> None:
    global _engine, _Session
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _Session = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    if _Session is None:
        raise RuntimeError("Engine not initialized")
    async with _Session() as session:
        yield session
