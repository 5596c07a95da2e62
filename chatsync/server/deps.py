from __future__ import annotations

from dataclasses import dataclass

import logging
from fastapi import Depends, Header, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession

from .db.models import User
from .db.session import get_session


@dataclass
class RequestContext:
    user: User


async def get_db() -> AsyncSession:
    async with get_session() as session:
        yield session


async def user_auth(
    request: Request = None,
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    user = await db.get(User, x_user_id)
    logging.debug(
        "Chat auth user=%s result=%s",
        x_user_id,
        "hit" if user else "miss",
    )
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    logging.info(
        "API %s %s user=%s",
        request.method if request else "?",
        request.url.path if request else "?",
        user.id,
    )
    return RequestContext(user=user)
