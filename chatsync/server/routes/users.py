from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import User
from ..deps import RequestContext, get_db, user_auth
from ._common import serialize_user

router = APIRouter(prefix="/api")


@router.get("/chat/users")
async def get_users(
    q: str | None = None,
    role: str | None = None,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    """Other users, for starting a DM or adding members."""

    stmt = select(User).where(User.id != ctx.user.id)
    search = (q or "").strip()
    if search:
        pattern = f"%{search}%"
        stmt = stmt.where(or_(User.name.ilike(pattern), User.email.ilike(pattern)))
    if role:
        stmt = stmt.where(User.role == role)
    stmt = stmt.order_by(User.name.asc(), User.id.asc()).limit(50)
    users = (await db.scalars(stmt)).all()
    return [serialize_user(u).model_dump(by_alias=True, mode="json") for u in users]
