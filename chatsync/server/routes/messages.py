from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..db.models import ChatChannel, ChatMessage, MessageType, utcnow
from ..deps import RequestContext, get_db, user_auth
from ._common import PostMessageBody, load_message, require_membership, serialize_message

router = APIRouter(prefix="/api")

DEFAULT_PAGE = 50
MAX_PAGE = 100


@router.get("/chat/channels/{channel_id}/messages")
async def get_messages(
    channel_id: str,
    limit: int = DEFAULT_PAGE,
    cursor: str | None = None,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    """Newest page of a channel, or the page older than ``cursor``.

    Messages come back oldest first.  ``nextCursor`` is the oldest message of
    the page and is only set when older messages remain.
    """

    membership = await require_membership(db, channel_id, ctx.user.id)
    limit = min(max(limit, 1), MAX_PAGE)

    stmt = select(ChatMessage).where(ChatMessage.channel_id == channel_id)
    if cursor:
        anchor = await db.get(ChatMessage, cursor)
        if anchor is None or anchor.channel_id != channel_id:
            raise HTTPException(status_code=400, detail="Unknown cursor")
        stmt = stmt.where(
            or_(
                ChatMessage.created_at < anchor.created_at,
                and_(
                    ChatMessage.created_at == anchor.created_at,
                    ChatMessage.id < anchor.id,
                ),
            )
        )
    stmt = (
        stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit + 1)
        .options(selectinload(ChatMessage.sender))
    )
    rows = list((await db.scalars(stmt)).all())

    has_more = len(rows) > limit
    if has_more:
        rows.pop()
    rows.reverse()

    membership.last_read_at = utcnow()
    await db.commit()

    return {
        "messages": [serialize_message(m) for m in rows],
        "hasMore": has_more,
        "nextCursor": rows[0].id if has_more and rows else None,
    }


@router.post("/chat/channels/{channel_id}/messages", status_code=201)
async def post_message(
    channel_id: str,
    body: PostMessageBody,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    await require_membership(db, channel_id, ctx.user.id)
    content = (body.content or "").strip()
    if not content:
        raise HTTPException(status_code=400, detail="Message content is required")
    try:
        kind = MessageType(body.type) if body.type else MessageType.TEXT
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown message type {body.type!r}")

    now = utcnow()
    message = ChatMessage(
        channel_id=channel_id,
        sender_id=ctx.user.id,
        content=content,
        type=kind,
        file_url=body.file_url or None,
        nonce=body.nonce,
        created_at=now,
    )
    db.add(message)
    channel = await db.get(ChatChannel, channel_id)
    channel.updated_at = now
    await db.commit()
    logging.info(
        "chat message stored id=%s channel=%s user=%s", message.id, channel_id, ctx.user.id
    )
    return serialize_message(await load_message(db, message.id))
