from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ...models import ChannelMember, ChannelSummary
from ..db.models import ChannelType, ChatChannel, ChatMember, MemberRole
from ..deps import RequestContext, get_db, user_auth
from ._common import (
    CreateChannelBody,
    UpdateChannelBody,
    add_system_message,
    latest_message,
    load_channel,
    preview_for,
    require_membership,
    resolve_users,
)

router = APIRouter(prefix="/api")


def _members(channel: ChatChannel, *, with_joined: bool = False) -> list[ChannelMember]:
    return [
        ChannelMember(
            id=m.user_id,
            name=m.user.name if m.user else None,
            image=m.user.image if m.user else None,
            role=m.user.role if m.user else None,
            chat_role=m.role.value,
            joined_at=m.joined_at if with_joined else None,
        )
        for m in channel.members
    ]


def _label(channel: ChatChannel, user_id: str) -> str:
    if channel.type is ChannelType.DIRECT:
        for member in channel.members:
            if member.user_id != user_id and member.user and member.user.name:
                return member.user.name
    return channel.name


@router.get("/chat/channels")
async def list_channels(
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(ChatMember)
        .join(ChatChannel, ChatChannel.id == ChatMember.channel_id)
        .where(ChatMember.user_id == ctx.user.id)
        .order_by(ChatChannel.updated_at.desc())
        .options(
            selectinload(ChatMember.channel)
            .selectinload(ChatChannel.members)
            .selectinload(ChatMember.user)
        )
    )
    memberships = (await db.scalars(stmt)).all()

    channels = []
    for membership in memberships:
        ch = membership.channel
        channels.append(
            ChannelSummary(
                id=ch.id,
                name=_label(ch, ctx.user.id),
                description=ch.description,
                kind=ch.type.value,
                avatar=ch.avatar,
                is_private=ch.is_private,
                archived=ch.archived,
                members=_members(ch),
                member_count=len(ch.members),
                last_message=preview_for(await latest_message(db, ch.id)),
                my_role=membership.role.value,
                muted=membership.muted,
                last_read_at=membership.last_read_at,
                created_at=ch.created_at,
                updated_at=ch.updated_at,
            ).model_dump(by_alias=True, mode="json")
        )
    return channels


@router.post("/chat/channels")
async def create_channel(
    body: CreateChannelBody,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    if not body.type:
        raise HTTPException(status_code=400, detail="Channel type is required")
    try:
        kind = ChannelType(body.type)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown channel type {body.type!r}")
    user = ctx.user

    if kind is ChannelType.DIRECT:
        target_id = body.member_ids[0] if body.member_ids else None
        if not target_id:
            raise HTTPException(status_code=400, detail="Target user ID required for DM")
        if target_id == user.id:
            raise HTTPException(status_code=400, detail="Cannot open a DM with yourself")
        (target,) = await resolve_users(db, [target_id])

        mine = select(ChatMember.channel_id).where(ChatMember.user_id == user.id)
        existing = await db.scalar(
            select(ChatChannel.id)
            .join(ChatMember, ChatMember.channel_id == ChatChannel.id)
            .where(
                ChatChannel.type == ChannelType.DIRECT,
                ChatMember.user_id == target.id,
                ChatChannel.id.in_(mine),
            )
            .limit(1)
        )
        if existing is not None:
            return JSONResponse({"id": existing, "existing": True})

        channel = ChatChannel(
            name=f"{user.name or user.id} & {target.name or 'User'}",
            type=ChannelType.DIRECT,
            created_by=user.id,
            members=[
                ChatMember(user_id=user.id, role=MemberRole.MEMBER),
                ChatMember(user_id=target.id, role=MemberRole.MEMBER),
            ],
        )
        db.add(channel)
        await db.commit()
        logging.info("chat channel created id=%s type=direct by=%s", channel.id, user.id)
        return JSONResponse({"id": channel.id, "existing": False}, status_code=201)

    name = (body.name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Channel name is required")
    others = await resolve_users(db, [uid for uid in body.member_ids if uid != user.id])
    channel = ChatChannel(
        name=name,
        description=body.description or None,
        type=kind,
        created_by=user.id,
        is_private=body.is_private,
        members=[ChatMember(user_id=user.id, role=MemberRole.OWNER)]
        + [ChatMember(user_id=u.id, role=MemberRole.MEMBER) for u in others],
    )
    db.add(channel)
    await db.flush()
    add_system_message(db, channel, user, f'{user.name or user.id} created the channel "{name}"')
    await db.commit()
    logging.info("chat channel created id=%s type=%s by=%s", channel.id, kind.value, user.id)
    return JSONResponse({"id": channel.id}, status_code=201)


@router.get("/chat/channels/{channel_id}")
async def get_channel(
    channel_id: str,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    channel = await load_channel(db, channel_id)
    if not any(m.user_id == ctx.user.id for m in channel.members):
        raise HTTPException(status_code=403, detail="Not a member")
    payload = ChannelSummary(
        id=channel.id,
        name=channel.name,
        description=channel.description,
        kind=channel.type.value,
        avatar=channel.avatar,
        is_private=channel.is_private,
        archived=channel.archived,
        members=_members(channel, with_joined=True),
        member_count=len(channel.members),
        created_at=channel.created_at,
        updated_at=channel.updated_at,
    ).model_dump(by_alias=True, mode="json")
    payload["createdBy"] = channel.created_by
    return payload


@router.put("/chat/channels/{channel_id}")
async def update_channel(
    channel_id: str,
    body: UpdateChannelBody,
    ctx: RequestContext = Depends(user_auth),
    db: AsyncSession = Depends(get_db),
):
    await require_membership(db, channel_id, ctx.user.id)
    channel = await load_channel(db, channel_id)

    if body.add_members is not None:
        if channel.type is ChannelType.DIRECT:
            raise HTTPException(status_code=400, detail="Cannot add members to a direct channel")
        present = {m.user_id for m in channel.members}
        users = await resolve_users(db, body.add_members)
        added = [u for u in users if u.id not in present]
        for u in added:
            db.add(ChatMember(channel_id=channel.id, user_id=u.id, role=MemberRole.MEMBER))
        if added:
            names = ", ".join(u.name or u.id for u in added)
            add_system_message(db, channel, ctx.user, f"{ctx.user.name or ctx.user.id} added {names}")
        await db.commit()
        logging.info("chat members added channel=%s count=%s", channel.id, len(added))
        return {"success": True}

    changed = False
    if body.name and body.name.strip():
        channel.name = body.name.strip()
        changed = True
    if body.description is not None:
        channel.description = body.description
        changed = True
    if changed:
        await db.commit()
    return {"success": True}
