from __future__ import annotations

from typing import Any, List, Optional

from fastapi import HTTPException
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ...models import CamelModel, ChatUser, LastMessagePreview, Message
from ..db.models import (
    ChatChannel,
    ChatMember,
    ChatMessage,
    MessageType,
    User,
    utcnow,
)


# ---- Request bodies ----


class CreateChannelBody(CamelModel):
    type: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list, alias="memberIds")
    is_private: bool = Field(default=False, alias="isPrivate")


class UpdateChannelBody(CamelModel):
    add_members: Optional[List[str]] = Field(default=None, alias="addMembers")
    name: Optional[str] = None
    description: Optional[str] = None


class PostMessageBody(CamelModel):
    content: Optional[str] = None
    type: Optional[str] = None
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    nonce: Optional[str] = Field(default=None, max_length=64)


# ---- Serialization ----


def serialize_user(user: User) -> ChatUser:
    return ChatUser(
        id=user.id,
        name=user.name,
        email=user.email,
        image=user.image,
        role=user.role,
    )


def serialize_message(message: ChatMessage) -> dict[str, Any]:
    """Wire form of a stored message; deleted messages keep only their shell."""

    return Message(
        id=message.id,
        channel_id=message.channel_id,
        sender_id=message.sender_id,
        sender=serialize_user(message.sender) if message.sender else None,
        content="" if message.deleted else message.content,
        kind=message.type.value,
        file_url=None if message.deleted else message.file_url,
        created_at=message.created_at,
        edited=message.edited,
        deleted=message.deleted,
        nonce=message.nonce,
    ).to_payload()


def preview_for(message: ChatMessage | None) -> LastMessagePreview | None:
    if message is None:
        return None
    return LastMessagePreview(
        id=message.id,
        content=message.content,
        sender_name=message.sender.name if message.sender else None,
        created_at=message.created_at,
    )


# ---- Queries ----


async def load_channel(db: AsyncSession, channel_id: str) -> ChatChannel:
    stmt = (
        select(ChatChannel)
        .where(ChatChannel.id == channel_id)
        .options(selectinload(ChatChannel.members).selectinload(ChatMember.user))
    )
    channel = await db.scalar(stmt)
    if channel is None:
        raise HTTPException(status_code=404, detail="Channel not found")
    return channel


async def require_membership(db: AsyncSession, channel_id: str, user_id: str) -> ChatMember:
    membership = await db.scalar(
        select(ChatMember).where(
            ChatMember.channel_id == channel_id, ChatMember.user_id == user_id
        )
    )
    if membership is None:
        channel = await db.get(ChatChannel, channel_id)
        if channel is None:
            raise HTTPException(status_code=404, detail="Channel not found")
        raise HTTPException(status_code=403, detail="Not a member of this channel")
    return membership


async def load_message(db: AsyncSession, message_id: str) -> ChatMessage:
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.id == message_id)
        .options(selectinload(ChatMessage.sender))
    )
    message = await db.scalar(stmt)
    if message is None:
        raise HTTPException(status_code=404, detail="Message not found")
    return message


async def latest_message(db: AsyncSession, channel_id: str) -> ChatMessage | None:
    stmt = (
        select(ChatMessage)
        .where(ChatMessage.channel_id == channel_id, ChatMessage.deleted.is_(False))
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(1)
        .options(selectinload(ChatMessage.sender))
    )
    return await db.scalar(stmt)


async def resolve_users(db: AsyncSession, user_ids: list[str]) -> list[User]:
    """Return the users for ``user_ids`` in order, rejecting unknown ids."""

    wanted = list(dict.fromkeys(user_ids))
    if not wanted:
        return []
    found = {u.id: u for u in await db.scalars(select(User).where(User.id.in_(wanted)))}
    missing = [uid for uid in wanted if uid not in found]
    if missing:
        raise HTTPException(status_code=400, detail=f"Unknown users: {', '.join(missing)}")
    return [found[uid] for uid in wanted]


def add_system_message(
    db: AsyncSession, channel: ChatChannel, sender: User, content: str
) -> ChatMessage:
    now = utcnow()
    message = ChatMessage(
        channel_id=channel.id,
        sender_id=sender.id,
        content=content,
        type=MessageType.SYSTEM,
        created_at=now,
    )
    db.add(message)
    channel.updated_at = now
    return message
