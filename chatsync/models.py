from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

PENDING_PREFIX = "temp-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ChannelKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"
    TEAM = "team"
    ANNOUNCEMENT = "announcement"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class MemberRole(str, Enum):
    OWNER = "owner"
    MEMBER = "member"

    @classmethod
    def _missing_(cls, value: object) -> "MemberRole | None":
        if isinstance(value, str) and value.lower() in {"admin", "owner"}:
            return cls.OWNER
        return None


class DeliveryState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


# ---- Users / members ----


class ChatUser(CamelModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None
    role: Optional[str] = None


class ChannelMember(CamelModel):
    id: str
    name: Optional[str] = None
    image: Optional[str] = None
    role: Optional[str] = None
    chat_role: MemberRole = Field(default=MemberRole.MEMBER, alias="chatRole")
    joined_at: Optional[datetime] = Field(default=None, alias="joinedAt")

    @field_validator("joined_at")
    @classmethod
    def normalize_joined_at(cls, value: datetime | None) -> datetime | None:
        return _aware(value)


# ---- Messages ----


class Message(CamelModel):
    id: str = Field(min_length=1)
    channel_id: str = Field(alias="channelId", min_length=1)
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    sender: ChatUser | None = None
    content: str = ""
    kind: MessageKind = Field(default=MessageKind.TEXT, alias="type")
    file_url: Optional[str] = Field(default=None, alias="fileUrl")
    created_at: datetime = Field(alias="createdAt")
    edited: bool = False
    deleted: bool = False
    nonce: Optional[str] = None
    state: DeliveryState = DeliveryState.CONFIRMED

    @field_validator("id", "channel_id", mode="before")
    @classmethod
    def coerce_identity(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return _aware(value)

    @property
    def is_pending(self) -> bool:
        return self.state is DeliveryState.PENDING

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.created_at, self.id)

    @classmethod
    def pending(
        cls,
        channel_id: str,
        content: str,
        *,
        author: ChatUser | None = None,
        created_at: datetime | None = None,
        temp_id: str | None = None,
    ) -> "Message":
        """Build an optimistic entry that has not been persisted yet.

        The temporary id doubles as the send nonce so a poll that delivers
        the persisted copy first can be matched back to this entry.
        """

        temp_id = temp_id or f"{PENDING_PREFIX}{uuid.uuid4().hex}"
        return cls(
            id=temp_id,
            channel_id=channel_id,
            sender_id=author.id if author else None,
            sender=author,
            content=content,
            created_at=created_at or utcnow(),
            nonce=temp_id,
            state=DeliveryState.PENDING,
        )

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude={"state"})


class MessagePage(CamelModel):
    messages: List[Any] = Field(default_factory=list)
    has_more: bool = Field(default=False, alias="hasMore")
    next_cursor: Optional[str] = Field(default=None, alias="nextCursor")


# ---- Channels ----


class LastMessagePreview(CamelModel):
    id: Optional[str] = None
    content: str = ""
    sender_name: Optional[str] = Field(default=None, alias="senderName")
    created_at: datetime = Field(alias="createdAt")

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return _aware(value)

    @classmethod
    def from_message(cls, message: Message) -> "LastMessagePreview":
        sender_name = message.sender.name if message.sender else None
        return cls(
            id=message.id,
            content=message.content,
            sender_name=sender_name,
            created_at=message.created_at,
        )


class ChannelSummary(CamelModel):
    id: str = Field(min_length=1)
    name: str = ""
    display_name: Optional[str] = Field(default=None, alias="displayName")
    description: Optional[str] = None
    kind: ChannelKind = Field(alias="type")
    avatar: Optional[str] = None
    is_private: bool = Field(default=False, alias="isPrivate")
    archived: bool = False
    members: List[ChannelMember] = Field(default_factory=list)
    member_count: int = Field(default=0, alias="memberCount")
    last_message: LastMessagePreview | None = Field(default=None, alias="lastMessage")
    my_role: Optional[MemberRole] = Field(default=None, alias="myRole")
    muted: bool = False
    last_read_at: Optional[datetime] = Field(default=None, alias="lastReadAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    pinned: bool = False

    @field_validator("last_read_at", "created_at", "updated_at")
    @classmethod
    def normalize_times(cls, value: datetime | None) -> datetime | None:
        return _aware(value)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_identity(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def label(self) -> str:
        return self.display_name or self.name

    @property
    def activity_at(self) -> datetime | None:
        if self.last_message is not None:
            return self.last_message.created_at
        return self.updated_at or self.created_at

    @property
    def unread(self) -> bool:
        if self.last_message is None:
            return False
        if self.last_read_at is None:
            return True
        return self.last_message.created_at > self.last_read_at
