from __future__ import annotations

"""Presentation-facing entry point of the synchronization core.

:class:`ChatSync` wires the message store, channel directory, poll scheduler
and send coordinator around one :class:`~chatsync.transport.ChatTransport`.
The reads it exposes never suspend; everything that talks to the backend is a
coroutine or a background task.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set

from .config import PollConfig
from .directory import ChannelDirectory
from .errors import SendFailure, StaleResponse, ValidationFailure
from .message_store import MessageStore
from .models import ChannelKind, ChannelSummary, ChatUser, Message
from .scheduler import PollScheduler, PollState
from .send import SendCoordinator
from .transport import ChatTransport

logger = logging.getLogger(__name__)


@dataclass
class LocalSession:
    """The authenticated local user."""

    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    image: Optional[str] = None
    role: Optional[str] = None

    def as_user(self) -> ChatUser:
        return ChatUser(
            id=self.user_id,
            name=self.name,
            email=self.email,
            image=self.image,
            role=self.role,
        )


class ChatSync:
    def __init__(self, transport: ChatTransport, *, config: PollConfig | None = None) -> None:
        self.transport = transport
        self.store = MessageStore()
        self.directory = ChannelDirectory()
        self.scheduler = PollScheduler(transport, self.store, self.directory, config=config)
        self.sender = SendCoordinator(
            transport,
            self.store,
            self.directory,
            refresh_directory=self.scheduler.request_directory_refresh,
        )
        self.session: LocalSession | None = None
        self.failed_drafts: Dict[str, str] = {}
        self._sends: Set[asyncio.Task] = set()

    # ---- session ----

    def start(self, session: LocalSession) -> None:
        if self.session is not None:
            raise RuntimeError("chat session already started")
        self.session = session
        self.sender.author = session.as_user()
        self.scheduler.start_directory()
        logger.info("chat.session start user=%s", session.user_id)

    async def close(self) -> None:
        """Log out: stop polling and drop every cached entry, pending ones included.

        Sends still in flight keep running but their responses are discarded.
        """

        user = self.session.user_id if self.session else None
        self.session = None
        self.sender.reset()
        await self.scheduler.stop()
        self.store.clear()
        self.directory.clear()
        self.failed_drafts.clear()
        logger.info("chat.session closed user=%s", user)

    @property
    def state(self) -> PollState:
        return self.scheduler.state

    def _require_session(self) -> LocalSession:
        if self.session is None:
            raise RuntimeError("chat session is not started")
        return self.session

    # ---- reads ----

    def select_channel(self, channel_id: str | None) -> None:
        self._require_session()
        if channel_id is None:
            self.scheduler.deactivate_channel()
        else:
            self.scheduler.activate_channel(channel_id)

    def get_ordered_messages(self, channel_id: str) -> list[Message]:
        return self.store.load(channel_id)

    def get_channel_list(
        self,
        kind: ChannelKind | str | None = None,
        search: str | None = None,
    ) -> list[ChannelSummary]:
        return self.directory.channels(kind=kind, search=search)

    def has_older_messages(self, channel_id: str) -> bool:
        return self.store.history_cursor(channel_id) is not None

    async def load_older_messages(self, channel_id: str) -> bool:
        self._require_session()
        return await self.scheduler.load_history(channel_id) > 0

    # ---- sends ----

    def submit_message(self, channel_id: str, content: str) -> asyncio.Task:
        """Queue a send and return immediately.

        The pending entry is already visible through
        :meth:`get_ordered_messages` when this returns.  Empty content raises
        :class:`~chatsync.errors.ValidationFailure` synchronously.
        """

        self._require_session()
        pending = self.sender.begin(channel_id, content)
        task = asyncio.get_running_loop().create_task(self._deliver(pending))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)
        return task

    async def _deliver(self, pending: Message) -> Message | None:
        try:
            return await self.sender.complete(pending)
        except SendFailure as exc:
            self.failed_drafts[exc.channel_id] = exc.content
            logger.warning("chat.session send failed channel=%s reason=%s", exc.channel_id, exc.reason)
        except StaleResponse as exc:
            logger.info("chat.session send discarded: %s", exc)
        return None

    async def send_message(self, channel_id: str, content: str) -> Message:
        self._require_session()
        return await self.sender.send(channel_id, content)

    def take_failed_draft(self, channel_id: str) -> str | None:
        return self.failed_drafts.pop(channel_id, None)

    # ---- membership ----

    async def create_channel(
        self,
        kind: ChannelKind | str,
        name: str | None = None,
        member_ids: Iterable[str] = (),
        description: str | None = None,
        is_private: bool = False,
    ) -> str:
        self._require_session()
        kind = ChannelKind(kind)
        members = [m for m in member_ids if m]
        if kind is ChannelKind.DIRECT:
            if len(members) != 1:
                raise ValidationFailure("a direct channel needs exactly one other member")
        elif not name or not name.strip():
            raise ValidationFailure("channel name is required")
        payload = await self.transport.create_channel(
            kind,
            name=name.strip() if name else None,
            member_ids=members,
            description=description,
            is_private=is_private,
        )
        channel_id = str(payload["id"])
        logger.info("chat.session channel created id=%s kind=%s", channel_id, kind.value)
        await self.scheduler.poll_directory_once()
        return channel_id

    async def add_members(self, channel_id: str, member_ids: Iterable[str]) -> None:
        self._require_session()
        members = [m for m in member_ids if m]
        if not members:
            raise ValidationFailure("no members to add")
        cached = self.directory.get(channel_id)
        if cached is not None and cached.kind is ChannelKind.DIRECT:
            raise ValidationFailure("members cannot be added to a direct channel")
        await self.transport.add_members(channel_id, members)
        await self.scheduler.poll_directory_once()
