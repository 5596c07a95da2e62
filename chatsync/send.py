from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .directory import ChannelDirectory
from .errors import SendFailure, StaleResponse, TransportError, ValidationFailure
from .message_store import Confirmed, Failed, MessageStore
from .models import ChatUser, Message, utcnow
from .transport import ChatTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Ticket:
    channel_id: str
    content: str
    generation: int


class SendCoordinator:
    """Optimistic send: show the message at once, persist it, then settle it.

    :meth:`begin` validates and appends the pending entry synchronously;
    :meth:`complete` performs the single network call and reconciles the
    store with its outcome.  :meth:`send` does both.
    """

    def __init__(
        self,
        transport: ChatTransport,
        store: MessageStore,
        directory: ChannelDirectory,
        *,
        author: ChatUser | None = None,
        refresh_directory: Optional[Callable[[], object]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.transport = transport
        self.store = store
        self.directory = directory
        self.author = author
        self._refresh_directory = refresh_directory
        self._clock = clock
        self._generation = 0
        self._tickets: Dict[str, _Ticket] = {}

    @property
    def in_flight(self) -> int:
        return len(self._tickets)

    def reset(self) -> None:
        """Forget every in-flight send; their responses become stale."""

        self._generation += 1
        self._tickets.clear()
        self.author = None

    def begin(self, channel_id: str, content: str) -> Message:
        if not channel_id:
            raise ValidationFailure("channel id is required")
        if content is None or not content.strip():
            raise ValidationFailure("message content is empty")
        pending = Message.pending(
            channel_id,
            content.strip(),
            author=self.author,
            created_at=self._clock(),
        )
        self.store.append_pending(channel_id, pending)
        self._tickets[pending.id] = _Ticket(channel_id, content, self._generation)
        logger.debug("chat.send pending channel=%s temp=%s", channel_id, pending.id)
        return pending

    async def complete(self, pending: Message) -> Message:
        ticket = self._tickets.pop(pending.id, None)
        if ticket is None:
            raise ValueError(f"{pending.id} is not an in-flight send")
        channel_id = ticket.channel_id
        try:
            raw = await self.transport.send_message(
                channel_id, pending.content, nonce=pending.id
            )
            message = Message.model_validate(raw)
            if message.channel_id != channel_id:
                raise TransportError(
                    f"send response belongs to channel {message.channel_id}"
                )
        except TransportError as exc:
            raise self._fail(ticket, pending.id, _reason(exc)) from exc
        except Exception as exc:
            raise self._fail(ticket, pending.id, _reason(exc, with_type=True)) from exc

        self._check_generation(ticket, pending.id)
        self.store.reconcile(channel_id, pending.id, Confirmed(message))
        self.directory.upsert_preview(channel_id, message)
        logger.info(
            "chat.send confirmed channel=%s temp=%s id=%s",
            channel_id,
            pending.id,
            message.id,
        )
        if self._refresh_directory is not None:
            self._refresh_directory()
        return message

    async def send(self, channel_id: str, content: str) -> Message:
        pending = self.begin(channel_id, content)
        return await self.complete(pending)

    def _check_generation(self, ticket: _Ticket, temp_id: str) -> None:
        if ticket.generation != self._generation:
            logger.info(
                "chat.send drop response after logout channel=%s temp=%s",
                ticket.channel_id,
                temp_id,
            )
            raise StaleResponse("send", ticket.channel_id, ticket.generation, self._generation)

    def _fail(self, ticket: _Ticket, temp_id: str, reason: str) -> SendFailure:
        """Roll the pending entry back and build the error to raise."""

        self._check_generation(ticket, temp_id)
        self.store.reconcile(ticket.channel_id, temp_id, Failed(reason))
        logger.warning(
            "chat.send failed channel=%s temp=%s reason=%s",
            ticket.channel_id,
            temp_id,
            reason,
        )
        return SendFailure(ticket.channel_id, ticket.content, reason)


def _reason(exc: BaseException, with_type: bool = False) -> str:
    lines = str(exc).splitlines()
    text = lines[0] if lines else ""
    if with_type or not text:
        text = f"{type(exc).__name__}: {text}" if text else type(exc).__name__
    return text[:240]
