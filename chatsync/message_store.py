from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set, Union

from pydantic import ValidationError

from .models import DeliveryState, Message

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Confirmed:
    message: Message


@dataclass(frozen=True)
class Failed:
    reason: str | None = None


Outcome = Union[Confirmed, Failed]


@dataclass
class ChannelMessages:
    confirmed: Dict[str, Message] = field(default_factory=dict)
    pending: Dict[str, Message] = field(default_factory=dict)
    # Confirmed by a send response but not contained in any snapshot yet.
    unacked: Set[str] = field(default_factory=set)
    ordered: List[Message] = field(default_factory=list)
    history_cursor: str | None = None
    has_more_history: bool = False
    history_loaded: bool = False

    def rebuild(self) -> None:
        entries = [*self.confirmed.values(), *self.pending.values()]
        entries.sort(key=lambda m: m.sort_key)
        self.ordered = entries


class MessageStore:
    """Per-channel ordered view of confirmed and optimistic messages.

    Three sources feed a channel: authoritative poll snapshots, pending
    entries appended at send time, and send outcomes.  Every operation is
    synchronous, so calls for one channel are applied strictly one after the
    other on the event loop.  ``load`` always returns entries sorted by
    ``(created_at, id)`` with at most one entry per identity.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, ChannelMessages] = {}
        self.dropped_entries = 0

    def _channel(self, channel_id: str) -> ChannelMessages:
        return self._channels.setdefault(channel_id, ChannelMessages())

    def channel_ids(self) -> list[str]:
        return list(self._channels.keys())

    def load(self, channel_id: str) -> list[Message]:
        state = self._channels.get(channel_id)
        if state is None:
            return []
        return list(state.ordered)

    def _coerce(self, channel_id: str, raw: Any) -> Message | None:
        try:
            message = raw if isinstance(raw, Message) else Message.model_validate(raw)
        except ValidationError as exc:
            self.dropped_entries += 1
            logger.warning(
                "chat.store drop entry channel=%s reason=invalid errors=%s",
                channel_id,
                exc.error_count(),
            )
            return None
        if message.channel_id != channel_id:
            self.dropped_entries += 1
            logger.warning(
                "chat.store drop entry channel=%s reason=channel_mismatch got=%s id=%s",
                channel_id,
                message.channel_id,
                message.id,
            )
            return None
        if message.is_pending:
            message = message.model_copy(update={"state": DeliveryState.CONFIRMED})
        return message

    def merge_snapshot(
        self,
        channel_id: str,
        server_messages: Iterable[Any],
        *,
        has_more: bool = False,
        next_cursor: str | None = None,
    ) -> list[Message]:
        """Replace the confirmed portion of a channel with ``server_messages``.

        Pending entries survive unless the snapshot carries their persisted
        copy (matched through the echoed ``nonce``).  Messages confirmed by a
        send response survive a snapshot that predates them.  When
        ``has_more`` is set the snapshot is only the newest window, and older
        confirmed messages already loaded are kept.  Applying the same
        snapshot twice yields the same result.
        """

        incoming: Dict[str, Message] = {}
        for raw in server_messages:
            message = self._coerce(channel_id, raw)
            if message is not None:
                incoming[message.id] = message

        state = self._channel(channel_id)
        window_start = None
        newest = None
        if incoming:
            window_start = min(m.created_at for m in incoming.values())
            newest = max(m.created_at for m in incoming.values())

        confirmed: Dict[str, Message] = {}
        for message_id, message in state.confirmed.items():
            if message_id in incoming:
                continue
            older_than_window = has_more and (
                window_start is None or message.created_at < window_start
            )
            if older_than_window:
                confirmed[message_id] = message
                if window_start is not None:
                    state.unacked.discard(message_id)
            elif message_id in state.unacked:
                if newest is not None and newest > message.created_at:
                    # The snapshot was taken after this message existed.
                    state.unacked.discard(message_id)
                    logger.info(
                        "chat.store drop unacked channel=%s id=%s reason=absent_from_newer_snapshot",
                        channel_id,
                        message_id,
                    )
                    continue
                confirmed[message_id] = message
        confirmed.update(incoming)
        state.confirmed = confirmed
        state.unacked.difference_update(incoming.keys())

        nonces = {m.nonce for m in incoming.values() if m.nonce}
        for temp_id in [t for t in state.pending if t in nonces]:
            del state.pending[temp_id]
            logger.debug(
                "chat.store pending settled by snapshot channel=%s temp=%s",
                channel_id,
                temp_id,
            )

        if not state.history_loaded:
            state.history_cursor = next_cursor if has_more else None
            state.has_more_history = has_more
        state.rebuild()
        return list(state.ordered)

    def merge_history(
        self,
        channel_id: str,
        older_messages: Iterable[Any],
        *,
        has_more: bool = False,
        next_cursor: str | None = None,
    ) -> int:
        """Add an older page of history; never removes or overwrites entries."""

        state = self._channel(channel_id)
        added = 0
        for raw in older_messages:
            message = self._coerce(channel_id, raw)
            if message is None or message.id in state.confirmed:
                continue
            state.confirmed[message.id] = message
            added += 1
        state.history_cursor = next_cursor if has_more else None
        state.has_more_history = has_more
        state.history_loaded = True
        state.rebuild()
        return added

    def append_pending(self, channel_id: str, pending: Message) -> None:
        if not pending.is_pending:
            raise ValueError("append_pending requires a pending message")
        if pending.channel_id != channel_id:
            raise ValueError(
                f"pending message belongs to {pending.channel_id}, not {channel_id}"
            )
        state = self._channel(channel_id)
        if pending.id in state.pending:
            raise ValueError(f"pending message {pending.id} already queued")
        state.pending[pending.id] = pending
        state.rebuild()

    def reconcile(self, channel_id: str, temp_id: str, outcome: Outcome) -> Message | None:
        """Settle the pending entry ``temp_id`` and return it if it was present."""

        state = self._channel(channel_id)
        removed = state.pending.pop(temp_id, None)
        if isinstance(outcome, Confirmed):
            message = self._coerce(channel_id, outcome.message)
            if message is not None and message.id not in state.confirmed:
                state.confirmed[message.id] = message
                state.unacked.add(message.id)
            logger.debug(
                "chat.store confirmed channel=%s temp=%s id=%s",
                channel_id,
                temp_id,
                message.id if message else None,
            )
        else:
            logger.info(
                "chat.store rollback channel=%s temp=%s reason=%s",
                channel_id,
                temp_id,
                outcome.reason,
            )
        state.rebuild()
        return removed

    def latest_visible(self, channel_id: str) -> Message | None:
        state = self._channels.get(channel_id)
        if state is None:
            return None
        for message in reversed(state.ordered):
            if message.is_pending or message.deleted:
                continue
            return message
        return None

    def is_deleted(self, channel_id: str, message_id: str) -> bool:
        state = self._channels.get(channel_id)
        if state is None:
            return False
        message = state.confirmed.get(message_id)
        return message is not None and message.deleted

    def history_cursor(self, channel_id: str) -> str | None:
        state = self._channels.get(channel_id)
        if state is None or not state.has_more_history:
            return None
        return state.history_cursor

    def pending_count(self, channel_id: str) -> int:
        state = self._channels.get(channel_id)
        return len(state.pending) if state is not None else 0

    def clear(self, channel_id: str | None = None) -> None:
        if channel_id is None:
            self._channels.clear()
        else:
            self._channels.pop(channel_id, None)
