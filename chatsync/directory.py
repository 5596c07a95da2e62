from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List

from pydantic import ValidationError

from .models import ChannelKind, ChannelSummary, LastMessagePreview, Message

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _sort_key(channel: ChannelSummary) -> tuple[bool, datetime, str]:
    return (channel.pinned, channel.activity_at or _EPOCH, channel.id)


class ChannelDirectory:
    """Cached channel list sorted for display.

    Pinned channels come first, then channels by most recent activity.  A
    channel's preview only ever moves forward in time: neither
    :meth:`upsert_preview` nor a lagging :meth:`refresh` replaces it with an
    older message.  The one exception is a preview whose message has since
    been deleted, which :meth:`replace_preview` swaps for an older one.
    """

    def __init__(self) -> None:
        self._channels: Dict[str, ChannelSummary] = {}
        self._ordered: List[ChannelSummary] = []

    def _resort(self) -> None:
        self._ordered = sorted(self._channels.values(), key=_sort_key, reverse=True)

    def refresh(
        self,
        snapshot: Iterable[Any],
        *,
        withdrawn: Callable[[str, str], bool] | None = None,
    ) -> list[ChannelSummary]:
        """Replace the cached list with ``snapshot``.

        A cached preview newer than the incoming one is kept, unless
        ``withdrawn(channel_id, message_id)`` reports its message as deleted.
        """

        channels: Dict[str, ChannelSummary] = {}
        for raw in snapshot:
            try:
                channel = (
                    raw
                    if isinstance(raw, ChannelSummary)
                    else ChannelSummary.model_validate(raw)
                )
            except ValidationError as exc:
                logger.warning(
                    "chat.directory drop entry reason=invalid errors=%s",
                    exc.error_count(),
                )
                continue
            existing = self._channels.get(channel.id)
            cached = existing.last_message if existing is not None else None
            if (
                cached is not None
                and cached.id
                and withdrawn is not None
                and withdrawn(channel.id, cached.id)
            ):
                cached = None
            if cached is not None:
                incoming = channel.last_message
                if incoming is None or incoming.created_at < cached.created_at:
                    channel = channel.model_copy(update={"last_message": cached})
            channels[channel.id] = channel
        self._channels = channels
        self._resort()
        logger.debug("chat.directory refresh size=%s", len(self._channels))
        return list(self._ordered)

    def upsert_preview(self, channel_id: str, message: Message) -> bool:
        """Point a channel's preview at ``message`` unless that is a regression."""

        if message.is_pending or message.deleted:
            return False
        channel = self._channels.get(channel_id)
        if channel is None:
            logger.debug("chat.directory preview skipped channel=%s reason=unknown", channel_id)
            return False
        current = channel.last_message
        if current is not None and message.created_at < current.created_at:
            logger.debug(
                "chat.directory preview skipped channel=%s reason=older id=%s",
                channel_id,
                message.id,
            )
            return False
        preview = LastMessagePreview.from_message(message)
        if current == preview:
            return False
        self._channels[channel_id] = channel.model_copy(update={"last_message": preview})
        self._resort()
        return True

    def replace_preview(self, channel_id: str, message: Message | None) -> bool:
        """Drop the current preview and point it at ``message``, even if older."""

        channel = self._channels.get(channel_id)
        if channel is None:
            return False
        if message is not None and (message.is_pending or message.deleted):
            message = None
        preview = LastMessagePreview.from_message(message) if message is not None else None
        if channel.last_message == preview:
            return False
        self._channels[channel_id] = channel.model_copy(update={"last_message": preview})
        self._resort()
        logger.debug(
            "chat.directory preview replaced channel=%s id=%s",
            channel_id,
            message.id if message is not None else None,
        )
        return True

    def get(self, channel_id: str) -> ChannelSummary | None:
        return self._channels.get(channel_id)

    def channels(
        self,
        kind: ChannelKind | str | None = None,
        search: str | None = None,
    ) -> list[ChannelSummary]:
        result = list(self._ordered)
        if kind is not None and kind != "all":
            wanted = ChannelKind(kind)
            result = [ch for ch in result if ch.kind is wanted]
        if search:
            needle = search.lower()
            result = [ch for ch in result if needle in ch.label.lower()]
        return result

    def clear(self) -> None:
        self._channels.clear()
        self._ordered = []

    def __len__(self) -> int:
        return len(self._channels)
