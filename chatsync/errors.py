from __future__ import annotations

"""Error taxonomy shared by the synchronization core.

Only :class:`SendFailure` is meant to reach the user.  Transient fetch
failures and stale responses are handled inside the poll scheduler and only
show up in logs and counters.
"""


class ChatSyncError(Exception):
    """Base class for every error raised by :mod:`chatsync`."""


class ValidationFailure(ChatSyncError, ValueError):
    """Rejected locally before any state mutation or network call."""


class TransportError(ChatSyncError):
    """A request to the chat backend failed.

    ``status`` is the HTTP status code, or ``None`` when the request never
    produced a response (connection error, timeout).
    """

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.status is None or 500 <= self.status < 600


class TransientFetchFailure(ChatSyncError):
    """A poll tick failed; the next tick recovers."""

    def __init__(self, kind: str, channel_id: str | None, seq: int) -> None:
        target = channel_id if channel_id is not None else "-"
        super().__init__(f"{kind} fetch failed channel={target} seq={seq}")
        self.kind = kind
        self.channel_id = channel_id
        self.seq = seq


class SendFailure(ChatSyncError):
    """Persisting a message failed and its optimistic entry was rolled back.

    ``content`` is the text exactly as the user typed it so it can be put
    back into the composer.
    """

    def __init__(self, channel_id: str, content: str, reason: str) -> None:
        super().__init__(f"send failed channel={channel_id}: {reason}")
        self.channel_id = channel_id
        self.content = content
        self.reason = reason


class StaleResponse(ChatSyncError):
    """A response that is no longer relevant and must not be merged."""

    def __init__(self, kind: str, channel_id: str | None, seq: int, latest: int | None) -> None:
        target = channel_id if channel_id is not None else "-"
        super().__init__(
            f"stale {kind} response channel={target} seq={seq} latest={latest}"
        )
        self.kind = kind
        self.channel_id = channel_id
        self.seq = seq
        self.latest = latest
