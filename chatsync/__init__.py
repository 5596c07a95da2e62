"""Channel and message synchronization core for a multi-channel chat client."""

from .client import ChatSync, LocalSession
from .errors import (
    ChatSyncError,
    SendFailure,
    StaleResponse,
    TransientFetchFailure,
    TransportError,
    ValidationFailure,
)
from .models import ChannelKind, ChannelSummary, Message, MessagePage

__all__ = [
    "ChatSync",
    "LocalSession",
    "ChatSyncError",
    "SendFailure",
    "StaleResponse",
    "TransientFetchFailure",
    "TransportError",
    "ValidationFailure",
    "ChannelKind",
    "ChannelSummary",
    "Message",
    "MessagePage",
]
