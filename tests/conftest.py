import asyncio
import itertools
from datetime import datetime, timedelta, timezone

import pytest

from chatsync.config import PollConfig
from chatsync.models import MessagePage

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def ts(seconds: float) -> str:
    return (T0 + timedelta(seconds=seconds)).isoformat()


def wire_message(message_id, seconds, channel_id, content="hi", **extra) -> dict:
    return {
        "id": message_id,
        "channelId": channel_id,
        "content": content,
        "createdAt": ts(seconds),
        **extra,
    }


class FakeTransport:
    """In-memory backend with hooks to hold or fail individual requests.

    ``pages`` is read when a request is dispatched, so a held request answers
    with the state the server had at that moment.
    """

    def __init__(self):
        self.channels: list[dict] = []
        self.pages: dict[str, list[dict]] = {}
        self.more: dict[str, tuple[bool, str | None]] = {}
        self.history: dict[tuple[str, str], MessagePage] = {}
        self.gates: dict[str, asyncio.Future] = {}
        self.errors: dict[str, list[Exception]] = {}
        self.calls: list[tuple] = []
        self.sent: list[tuple] = []
        self.send_gate: asyncio.Future | None = None
        self.send_error: Exception | None = None
        self.created: list[dict] = []
        self.added: list[tuple] = []
        self._ids = itertools.count(1)
        self.clock = 1000

    def _fail(self, op: str) -> None:
        queue = self.errors.get(op)
        if queue:
            raise queue.pop(0)

    async def fetch_channels(self):
        self.calls.append(("channels",))
        self._fail("channels")
        return [dict(c) for c in self.channels]

    async def fetch_messages(self, channel_id, limit, cursor=None):
        self.calls.append(("messages", channel_id, cursor))
        self._fail("messages")
        if cursor is not None:
            return self.history[(channel_id, cursor)]
        snapshot = [dict(m) for m in self.pages.get(channel_id, [])]
        has_more, next_cursor = self.more.get(channel_id, (False, None))
        gate = self.gates.pop(channel_id, None)
        if gate is not None:
            await gate
        return MessagePage(messages=snapshot, has_more=has_more, next_cursor=next_cursor)

    async def send_message(self, channel_id, content, nonce=None):
        self.sent.append((channel_id, content, nonce))
        if self.send_gate is not None:
            await self.send_gate
        if self.send_error is not None:
            raise self.send_error
        self.clock += 1
        stored = wire_message(f"srv{next(self._ids)}", self.clock, channel_id, content, nonce=nonce)
        self.pages.setdefault(channel_id, []).append(stored)
        return dict(stored)

    async def create_channel(self, kind, name=None, member_ids=(), description=None, is_private=False):
        channel_id = f"new{next(self._ids)}"
        self.created.append({"kind": kind, "name": name, "memberIds": list(member_ids)})
        self.channels.append({"id": channel_id, "name": name or channel_id, "type": kind.value})
        return {"id": channel_id}

    async def add_members(self, channel_id, member_ids):
        self.added.append((channel_id, list(member_ids)))


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def poll_config():
    return PollConfig(
        message_interval_s=60,
        directory_interval_s=60,
        fetch_attempts=2,
        retry_base_delay_s=0,
    )
