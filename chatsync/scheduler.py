from __future__ import annotations

"""Background polling for the channel directory and the active channel.

The scheduler owns one periodic task per ``(TaskKind, channel_id)`` key.  At
most one message poll runs at a time, for the active channel.  Every fetch is
tagged with a sequence number when it is dispatched and its result is only
applied when that number is still the latest one issued for the key, so a
slow response cannot overwrite newer state after a channel switch.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from .config import PollConfig
from .directory import ChannelDirectory
from .errors import StaleResponse, TransientFetchFailure, TransportError
from .message_store import MessageStore
from .models import MessagePage
from .retry import call_with_retries
from .transport import ChatTransport

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    DIRECTORY = "directory"
    MESSAGES = "messages"
    HISTORY = "history"


class PollPhase(str, Enum):
    IDLE = "idle"
    DIRECTORY = "directory_polling"
    CHANNEL = "channel_polling"


@dataclass(frozen=True)
class PollState:
    phase: PollPhase
    channel_id: Optional[str] = None


TaskKey = Tuple[TaskKind, Optional[str]]


class PollScheduler:
    def __init__(
        self,
        transport: ChatTransport,
        store: MessageStore,
        directory: ChannelDirectory,
        *,
        config: PollConfig | None = None,
    ) -> None:
        self.transport = transport
        self.store = store
        self.directory = directory
        self.config = config or PollConfig()
        self._tasks: Dict[TaskKey, asyncio.Task] = {}
        self._oneshots: Set[asyncio.Task] = set()
        self._inflight: Set[asyncio.Task] = set()
        self._seq = itertools.count(1)
        self._latest: Dict[TaskKey, int] = {}
        self._active_channel: Optional[str] = None
        self._running = False
        self.failures = 0
        self.stale_dropped = 0

    # ---- state ----

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_channel(self) -> Optional[str]:
        return self._active_channel

    @property
    def state(self) -> PollState:
        if not self._running:
            return PollState(PollPhase.IDLE)
        if self._active_channel is not None:
            return PollState(PollPhase.CHANNEL, self._active_channel)
        return PollState(PollPhase.DIRECTORY)

    # ---- lifecycle ----

    def start_directory(self) -> None:
        self._running = True
        key: TaskKey = (TaskKind.DIRECTORY, None)
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return
        self._spawn(
            key,
            self._run(self.poll_directory_once, self.config.directory_interval_s, "directory"),
        )
        logger.info("chat.poll start directory interval=%s", self.config.directory_interval_s)

    def activate_channel(self, channel_id: str) -> None:
        if not self._running:
            raise RuntimeError("poll scheduler is not running")
        key: TaskKey = (TaskKind.MESSAGES, channel_id)
        current = self._tasks.get(key)
        if (
            self._active_channel == channel_id
            and current is not None
            and not current.done()
        ):
            return
        previous = self._active_channel
        if previous is not None:
            self._cancel((TaskKind.MESSAGES, previous))
            self._invalidate((TaskKind.MESSAGES, previous))
        self._invalidate(key)
        self._active_channel = channel_id
        self._spawn(
            key,
            self._run(
                lambda: self.poll_channel_once(channel_id),
                self.config.message_interval_s,
                f"messages:{channel_id}",
            ),
        )
        logger.info("chat.poll activate channel=%s previous=%s", channel_id, previous)

    def deactivate_channel(self) -> None:
        previous = self._active_channel
        if previous is None:
            return
        self._cancel((TaskKind.MESSAGES, previous))
        self._invalidate((TaskKind.MESSAGES, previous))
        self._active_channel = None
        logger.info("chat.poll deactivate channel=%s", previous)

    async def stop(self) -> None:
        """Return to idle: cancel every poll task and orphan in-flight fetches."""

        self._running = False
        self._active_channel = None
        for key in list(self._latest):
            self._invalidate(key)
        tasks = [*self._tasks.values(), *self._oneshots]
        self._tasks.clear()
        self._oneshots.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("chat.poll stopped cancelled=%s inflight=%s", len(tasks), len(self._inflight))

    async def drain(self) -> None:
        """Wait until every dispatched fetch has finished."""

        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    # ---- single fetches ----

    async def poll_directory_once(self) -> bool:
        applied = await self._request(
            (TaskKind.DIRECTORY, None),
            self.transport.fetch_channels,
            self._apply_directory,
        )
        return applied is not None

    async def poll_channel_once(self, channel_id: str) -> bool:
        """Fetch the newest window of ``channel_id`` and merge it.

        The result is discarded unless ``channel_id`` is still the active
        channel when the response arrives.
        """

        limit = self.config.message_limit
        applied = await self._request(
            (TaskKind.MESSAGES, channel_id),
            lambda: self.transport.fetch_messages(channel_id, limit),
            lambda page: self._apply_messages(channel_id, page),
        )
        return applied is not None

    async def load_history(self, channel_id: str) -> int:
        cursor = self.store.history_cursor(channel_id)
        if cursor is None:
            return 0
        limit = self.config.message_limit
        added = await self._request(
            (TaskKind.HISTORY, channel_id),
            lambda: self.transport.fetch_messages(channel_id, limit, cursor),
            lambda page: self._apply_history(channel_id, page),
        )
        return added or 0

    def request_directory_refresh(self) -> asyncio.Task | None:
        if not self._running:
            return None
        task = asyncio.get_running_loop().create_task(self.poll_directory_once())
        self._oneshots.add(task)
        task.add_done_callback(self._oneshots.discard)
        return task

    # ---- internals ----

    def _spawn(self, key: TaskKey, coro: Awaitable[None]) -> None:
        kind, channel_id = key
        name = f"chat.poll:{kind.value}:{channel_id or '-'}"
        self._tasks[key] = asyncio.get_running_loop().create_task(coro, name=name)

    def _cancel(self, key: TaskKey) -> None:
        task = self._tasks.pop(key, None)
        if task is not None:
            task.cancel()

    def _invalidate(self, key: TaskKey) -> None:
        self._latest[key] = next(self._seq)

    async def _run(
        self, tick: Callable[[], Awaitable[Any]], interval: float, label: str
    ) -> None:
        while True:
            try:
                await tick()
            except Exception:
                logger.exception("chat.poll tick crashed loop=%s", label)
            await asyncio.sleep(interval)

    async def _request(
        self,
        key: TaskKey,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], Any],
    ) -> Any:
        seq = next(self._seq)
        self._latest[key] = seq
        task = asyncio.get_running_loop().create_task(
            self._fetch_and_apply(key, seq, fetch, apply)
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        # Cancelling the caller leaves the fetch running; its result still
        # goes through the staleness check.
        return await asyncio.shield(task)

    async def _fetch_and_apply(
        self,
        key: TaskKey,
        seq: int,
        fetch: Callable[[], Awaitable[Any]],
        apply: Callable[[Any], Any],
    ) -> Any:
        kind, channel_id = key
        try:
            result = await call_with_retries(
                fetch,
                retries=self.config.fetch_attempts,
                base_delay=self.config.retry_base_delay_s,
                log=logger,
            )
        except TransportError as exc:
            self.failures += 1
            failure = TransientFetchFailure(kind.value, channel_id, seq)
            logger.warning("chat.poll skipped tick: %s error=%s", failure, exc)
            return None
        except Exception:
            self.failures += 1
            logger.exception("chat.poll fetch crashed kind=%s channel=%s seq=%s", kind.value, channel_id, seq)
            return None
        try:
            self._ensure_current(key, seq)
        except StaleResponse as exc:
            self.stale_dropped += 1
            logger.info("chat.poll drop %s", exc)
            return None
        try:
            return apply(result)
        except Exception:
            logger.exception("chat.poll apply crashed kind=%s channel=%s seq=%s", kind.value, channel_id, seq)
            return None

    def _ensure_current(self, key: TaskKey, seq: int) -> None:
        kind, channel_id = key
        latest = self._latest.get(key)
        if not self._running or latest != seq:
            raise StaleResponse(kind.value, channel_id, seq, latest)
        if kind is TaskKind.MESSAGES and channel_id != self._active_channel:
            raise StaleResponse(kind.value, channel_id, seq, latest)

    def _apply_directory(self, snapshot: Any) -> bool:
        self.directory.refresh(snapshot, withdrawn=self.store.is_deleted)
        for channel_id in self.store.channel_ids():
            self._sync_preview(channel_id)
        return True

    def _apply_messages(self, channel_id: str, page: Any) -> bool:
        page = _as_page(page)
        self.store.merge_snapshot(
            channel_id,
            page.messages,
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )
        self._sync_preview(channel_id)
        return True

    def _sync_preview(self, channel_id: str) -> None:
        latest = self.store.latest_visible(channel_id)
        summary = self.directory.get(channel_id)
        current = summary.last_message if summary is not None else None
        if current is not None and current.id and self.store.is_deleted(channel_id, current.id):
            # The preview names a message that was deleted since.
            self.directory.replace_preview(channel_id, latest)
        elif latest is not None:
            self.directory.upsert_preview(channel_id, latest)

    def _apply_history(self, channel_id: str, page: Any) -> int:
        page = _as_page(page)
        added = self.store.merge_history(
            channel_id,
            page.messages,
            has_more=page.has_more,
            next_cursor=page.next_cursor,
        )
        logger.debug("chat.poll history channel=%s added=%s more=%s", channel_id, added, page.has_more)
        return added


def _as_page(page: Any) -> MessagePage:
    if isinstance(page, MessagePage):
        return page
    if isinstance(page, list):
        return MessagePage(messages=page)
    return MessagePage.model_validate(page)
