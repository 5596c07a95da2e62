import asyncio

import pytest

from chatsync.directory import ChannelDirectory
from chatsync.errors import TransportError
from chatsync.message_store import MessageStore
from chatsync.models import MessagePage
from chatsync.scheduler import PollPhase, PollScheduler, TaskKind

from conftest import settle, wire_message


def make_scheduler(transport, poll_config):
    store = MessageStore()
    directory = ChannelDirectory()
    scheduler = PollScheduler(transport, store, directory, config=poll_config)
    return scheduler, store, directory


def ids(store, channel_id):
    return [m.id for m in store.load(channel_id)]


@pytest.mark.asyncio
async def test_state_follows_lifecycle(transport, poll_config):
    scheduler, _, _ = make_scheduler(transport, poll_config)
    assert scheduler.state.phase is PollPhase.IDLE

    scheduler.start_directory()
    assert scheduler.state.phase is PollPhase.DIRECTORY

    scheduler.activate_channel("A")
    assert scheduler.state.phase is PollPhase.CHANNEL
    assert scheduler.state.channel_id == "A"

    scheduler.deactivate_channel()
    assert scheduler.state.phase is PollPhase.DIRECTORY

    await scheduler.stop()
    assert scheduler.state.phase is PollPhase.IDLE
    assert scheduler._tasks == {}


@pytest.mark.asyncio
async def test_activate_requires_running_scheduler(transport, poll_config):
    scheduler, _, _ = make_scheduler(transport, poll_config)
    with pytest.raises(RuntimeError):
        scheduler.activate_channel("A")


@pytest.mark.asyncio
async def test_directory_and_channel_poll_immediately(transport, poll_config):
    transport.channels = [{"id": "A", "name": "General", "type": "group"}]
    transport.pages["A"] = [wire_message("m1", 1, "A"), wire_message("m2", 2, "A")]
    scheduler, store, directory = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    assert ids(store, "A") == ["m1", "m2"]
    assert [c.id for c in directory.channels()] == ["A"]
    assert directory.get("A").last_message.id == "m2"
    await scheduler.stop()


@pytest.mark.asyncio
async def test_only_one_channel_task_at_a_time(transport, poll_config):
    scheduler, _, _ = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    scheduler.activate_channel("A")
    first = scheduler._tasks[(TaskKind.MESSAGES, "A")]
    scheduler.activate_channel("B")
    await settle()

    message_keys = [key for key in scheduler._tasks if key[0] is TaskKind.MESSAGES]
    assert message_keys == [(TaskKind.MESSAGES, "B")]
    assert first.cancelled()
    await scheduler.stop()


@pytest.mark.asyncio
async def test_reselecting_active_channel_keeps_its_task(transport, poll_config):
    scheduler, _, _ = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    scheduler.activate_channel("A")
    task = scheduler._tasks[(TaskKind.MESSAGES, "A")]
    scheduler.activate_channel("A")
    assert scheduler._tasks[(TaskKind.MESSAGES, "A")] is task
    await scheduler.stop()


@pytest.mark.asyncio
async def test_late_response_after_switch_does_not_touch_new_channel(transport, poll_config):
    loop = asyncio.get_running_loop()
    transport.pages["A"] = [wire_message("a1", 1, "A")]
    transport.pages["B"] = [wire_message("b1", 2, "B")]
    gate = loop.create_future()
    transport.gates["A"] = gate
    scheduler, store, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()
    assert ("messages", "A", None) in transport.calls

    scheduler.activate_channel("B")
    await settle()
    assert ids(store, "B") == ["b1"]

    gate.set_result(None)
    await scheduler.drain()

    assert ids(store, "B") == ["b1"]
    assert ids(store, "A") == []
    assert scheduler.stale_dropped == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stale_response_after_switching_back_is_discarded(transport, poll_config):
    loop = asyncio.get_running_loop()
    transport.pages["A"] = [wire_message("a-old", 1, "A")]
    gate = loop.create_future()
    transport.gates["A"] = gate
    scheduler, store, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    scheduler.activate_channel("B")
    await settle()
    scheduler.activate_channel("A")
    transport.pages["A"] = [wire_message("a-new", 5, "A")]
    await settle()
    assert ids(store, "A") == ["a-new"]

    gate.set_result(None)
    await scheduler.drain()

    assert ids(store, "A") == ["a-new"]
    assert scheduler.stale_dropped == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_cancelled_poll_does_not_cancel_request(transport, poll_config):
    loop = asyncio.get_running_loop()
    gate = loop.create_future()
    transport.gates["A"] = gate
    scheduler, _, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()
    inflight = set(scheduler._inflight)
    assert inflight

    scheduler.deactivate_channel()
    await settle()
    assert all(not task.done() for task in inflight)

    gate.set_result(None)
    await scheduler.drain()
    assert all(task.done() and not task.cancelled() for task in inflight)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_response_after_stop_is_discarded(transport, poll_config):
    loop = asyncio.get_running_loop()
    transport.pages["A"] = [wire_message("a1", 1, "A")]
    gate = loop.create_future()
    transport.gates["A"] = gate
    scheduler, store, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()
    await scheduler.stop()

    gate.set_result(None)
    await scheduler.drain()
    assert ids(store, "A") == []


@pytest.mark.asyncio
async def test_retryable_failure_is_retried_within_tick(transport, poll_config):
    transport.pages["A"] = [wire_message("a1", 1, "A")]
    transport.errors["messages"] = [TransportError("bad gateway", status=502)]
    scheduler, store, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    assert [c for c in transport.calls if c[0] == "messages"] == [
        ("messages", "A", None),
        ("messages", "A", None),
    ]
    assert ids(store, "A") == ["a1"]
    assert scheduler.failures == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_failed_tick_is_skipped_and_loop_survives(transport, poll_config):
    transport.pages["A"] = [wire_message("a1", 1, "A")]
    transport.errors["messages"] = [
        TransportError("down", status=None),
        TransportError("down", status=None),
    ]
    scheduler, store, _ = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    assert scheduler.failures == 1
    assert ids(store, "A") == []
    assert not scheduler._tasks[(TaskKind.MESSAGES, "A")].done()

    assert await scheduler.poll_channel_once("A") is True
    assert ids(store, "A") == ["a1"]
    await scheduler.stop()


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(transport, poll_config):
    transport.errors["channels"] = [TransportError("forbidden", status=403)]
    scheduler, _, directory = make_scheduler(transport, poll_config)

    scheduler.start_directory()
    await settle()

    assert transport.calls.count(("channels",)) == 1
    assert scheduler.failures == 1
    assert len(directory) == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_directory_refresh_applies_store_previews(transport, poll_config):
    transport.channels = [
        {
            "id": "A",
            "name": "General",
            "type": "group",
            "lastMessage": {"content": "old", "createdAt": "2024-05-01T12:00:01+00:00"},
        }
    ]
    transport.pages["A"] = [wire_message("a9", 9, "A", content="newest")]
    scheduler, _, directory = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    assert await scheduler.poll_directory_once() is True
    assert directory.get("A").last_message.content == "newest"
    await scheduler.stop()


@pytest.mark.asyncio
async def test_preview_falls_back_when_newest_message_is_deleted(transport, poll_config):
    transport.channels = [{"id": "A", "name": "General", "type": "group"}]
    transport.pages["A"] = [
        wire_message("m1", 1, "A", content="old"),
        wire_message("m2", 2, "A", content="secret"),
    ]
    scheduler, store, directory = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()
    assert directory.get("A").last_message.content == "secret"

    transport.pages["A"] = [
        wire_message("m1", 1, "A", content="old"),
        wire_message("m2", 2, "A", content="", deleted=True),
    ]
    assert await scheduler.poll_channel_once("A") is True
    assert store.latest_visible("A").id == "m1"
    assert directory.get("A").last_message.id == "m1"
    assert directory.get("A").last_message.content == "old"

    transport.channels = [
        {
            "id": "A",
            "name": "General",
            "type": "group",
            "lastMessage": {"id": "m1", "content": "old", "createdAt": "2024-05-01T12:00:01+00:00"},
        }
    ]
    assert await scheduler.poll_directory_once() is True
    assert directory.get("A").last_message.content == "old"
    await scheduler.stop()


@pytest.mark.asyncio
async def test_directory_refresh_does_not_keep_deleted_preview(transport, poll_config):
    transport.channels = [{"id": "A", "name": "General", "type": "group"}]
    scheduler, store, directory = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    await settle()

    store.merge_snapshot("A", [wire_message("m1", 1, "A", content="old"), wire_message("m2", 2, "A", content="secret")])
    directory.upsert_preview("A", store.latest_visible("A"))
    store.merge_snapshot("A", [wire_message("m1", 1, "A", content="old"), wire_message("m2", 2, "A", deleted=True)])

    assert await scheduler.poll_directory_once() is True
    assert directory.get("A").last_message.id == "m1"
    await scheduler.stop()


@pytest.mark.asyncio
async def test_load_history_uses_cursor_from_window(transport, poll_config):
    transport.pages["A"] = [wire_message("a3", 3, "A"), wire_message("a4", 4, "A")]
    transport.more["A"] = (True, "a3")
    transport.history[("A", "a3")] = MessagePage(
        messages=[wire_message("a1", 1, "A"), wire_message("a2", 2, "A")],
        has_more=False,
    )
    scheduler, store, _ = make_scheduler(transport, poll_config)
    scheduler.start_directory()
    scheduler.activate_channel("A")
    await settle()

    assert await scheduler.load_history("A") == 2
    assert ("messages", "A", "a3") in transport.calls
    assert ids(store, "A") == ["a1", "a2", "a3", "a4"]
    assert await scheduler.load_history("A") == 0
    await scheduler.stop()


@pytest.mark.asyncio
async def test_request_directory_refresh_is_noop_when_idle(transport, poll_config):
    scheduler, _, _ = make_scheduler(transport, poll_config)
    assert scheduler.request_directory_refresh() is None

    scheduler.start_directory()
    await settle()
    transport.channels = [{"id": "N", "name": "New", "type": "team"}]
    task = scheduler.request_directory_refresh()
    assert await task is True
    assert [c.id for c in scheduler.directory.channels()] == ["N"]
    await scheduler.stop()
