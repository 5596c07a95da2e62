import asyncio

import pytest

from chatsync import retry
from chatsync.errors import TransportError
from chatsync.retry import call_with_retries, is_retryable


class _FakeError(Exception):
    def __init__(self, status: int | None = None):
        super().__init__("fail")
        self.status = status


async def _run_success() -> None:
    calls = {"n": 0}

    async def fn() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise _FakeError(500)
        return "ok"

    result = await call_with_retries(fn, retries=3, base_delay=0)
    assert result == "ok"
    assert calls["n"] == 3


def test_retry_succeeds() -> None:
    asyncio.run(_run_success())


async def _run_failure() -> None:
    calls = {"n": 0}

    async def fn() -> None:
        calls["n"] += 1
        raise TransportError("timeout")

    with pytest.raises(TransportError):
        await call_with_retries(fn, retries=2, base_delay=0)
    assert calls["n"] == 2


def test_retry_gives_up_after_attempts() -> None:
    asyncio.run(_run_failure())


def test_non_retryable_error_propagates_immediately() -> None:
    calls = {"n": 0}

    async def fn() -> None:
        calls["n"] += 1
        raise TransportError("not found", status=404)

    with pytest.raises(TransportError):
        asyncio.run(call_with_retries(fn, retries=5, base_delay=0))
    assert calls["n"] == 1


def test_backoff_doubles(monkeypatch) -> None:
    delays: list[float] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr(retry.asyncio, "sleep", fake_sleep)

    async def fn() -> None:
        raise _FakeError(503)

    with pytest.raises(_FakeError):
        asyncio.run(call_with_retries(fn, retries=4, base_delay=0.5))
    assert delays == [0.5, 1.0, 2.0]


@pytest.mark.parametrize(
    "exc, expected",
    [
        (TransportError("x"), True),
        (TransportError("x", status=500), True),
        (TransportError("x", status=429), False),
        (_FakeError(502), True),
        (_FakeError(400), False),
        (_FakeError(None), False),
        (ValueError("x"), False),
    ],
)
def test_is_retryable(exc, expected) -> None:
    assert is_retryable(exc) is expected
