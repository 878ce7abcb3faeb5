import asyncio
from unittest.mock import AsyncMock

import pytest

from keybalance import (
    ErrorKind,
    HealthStatus,
    KeyStore,
    MemoryBackend,
    RetryConfig,
    RetryCoordinator,
    TaggedUpstreamError,
    UpstreamError,
    UpstreamResult,
)


async def _setup(invoke, **retry):
    store = KeyStore(MemoryBackend())
    key = await store.add_key("sk-test")
    sleep = AsyncMock()
    coord = RetryCoordinator(store, invoke, RetryConfig(**retry), sleep=sleep)
    return store, key, coord, sleep


@pytest.mark.asyncio
async def test_success_returns_immediately_and_records_feedback():
    invoke = AsyncMock(return_value=UpstreamResult(status=200, data={"id": "x"}))
    store, key, coord, sleep = await _setup(invoke)
    result = await coord.call_with_retry(key, {"messages": []})
    assert result.data == {"id": "x"}
    invoke.assert_awaited_once_with(key, {"messages": []})
    sleep.assert_not_awaited()
    stored = await store.get_key(key.id)
    assert stored.total_requests == 1
    assert stored.successful_requests == 1
    assert stored.health_status is HealthStatus.HEALTHY


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401, 403])
async def test_terminal_status_never_retries(status):
    invoke = AsyncMock(side_effect=UpstreamError(status, "denied"))
    store, key, coord, sleep = await _setup(invoke)
    with pytest.raises(TaggedUpstreamError) as ei:
        await coord.call_with_retry(key, {})
    assert invoke.await_count == 1
    sleep.assert_not_awaited()
    assert ei.value.kind is ErrorKind.TERMINAL
    assert ei.value.terminal
    assert ei.value.key_id == key.id
    assert ei.value.status == status
    assert (await store.get_key(key.id)).total_requests == 1


@pytest.mark.asyncio
async def test_retryable_errors_back_off_linearly_then_raise():
    invoke = AsyncMock(side_effect=UpstreamError(500, "oops"))
    store, key, coord, sleep = await _setup(invoke)
    with pytest.raises(TaggedUpstreamError) as ei:
        await coord.call_with_retry(key, {})
    assert invoke.await_count == 3
    assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
    assert ei.value.kind is ErrorKind.RETRYABLE
    assert isinstance(ei.value.cause, UpstreamError)
    stored = await store.get_key(key.id)
    assert stored.total_requests == 3
    assert stored.consecutive_failures == 3
    assert stored.health_status is HealthStatus.UNHEALTHY


@pytest.mark.asyncio
async def test_retries_same_key_until_success():
    ok = UpstreamResult(status=200, data="done")
    invoke = AsyncMock(side_effect=[ConnectionError("reset"), UpstreamError(429, "slow"), ok])
    store, key, coord, sleep = await _setup(invoke)
    assert await coord.call_with_retry(key, {}) is ok
    assert all(c.args[0] is key for c in invoke.await_args_list)
    assert sleep.await_count == 2
    stored = await store.get_key(key.id)
    assert stored.total_requests == 3
    assert stored.successful_requests == 1
    assert stored.consecutive_failures == 0


@pytest.mark.asyncio
async def test_rate_limited_failure_updates_health():
    invoke = AsyncMock(side_effect=UpstreamError(429, "slow down"))
    store, key, coord, _ = await _setup(invoke)
    with pytest.raises(TaggedUpstreamError):
        await coord.call_with_retry(key, {}, max_retries=0)
    assert (await store.get_key(key.id)).health_status is HealthStatus.RATE_LIMITED


@pytest.mark.asyncio
async def test_max_retries_and_backoff_are_configurable():
    invoke = AsyncMock(side_effect=UpstreamError(None, "transport error"))
    _, key, coord, sleep = await _setup(invoke, max_retries=3, backoff_base=0.5)
    with pytest.raises(TaggedUpstreamError):
        await coord.call_with_retry(key, {})
    assert invoke.await_count == 4
    assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0, 1.5]


@pytest.mark.asyncio
async def test_feedback_failure_does_not_break_the_call(monkeypatch):
    invoke = AsyncMock(return_value=UpstreamResult(status=200))
    store, key, coord, _ = await _setup(invoke)

    async def broken(key_id, fields):
        raise OSError("db gone")

    monkeypatch.setattr(store.backend, "update_key_metrics", broken)
    result = await coord.call_with_retry(key, {})
    assert result.status == 200


@pytest.mark.asyncio
async def test_cancel_during_call_propagates_without_feedback():
    started = asyncio.Event()

    async def hang(key, payload):
        started.set()
        await asyncio.Event().wait()

    store, key, coord, sleep = await _setup(hang)
    task = asyncio.create_task(coord.call_with_retry(key, {}))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    sleep.assert_not_awaited()
    assert (await store.get_key(key.id)).total_requests == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying():
    store = KeyStore(MemoryBackend())
    key = await store.add_key("sk-test")
    invoke = AsyncMock(side_effect=UpstreamError(503, "busy"))
    sleeping = asyncio.Event()

    async def slow_sleep(delay):
        sleeping.set()
        await asyncio.sleep(3600)

    coord = RetryCoordinator(store, invoke, RetryConfig(), sleep=slow_sleep)
    task = asyncio.create_task(coord.call_with_retry(key, {}))
    await sleeping.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert invoke.await_count == 1
    # only the finished attempt was recorded
    assert (await store.get_key(key.id)).total_requests == 1
