import asyncio

import pytest
from practicelog.watcher import WatchResult, watch_until


@pytest.mark.asyncio
async def test_succeeds_once_probe_is_ready():
    calls = []

    def probe():
        calls.append(1)
        return len(calls) >= 3

    result = await watch_until(probe, attempts=10, interval=0.001)
    assert result == WatchResult(success=True, attempts=3)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_async_probe_supported():
    async def probe():
        return True

    result = await watch_until(probe, attempts=2, interval=0.001)
    assert result.success
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_gives_up_after_bound_without_raising():
    calls = []

    def probe():
        calls.append(1)
        return False

    result = await watch_until(probe, attempts=4, interval=0.001, initial_delay=0.001)
    assert not result.success
    assert result.attempts == 4
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_cancellation_propagates():
    task = asyncio.create_task(watch_until(lambda: False, attempts=100, interval=0.05))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
