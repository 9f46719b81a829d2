from __future__ import annotations

import asyncio
import threading

import pytest

from dashrelay.shutdown import CLOSED_SOURCE, ShutdownCoordinator

pytest_plugins = ("aiohttp.pytest_plugin",)


async def test_first_token_wins_and_wait_returns_once():
    coordinator = ShutdownCoordinator()
    web = coordinator.sender("web")
    ffmpeg = coordinator.sender("ffmpeg")

    ffmpeg.send(RuntimeError("ffmpeg exited with status 1"))
    web.send()
    web.send()

    token = await coordinator.wait()
    assert token.source == "ffmpeg"
    assert token.failed

    # the remaining tokens are never consumed by the run loop
    assert coordinator._queue.qsize() == 2


async def test_wait_blocks_until_a_token_arrives():
    coordinator = ShutdownCoordinator()
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(coordinator.wait(), timeout=0.05)


async def test_close_wakes_the_waiter():
    coordinator = ShutdownCoordinator()
    waiter = asyncio.ensure_future(coordinator.wait())
    await asyncio.sleep(0)

    coordinator.close()
    token = await asyncio.wait_for(waiter, timeout=1)

    assert token.source == CLOSED_SOURCE
    assert not token.failed
    assert coordinator.closed


async def test_sends_after_close_are_ignored():
    coordinator = ShutdownCoordinator()
    sender = coordinator.sender("web")
    coordinator.close()
    coordinator.close()

    sender.send()
    sender.send(ValueError("late"))

    assert coordinator._queue.qsize() == 1


async def test_send_from_another_thread():
    coordinator = ShutdownCoordinator()
    sender = coordinator.sender("worker")

    thread = threading.Thread(target=sender.send)
    thread.start()
    thread.join()

    token = await asyncio.wait_for(coordinator.wait(), timeout=1)
    assert token.source == "worker"


async def test_spawn_signals_when_task_completes():
    coordinator = ShutdownCoordinator()

    async def _finish():
        await asyncio.sleep(0)

    task = coordinator.spawn("ffmpeg", _finish())
    token = await asyncio.wait_for(coordinator.wait(), timeout=1)

    assert token.source == "ffmpeg"
    assert not token.failed
    assert task.get_name() == "dashrelay-ffmpeg"
    await task


async def test_spawn_signals_and_logs_when_task_fails(caplog):
    coordinator = ShutdownCoordinator()

    async def _fail():
        raise OSError("address already in use")

    with caplog.at_level("ERROR", logger="shutdown"):
        task = coordinator.spawn("web", _fail())
        token = await asyncio.wait_for(coordinator.wait(), timeout=1)
        await task

    assert token.source == "web"
    assert isinstance(token.error, OSError)
    assert "web: address already in use" in caplog.text


async def test_cancelled_task_still_signals():
    coordinator = ShutdownCoordinator()
    task = coordinator.spawn("web", asyncio.sleep(30))
    await asyncio.sleep(0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    token = await asyncio.wait_for(coordinator.wait(), timeout=1)
    assert token.source == "web"
    assert not token.failed
