import asyncio

import pytest

from zmqlite.task_handle import (
    TaskCancelledError,
    TaskError,
    TaskHandle,
    TaskPanicError,
)
from zmqlite.util import ZmqError


async def _wait_then(stop, outcome):
    await stop.wait()
    if isinstance(outcome, BaseException):
        raise outcome
    return outcome


def _start(outcome):
    stop = asyncio.Event()
    handle = TaskHandle(stop, asyncio.create_task(_wait_then(stop, outcome)))
    return stop, handle


@pytest.mark.asyncio
async def test_shutdown_returns_task_result():
    stop, handle = _start("done")
    assert await handle.shutdown() == "done"
    assert stop.is_set()


@pytest.mark.asyncio
async def test_shutdown_signals_stop_to_waiting_task():
    stop = asyncio.Event()
    seen = []

    async def worker():
        await stop.wait()
        seen.append("stopped")

    handle = TaskHandle(stop, asyncio.create_task(worker()))
    assert await handle.shutdown() is None
    assert seen == ["stopped"]


@pytest.mark.parametrize(
    "outcome, error_type, text, wrapped",
    [
        (ZmqError("inner failure"), ZmqError, "inner failure", False),
        (ValueError("boom"), TaskPanicError, "Task panicked", True),
    ],
)
@pytest.mark.asyncio
async def test_shutdown_raises(outcome, error_type, text, wrapped):
    _, handle = _start(outcome)
    with pytest.raises(error_type) as info:
        await handle.shutdown()
    assert str(info.value) == text
    assert isinstance(info.value, TaskError) is wrapped
    assert isinstance(info.value.__cause__, ValueError) is wrapped


@pytest.mark.asyncio
async def test_shutdown_reports_cancellation():
    stop = asyncio.Event()
    never = asyncio.Event()
    task = asyncio.create_task(never.wait())
    await asyncio.sleep(0)
    task.cancel()
    handle = TaskHandle(stop, task)
    with pytest.raises(TaskCancelledError) as info:
        await handle.shutdown()
    assert str(info.value) == "Task cancelled"
    assert isinstance(info.value, ZmqError)