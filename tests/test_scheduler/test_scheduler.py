import asyncio

import pytest
from structlog.testing import capture_logs

from quill.scheduler import Scheduler


@pytest.mark.asyncio
async def test_enqueue_runs_task_with_kwargs():
    scheduler = Scheduler()
    seen: list[str] = []

    async def job(value: str) -> str:
        seen.append(value)
        return value.upper()

    task = scheduler.enqueue(job, {"value": "ok"})
    assert task.get_name().startswith("quill:")

    await scheduler.drain()

    assert seen == ["ok"]
    assert task.result() == "OK"
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_delay_postpones_start():
    scheduler = Scheduler()
    order: list[str] = []

    async def job(label: str) -> None:
        order.append(label)

    scheduler.enqueue(job, {"label": "late"}, delay=0.05)
    scheduler.enqueue(job, {"label": "early"})
    await scheduler.drain()

    assert order == ["early", "late"]


@pytest.mark.asyncio
async def test_failing_task_does_not_reach_caller():
    scheduler = Scheduler()

    async def broken() -> None:
        raise RuntimeError("boom")

    task = scheduler.enqueue(broken)
    await scheduler.drain()

    assert isinstance(task.exception(), RuntimeError)
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_outstanding_tasks():
    scheduler = Scheduler()
    started = asyncio.Event()

    async def slow() -> None:
        started.set()
        await asyncio.sleep(30)

    task = scheduler.enqueue(slow)
    await started.wait()
    assert scheduler.pending == 1

    await scheduler.shutdown()

    assert task.cancelled()
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_failures_are_logged_on_the_scheduler_logger():
    scheduler = Scheduler()

    async def broken() -> None:
        raise RuntimeError("boom")

    with capture_logs() as logs:
        scheduler.enqueue(broken)
        await scheduler.drain()

    failed = [entry for entry in logs if entry["event"] == "Scheduled task failed"]
    assert failed and failed[0]["log_level"] == "error"
    assert failed[0]["error"] == "boom"
