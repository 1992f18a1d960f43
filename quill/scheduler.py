"""In-process fire-and-forget task scheduler."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from quill.logging import get_logger

log = get_logger(__name__)

TaskRef = Callable[..., Awaitable[object]]


class Scheduler:
    """Run coroutine tasks in the background, optionally after a delay.

    Failures are logged from a done-callback; nothing propagates to the
    caller that enqueued the task.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task[object]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def enqueue(
        self,
        task: TaskRef,
        kwargs: dict[str, Any] | None = None,
        delay: float = 0.0,
    ) -> asyncio.Task[object]:
        """Schedule ``task(**kwargs)`` on the running loop."""
        arguments = dict(kwargs or {})
        name = getattr(task, "__qualname__", repr(task))

        async def _runner() -> object:
            if delay > 0:
                await asyncio.sleep(delay)
            return await task(**arguments)

        scheduled = asyncio.create_task(_runner(), name=f"quill:{name}")
        self._tasks.add(scheduled)
        scheduled.add_done_callback(self._on_done)
        log.debug("Task scheduled", task=name, delay=delay)
        return scheduled

    def _on_done(self, task: asyncio.Task[object]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            log.info("Scheduled task cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            log.error(
                "Scheduled task failed",
                task=task.get_name(),
                error=str(error),
                exc_info=(type(error), error, error.__traceback__),
            )

    async def drain(self) -> None:
        """Wait until every scheduled task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks and wait for them to settle."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
