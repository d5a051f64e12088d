"""Detached background tasks with an error sink."""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

logger = logging.getLogger(__name__)

ErrorSink = Callable[[str, BaseException], None]


def log_background_error(name: str, error: BaseException) -> None:
    """Default error sink: log the failure."""
    logger.warning("Background task %s failed: %s", name, error)


class BackgroundTasks:
    """
    Spawns fire-and-forget tasks on the running event loop.

    Tasks are referenced until they finish so they are not garbage
    collected mid-flight. A failing task is reported to the error sink and
    never re-raised into the code that spawned it.

    Parameters
    ----------
    error_sink : ErrorSink
        Called with the task name and the exception of every failed task

    """

    def __init__(self, error_sink: ErrorSink = log_background_error) -> None:
        self.error_sink = error_sink
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        """
        Schedule a coroutine without waiting for it.

        Parameters
        ----------
        coro : Coroutine
            Work to run
        name : str
            Task name, passed to the error sink on failure

        Returns
        -------
        asyncio.Task
            The scheduled task

        """
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            return
        try:
            self.error_sink(task.get_name(), error)
        except Exception:
            logger.exception("Error sink failed while reporting %s", task.get_name())

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every spawned task (including ones spawned meanwhile) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        """Cancel every pending task and wait for them to finish."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
