"""Task tracking for reconcile handlers scheduled from store listeners.

Store listeners are plain callbacks, so handler coroutines are started as
tasks. Tracking them lets callers wait until the controller has settled.
"""

import asyncio
import contextlib
import contextvars
from collections.abc import Coroutine, Generator
from functools import partial
import logging
from typing import Any

__all__ = ["TaskService", "get_task_service", "task_service_context"]

_LOGGER = logging.getLogger(__name__)

_task_service_ctx: contextvars.ContextVar["TaskService | None"] = (
    contextvars.ContextVar("_task_service_ctx", default=None)
)


class TaskService:
    """Creates and tracks asyncio tasks."""

    def __init__(self) -> None:
        """Initialize the task service."""
        self._active_tasks: set[asyncio.Task[Any]] = set()

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def _task_done(
        self, task_set: set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        try:
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as err:
            _LOGGER.error("Task %s failed: %s", task.get_name(), err)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait until no tracked tasks remain, including tasks started while waiting."""
        while active_tasks := list(self._active_tasks):
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        await asyncio.sleep(0)

    async def close(self) -> None:
        """Cancel all tracked tasks."""
        for task in list(self._active_tasks):
            task.cancel()
        await asyncio.gather(*self._active_tasks, return_exceptions=True)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)


def get_task_service() -> TaskService:
    """Get the current task service instance, creating one if needed."""
    instance = _task_service_ctx.get()
    if instance is None:
        instance = TaskService()
        _task_service_ctx.set(instance)
    return instance


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None,
) -> Generator[TaskService, None, None]:
    """Use a TaskService for the duration of the context."""
    service = service or TaskService()
    token = _task_service_ctx.set(service)
    try:
        yield service
    finally:
        _task_service_ctx.reset(token)
