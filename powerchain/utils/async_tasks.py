"""Background task helpers.

Cascades and connector re-polls run fire-and-forget; exceptions that escape
them are logged here instead of vanishing with the task.
"""
import asyncio
import logging
from typing import Coroutine, Any

logger = logging.getLogger(__name__)

# Strong references so running tasks are not garbage collected
_background_tasks: set[asyncio.Task] = set()


def safe_create_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task:
    """Schedule ``coro`` on the running loop and log any exception it raises."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def handle_done(task: asyncio.Task) -> None:
        _background_tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Task '{name or task.get_name()}' was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Background task '{name or task.get_name()}' failed: "
                f"{type(exc).__name__}: {exc}",
                exc_info=exc,
            )

    task.add_done_callback(handle_done)
    return task
