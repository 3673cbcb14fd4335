"""Asynchronous programming utilities and helpers.

Bridges blocking network calls into the event loop and logs failures of
fire-and-forget background tasks.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


async def run_in_thread(func: Callable[P, R], *args: P.args, **kwargs: P.kwargs) -> R:
    """Run a synchronous function in a separate thread.

    Consistent wrapper around asyncio.to_thread. Cancelling the awaiting task
    abandons the result; the thread finishes on its own.

    Args:
        func: The synchronous function to run.
        *args: Positional arguments for func.
        **kwargs: Keyword arguments for func.

    Returns:
        The result of the function.
    """
    return await asyncio.to_thread(func, *args, **kwargs)


def log_task_exception(
    task: asyncio.Task[Any],
    msg: str = "Background task failed",
    logger_instance: logging.Logger | None = None,
) -> None:
    """Callback for add_done_callback to log task exceptions.

    Args:
        task: The completed asyncio task.
        msg: Message to log on failure.
        logger_instance: Logger to use. Defaults to module logger.
    """
    log = logger_instance or logger
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning(f"{msg}: {exc}", exc_info=exc)


def task_callback(
    msg: str = "Background task failed", logger_instance: logging.Logger | None = None
) -> Callable[[asyncio.Task[Any]], None]:
    """Create a callback for add_done_callback with custom message.

    Example:
        task = asyncio.create_task(queue.replay_all())
        task.add_done_callback(task_callback("Replay failed", logger))
    """
    return functools.partial(log_task_exception, msg=msg, logger_instance=logger_instance)
