"""Utility modules for relic."""

from relic.utils.async_utils import log_task_exception, run_in_thread, task_callback

__all__ = [
    "log_task_exception",
    "run_in_thread",
    "task_callback",
]
