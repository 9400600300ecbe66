from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Protocol

from src.observability import incr_metric, log_event


class Dispatcher(Protocol):
    def submit(self, task_name: str, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None: ...


class ThreadPoolDispatcher:
    """Runs detached background work; failures only reach the log."""

    def __init__(self, max_workers: int = 8) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bridge-task")

    def submit(self, task_name: str, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> None:
        future = self._executor.submit(fn, *args, **kwargs)
        incr_metric("dispatch.tasks.submitted", task=task_name)
        future.add_done_callback(lambda done: self._report(task_name, done))

    def _report(self, task_name: str, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            incr_metric("dispatch.tasks.completed", task=task_name)
            return
        incr_metric("dispatch.tasks.failed", task=task_name)
        log_event(
            "background_task_failed",
            level=logging.ERROR,
            task=task_name,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
