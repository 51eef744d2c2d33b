"""
Fire-and-forget dispatch of async verdict jobs.

A dispatcher either accepts a job or raises DispatchFailed; once accepted, the job's
own outcome is written later by the job itself, never returned to the submitter.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from fastapi import BackgroundTasks

from .errors import DispatchFailed

LOGGER = logging.getLogger(__name__)


class Dispatcher:
    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        raise NotImplementedError


class InlineDispatcher(Dispatcher):
    """Runs the job on the caller's thread (tests, CLI)."""

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception:
            LOGGER.exception("Inline job %s failed", getattr(fn, "__name__", fn))


class ThreadPoolDispatcher(Dispatcher):
    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="verification")

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        try:
            future = self._executor.submit(fn, *args)
        except RuntimeError as exc:
            raise DispatchFailed(f"Verification worker pool unavailable: {exc}") from exc
        future.add_done_callback(_log_failure)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        LOGGER.error("Background verification job failed: %s", exc)


class BackgroundTasksDispatcher(Dispatcher):
    """Queues the job on the current FastAPI request; it runs after the response is sent."""

    def __init__(self, background: BackgroundTasks):
        self.background = background

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        self.background.add_task(fn, *args)
