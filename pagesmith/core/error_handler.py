"""Loop-level error handling, fire-and-forget tasks and ordered shutdown."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[Any]]


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    message = context.get("message") or "Unhandled exception in event loop"
    exception = context.get("exception")
    task = context.get("task") or context.get("future")
    where = f" [{task.get_name()}]" if isinstance(task, asyncio.Task) else ""
    if exception is not None:
        logger.error("Event loop error%s: %s", where, message, exc_info=exception)
    else:
        logger.error("Event loop error%s: %s", where, message)


def setup_global_exception_handler(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    """Route errors nobody retrieved (dropped tasks, callbacks) to our logger."""

    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; exception handler not installed")
            return
    loop.set_exception_handler(_log_loop_exception)


def safe_background_task(
    task_name: str,
    task_coro: Coroutine[Any, Any, Any],
    *,
    tracked: Optional[set[asyncio.Task]] = None,
) -> asyncio.Task:
    """Run ``task_coro`` detached from the caller.

    Failures are logged and the task resolves to ``None``. When ``tracked`` is
    given the task stays in it until done, which is how resource refreshes are
    drained on shutdown.
    """

    async def guarded() -> Any:
        try:
            return await task_coro
        except asyncio.CancelledError:
            logger.info("Background task '%s' cancelled", task_name)
        except Exception:
            logger.exception("Background task '%s' failed", task_name)
        return None

    task = asyncio.create_task(guarded(), name=task_name)
    if tracked is not None:
        tracked.add(task)
        task.add_done_callback(tracked.discard)
    return task


class GracefulShutdown:
    """Cancels registered tasks, then awaits closers newest-first, each under ``timeout``."""

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout
        self.tasks: list[asyncio.Task] = []
        self.closers: list[tuple[str, Closer]] = []

    def add_task(self, task: asyncio.Task) -> None:
        self.tasks.append(task)

    def add_closer(self, name: str, closer: Closer) -> None:
        self.closers.append((name, closer))

    async def shutdown(self) -> None:
        pending = [task for task in self.tasks if not task.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        while self.closers:
            name, closer = self.closers.pop()
            try:
                await asyncio.wait_for(closer(), timeout=self.timeout)
            except asyncio.TimeoutError:
                logger.warning("%s did not close within %.1fs", name, self.timeout)
            except Exception:
                logger.exception("%s failed to close", name)
            else:
                logger.info("%s closed", name)


__all__ = ["GracefulShutdown", "safe_background_task", "setup_global_exception_handler"]
