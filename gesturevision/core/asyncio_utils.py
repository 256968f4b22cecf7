"""Asyncio helpers for background work that must not lose exceptions."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Create a task whose failure is logged instead of lost."""
    task = asyncio.get_running_loop().create_task(coro, name=context)
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")

    def _done(done_task: asyncio.Task[Any]) -> None:
        if done_task.cancelled():
            return
        exc = done_task.exception()
        if exc is not None:
            task_logger.error(
                "Unhandled exception in %s: %s",
                context or done_task.get_name(),
                exc,
                exc_info=exc,
            )

    task.add_done_callback(_done)

    return task


async def cancel_task(task: Optional[asyncio.Task[Any]]) -> None:
    """Cancel ``task`` and wait for it to finish."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


__all__ = ["cancel_task", "create_logged_task"]
