"""Polling file watcher with a resettable debounce."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

from .asyncio_utils import create_logged_task
from .logging_utils import get_module_logger

ChangeCallback = Callable[[], Awaitable[None]]


class DebouncedFileWatcher:
    """
    Watches one file by polling its modification time.

    Every detected change (re)starts a debounce timer; the callback runs once
    the file has been quiet for ``debounce`` seconds. Appearance and removal
    count as changes. ``stop`` cancels both the poll loop and any pending
    callback; ``start`` takes a fresh baseline so writes made while stopped
    are not reported.
    """

    def __init__(
        self,
        path: Path,
        callback: ChangeCallback,
        *,
        poll_interval: float = 1.0,
        debounce: float = 0.3,
        name: Optional[str] = None,
    ):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.debounce = debounce
        self._callback = callback
        self._name = name or self.path.name
        self._poll_task: Optional[asyncio.Task] = None
        self._debounce_task: Optional[asyncio.Task] = None
        self._last_mtime: Optional[float] = None
        self.logger = get_module_logger("FileWatcher")

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._poll_task = create_logged_task(
            self._poll_loop(),
            logger=self.logger,
            context=f"watch:{self._name}",
        )

    def stop(self) -> None:
        for task in (self._poll_task, self._debounce_task):
            if task is not None and not task.done():
                task.cancel()
        self._poll_task = None
        self._debounce_task = None

    async def _stat_mtime(self) -> Optional[float]:
        try:
            stat = await asyncio.to_thread(os.stat, self.path)
        except FileNotFoundError:
            return None
        except OSError as e:
            self.logger.warning("Cannot stat %s: %s", self.path, e)
            return self._last_mtime
        return stat.st_mtime

    async def _poll_loop(self) -> None:
        self._last_mtime = await self._stat_mtime()
        while True:
            await asyncio.sleep(self.poll_interval)
            current = await self._stat_mtime()
            if current != self._last_mtime:
                self._last_mtime = current
                self._schedule()

    def _schedule(self) -> None:
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = create_logged_task(
            self._fire(),
            logger=self.logger,
            context=f"debounce:{self._name}",
        )

    async def _fire(self) -> None:
        await asyncio.sleep(self.debounce)
        self.logger.debug("Change detected in %s", self.path)
        await self._callback()
