"""Unit tests for DebouncedFileWatcher."""

import asyncio
import os

import pytest

from gesturevision.core.file_watch import DebouncedFileWatcher


def _touch(path, mtime):
    path.write_text(str(mtime))
    os.utime(path, (mtime, mtime))


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


class TestDebouncedFileWatcher:
    """Test polling and debouncing."""

    @pytest.mark.asyncio
    async def test_burst_of_changes_fires_once(self, tmp_path):
        path = tmp_path / "watched.json"
        _touch(path, 1_000_000)
        calls = []

        async def callback():
            calls.append(path.read_text())

        watcher = DebouncedFileWatcher(path, callback, poll_interval=0.02, debounce=0.2)
        watcher.start()
        try:
            await asyncio.sleep(0.05)
            for offset in range(1, 4):
                _touch(path, 1_000_000 + offset)
                await asyncio.sleep(0.05)

            assert await _wait_for(lambda: calls)
            await asyncio.sleep(0.3)
        finally:
            watcher.stop()

        assert calls == ["1000003"]

    @pytest.mark.asyncio
    async def test_appearance_counts_as_change(self, tmp_path):
        path = tmp_path / "late.json"
        fired = asyncio.Event()

        async def callback():
            fired.set()

        watcher = DebouncedFileWatcher(path, callback, poll_interval=0.02, debounce=0.02)
        watcher.start()
        try:
            await asyncio.sleep(0.05)
            _touch(path, 2_000_000)
            await asyncio.wait_for(fired.wait(), timeout=2.0)
        finally:
            watcher.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_callback(self, tmp_path):
        path = tmp_path / "watched.json"
        _touch(path, 1_000_000)
        calls = []

        async def callback():
            calls.append(True)

        watcher = DebouncedFileWatcher(path, callback, poll_interval=0.02, debounce=0.3)
        watcher.start()
        await asyncio.sleep(0.05)
        _touch(path, 1_000_001)
        await asyncio.sleep(0.1)
        watcher.stop()
        await asyncio.sleep(0.4)

        assert calls == []
        assert not watcher.is_running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, tmp_path):
        async def callback():
            pass

        watcher = DebouncedFileWatcher(tmp_path / "x.json", callback, poll_interval=0.05)
        watcher.start()
        task = watcher._poll_task
        watcher.start()

        assert watcher._poll_task is task
        watcher.stop()
