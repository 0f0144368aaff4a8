"""
watcher.py — Async polling watcher for the events directory.

Every `interval` seconds the tree is stat'ed in a worker thread and each
added, modified or removed file is reported to `on_change`. The first scan
only records the baseline. Runs as an asyncio task within FastAPI.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger("lapboard.watcher")

DEFAULT_INTERVAL = 1.0  # seconds between scans

FileState = dict[str, tuple[int, int]]


def scan_tree(root: Path) -> FileState:
    """Map every file under root to (mtime_ns, size). Raises OSError if root is gone."""
    if not root.is_dir():
        raise FileNotFoundError(f"Monitored directory not found: {root}")
    state: FileState = {}
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            try:
                st = os.stat(path)
            except OSError:
                # Removed between listing and stat
                continue
            state[path] = (st.st_mtime_ns, st.st_size)
    return state


def diff_states(before: FileState, after: FileState) -> list[str]:
    """Paths added, removed or modified between two scans, sorted."""
    changed = {p for p in after if before.get(p) != after[p]}
    changed.update(p for p in before if p not in after)
    return sorted(changed)


class SourceWatcher:
    """Background task that reports changed files under `root`."""

    def __init__(self, root: Path, on_change: Callable[[str], object],
                 interval: float = DEFAULT_INTERVAL):
        self.root = Path(root)
        self.on_change = on_change
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._state: Optional[FileState] = None
        self._status = "Stopped"
        self._error_count = 0
        self._change_count = 0
        self._last_scan: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_status(self) -> dict:
        return {
            "is_running": self._running,
            "status": self._status,
            "root": str(self.root),
            "change_count": self._change_count,
            "error_count": self._error_count,
            "last_scan": self._last_scan,
        }

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._status = "Starting..."
        self._task = asyncio.create_task(self._poll_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._status = "Stopped"

    async def poll_once(self) -> list[str]:
        """Scan once and report changes. Returns the changed paths."""
        current = await asyncio.to_thread(scan_tree, self.root)
        self._last_scan = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        if self._state is None:
            self._state = current
            logger.info("Watching for changes in %s (%d files)", self.root, len(current))
            return []

        changed = diff_states(self._state, current)
        self._state = current
        for path in changed:
            try:
                self.on_change(path)
                self._change_count += 1
            except Exception as e:
                logger.error("Error handling change in %s: %s", path, e)
        return changed

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self.poll_once()
                self._status = "Watching"
                self._error_count = 0
            except asyncio.CancelledError:
                break
            except OSError as e:
                self._error_count += 1
                self._status = f"Error ({self._error_count})"
                # Log the first failure loudly, then only at debug level
                if self._error_count == 1:
                    logger.error("Cannot scan %s: %s", self.root, e)
                else:
                    logger.debug("Scan error (%d): %s", self._error_count, e)

            await asyncio.sleep(self.interval)

        self._status = "Stopped"
