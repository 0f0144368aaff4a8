"""
scheduler.py — Debounced, single-flight reprocessing.

Messages arrive on an asyncio queue:
- "change": a file changed. Qualifying changes (trigger filenames) restart
  the quiet-period timer; the run fires once the timer elapses untouched.
- "run": start immediately (process start, configuration update, manual
  retrigger).

State is IDLE or RUNNING. A trigger that fires while RUNNING is dropped and
logged, never queued and never cancels the run in flight. The next change
burst schedules a fresh run. On success the new snapshot is published and
the sinks are called in order; on failure the previous snapshot stays.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from enum import Enum
from pathlib import PurePath
from typing import Awaitable, Callable, Optional

from core.snapshot import Snapshot, SnapshotHolder

logger = logging.getLogger("lapboard.scheduler")

DEFAULT_QUIET_PERIOD = 5.0
TRIGGER_FILES = ("Event.json", "Pilots.json", "Rounds.json", "Race.json", "Result.json")

Sink = Callable[[Snapshot], Awaitable[None]]


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


def is_trigger_file(filename: str) -> bool:
    return str(filename).endswith(TRIGGER_FILES)


class ReprocessScheduler:
    """Owns the run state machine. `pipeline` is a blocking callable run in a thread."""

    def __init__(self, pipeline: Callable[[], Snapshot], holder: SnapshotHolder,
                 quiet_period: float = DEFAULT_QUIET_PERIOD,
                 sinks: Optional[list[Sink]] = None):
        self.pipeline = pipeline
        self.holder = holder
        self.quiet_period = quiet_period
        self.sinks: list[Sink] = list(sinks or [])

        self._state = RunState.IDLE
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._run_task: Optional[asyncio.Task] = None

        self._runs_completed = 0
        self._runs_failed = 0
        self._dropped_triggers = 0
        self._retrigger_pending = False
        self._last_error: Optional[str] = None
        self._last_run_at: Optional[str] = None
        self._last_duration: Optional[float] = None

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def get_status(self) -> dict:
        return {
            "state": self._state.value,
            "runs_completed": self._runs_completed,
            "runs_failed": self._runs_failed,
            "dropped_triggers": self._dropped_triggers,
            "retrigger_pending": self._retrigger_pending,
            "last_error": self._last_error,
            "last_run_at": self._last_run_at,
            "last_duration_s": self._last_duration,
            "quiet_period_s": self.quiet_period,
            "snapshot_version": self.holder.version,
        }

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        if self.is_running:
            return
        self._queue = asyncio.Queue()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Stop taking triggers and wait for a run in flight to finish."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._run_task:
            await asyncio.gather(self._run_task, return_exceptions=True)
            self._run_task = None
        self._queue = None

    async def wait_idle(self) -> None:
        """Wait for the run currently in flight, if any."""
        if self._run_task:
            await asyncio.gather(self._run_task, return_exceptions=True)

    # ─── Triggers ────────────────────────────────────────────────────

    def notify_change(self, filename: str) -> bool:
        """Report a changed file. Returns True if it restarts the debounce timer."""
        if not is_trigger_file(filename):
            return False
        if self._queue is None:
            logger.warning("Scheduler not started, ignoring change in %s", filename)
            return False
        logger.info("Detected change in %s. Debouncing...", PurePath(filename).name)
        self._queue.put_nowait(("change", filename))
        return True

    def request_run(self, reason: str = "manual") -> bool:
        """Trigger a run without waiting for a quiet period."""
        if self._queue is None:
            logger.warning("Scheduler not started, ignoring %s trigger", reason)
            return False
        self._queue.put_nowait(("run", reason))
        return True

    # ─── Internals ───────────────────────────────────────────────────

    async def _loop(self) -> None:
        loop = asyncio.get_running_loop()
        deadline: Optional[float] = None
        while True:
            timeout = None if deadline is None else max(0.0, deadline - loop.time())
            try:
                kind, payload = await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                deadline = None
                logger.info("Debounce timer elapsed. Triggering run.")
                self._fire("debounce")
                continue

            if kind == "change":
                deadline = loop.time() + self.quiet_period
            elif kind == "run":
                self._fire(payload)

    def _fire(self, reason: str) -> None:
        if self._state is RunState.RUNNING:
            self._dropped_triggers += 1
            self._retrigger_pending = True
            logger.warning("Already processing. Dropping %s trigger.", reason)
            return
        self._state = RunState.RUNNING
        self._retrigger_pending = False
        self._run_task = asyncio.create_task(self._execute(reason))

    async def _execute(self, reason: str) -> None:
        started = time.monotonic()
        self._last_run_at = datetime.now().isoformat(timespec="seconds")
        logger.info("Starting run (%s)", reason)
        try:
            try:
                snapshot = await asyncio.to_thread(self.pipeline)
            except Exception as e:
                self._runs_failed += 1
                self._last_error = f"{type(e).__name__}: {e}"
                logger.error("Run failed, keeping previous snapshot: %s", self._last_error,
                             exc_info=True)
                return

            version = self.holder.publish(snapshot)
            self._runs_completed += 1
            self._last_error = None
            logger.info("Published snapshot v%d in %.2fs", version,
                        time.monotonic() - started)

            for sink in self.sinks:
                try:
                    await sink(snapshot)
                except Exception as e:
                    logger.error("Sink %s failed: %s",
                                 getattr(sink, "__name__", repr(sink)), e)
        finally:
            self._last_duration = round(time.monotonic() - started, 3)
            self._state = RunState.IDLE
