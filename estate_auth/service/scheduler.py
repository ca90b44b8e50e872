"""Background driver for periodic account maintenance.

Runs, each on its own interval:
- the trial sweep (reminders, then expiries)
- purging of expired refresh sessions
- garbage collection of stale rate-limit entries
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from estate_auth.logging import get_logger

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 60
MAX_BACKOFF_SECONDS = 300

TaskFn = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class ScheduledTask:
    name: str
    interval_seconds: float
    func: TaskFn
    last_run: Optional[float] = None
    consecutive_errors: int = 0

    def is_due(self, now: float) -> bool:
        if self.last_run is None:
            return True
        backoff = 0.0
        if self.consecutive_errors > 3:
            backoff = min(MAX_BACKOFF_SECONDS, 2 ** (self.consecutive_errors - 3))
        return now - self.last_run >= self.interval_seconds + backoff


class LifecycleScheduler:
    """Wakes every ``poll_interval`` seconds and runs whichever tasks are due.

    A failing task is logged and retried on its next slot; it never stops the
    loop or the other tasks.
    """

    def __init__(
        self,
        tasks: List[ScheduledTask],
        *,
        poll_interval: int = DEFAULT_POLL_INTERVAL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tasks = tasks
        self.poll_interval = poll_interval
        self._monotonic = monotonic
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("lifecycle_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "lifecycle_scheduler_started",
            poll_interval=self.poll_interval,
            tasks=[task.name for task in self.tasks],
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("lifecycle_scheduler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self.poll_interval)

    async def tick(self) -> Dict[str, Any]:
        """Run every due task once; returns results keyed by task name."""
        results: Dict[str, Any] = {}
        for task in self.tasks:
            now = self._monotonic()
            if not task.is_due(now):
                continue
            task.last_run = now
            try:
                outcome = task.func()
                if inspect.isawaitable(outcome):
                    outcome = await outcome
                task.consecutive_errors = 0
                results[task.name] = outcome
            except Exception as exc:
                task.consecutive_errors += 1
                logger.error(
                    "scheduler_task_failed",
                    task=task.name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=task.consecutive_errors,
                )
        return results

    async def run_all(self) -> Dict[str, Any]:
        """Run every task immediately regardless of schedule."""
        for task in self.tasks:
            task.last_run = None
        return await self.tick()
